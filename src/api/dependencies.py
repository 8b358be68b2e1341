"""
FastAPI dependency injection.

Dependencies provide instances of services, stores, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be swapped for testing
- Configuration is centralized
- Resource lifecycle (connections, clients) is managed properly

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Generator, Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.coaching.leads import LeadIntake
from ..core.coaching.lifecycle import ConnectionManager
from ..core.coaching.models import Coach, Identity
from ..core.coaching.ports import (
    ClientRecordReader,
    CoachingStore,
    IdentityDirectory,
    MessagingClient,
)
from ..core.coaching.reminders import ReminderChannel
from ..core.coaching.sharing import SharingGate
from ..infrastructure.memory.store import (
    InMemoryCoachingStore,
    InMemoryIdentityDirectory,
    InMemoryRecordReader,
)
from ..infrastructure.messaging.client import SmtpConfig, create_messaging_client
from ..infrastructure.snowflake.client import get_snowflake_connection
from ..infrastructure.snowflake.repositories import (
    SnowflakeCoachingStore,
    SnowflakeConfig,
    SnowflakeProfileDirectory,
    SnowflakeRecordReader,
)

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global mock instances (shared across requests so data persists in mock mode)
_mock_backends = None
_mock_messaging_client = None


@dataclass
class Backends:
    """Everything that reads or writes persistent data, sharing one connection."""
    store: CoachingStore
    directory: IdentityDirectory
    records: ClientRecordReader


def get_mock_backends(settings: Optional[Settings] = None) -> Backends:
    """
    The shared in-memory backends, created on first use.

    The identity directory starts with the MOCK_PROFILES users so coaches
    and clients can be created without a profile database.
    """
    global _mock_backends

    if _mock_backends is None:
        settings = settings or get_settings()
        directory = InMemoryIdentityDirectory(
            Identity(user_id=user_id, email=email, name=name)
            for user_id, email, name in settings.mock_profiles_list
        )
        _mock_backends = Backends(
            store=InMemoryCoachingStore(),
            directory=directory,
            records=InMemoryRecordReader(),
        )
        logger.info(
            "Created shared in-memory backends",
            extra={"mock_profiles": len(settings.mock_profiles_list)}
        )
    return _mock_backends


def reset_mock_state() -> None:
    """Drop all in-memory data. For tests."""
    global _mock_backends, _mock_messaging_client
    _mock_backends = None
    _mock_messaging_client = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    The API key identifies the calling application (the mobile/web client),
    not the end user. Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


async def get_current_user_id(
    api_key: Annotated[str, Depends(verify_api_key)],
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> str:
    """
    The end user making the request.

    Session handling happens upstream; by the time a request reaches us
    the gateway has put the authenticated user's ID in X-User-Id.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header required",
        )
    return x_user_id.strip()


async def require_admin(
    user_id: Annotated[str, Depends(get_current_user_id)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    if user_id not in settings.admin_user_ids_list:
        logger.warning("Non-admin attempted admin action", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user_id


# ---------------------------------------------------------------------------
# Backend Dependencies
# ---------------------------------------------------------------------------

def build_snowflake_config(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


def get_backends(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[Backends, None, None]:
    """
    Provide the store, profile directory and record reader.

    This is a generator function (yields instead of returns) because
    we need to manage the connection lifecycle:
    1. Create connection
    2. Create repositories
    3. Yield them (FastAPI injects them)
    4. Close connection (cleanup after request)

    In mock mode, we reuse the same in-memory backends across requests
    so that data persists during the testing session.
    """
    if settings.snowflake_mock_mode:
        yield get_mock_backends(settings)
        return

    with get_snowflake_connection(build_snowflake_config(settings)) as conn:
        logger.debug("Created Snowflake repositories")
        yield Backends(
            store=SnowflakeCoachingStore(conn),
            directory=SnowflakeProfileDirectory(conn),
            records=SnowflakeRecordReader(conn),
        )


def get_messaging_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> MessagingClient:
    """
    Provide the email client.

    In mock mode, we reuse the same client across requests so tests can
    inspect the outbox.
    """
    global _mock_messaging_client

    if settings.messaging_mock_mode:
        if _mock_messaging_client is None:
            _mock_messaging_client = create_messaging_client(mock_mode=True)
            logger.info("Created shared mock messaging client")
        return _mock_messaging_client

    config = SmtpConfig(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_email=settings.email_from,
        use_tls=settings.smtp_use_tls,
    )
    return create_messaging_client(config=config)


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_connection_manager(
    settings: Annotated[Settings, Depends(get_settings)],
    backends: Annotated[Backends, Depends(get_backends)],
    messenger: Annotated[MessagingClient, Depends(get_messaging_client)],
) -> ConnectionManager:
    """The services are stateless, so we create new instances per request."""
    return ConnectionManager(
        store=backends.store,
        directory=backends.directory,
        messenger=messenger,
        policy=settings.coaching_policy(),
    )


def get_sharing_gate(
    backends: Annotated[Backends, Depends(get_backends)],
) -> SharingGate:
    return SharingGate(store=backends.store, records=backends.records)


def get_reminder_channel(
    settings: Annotated[Settings, Depends(get_settings)],
    backends: Annotated[Backends, Depends(get_backends)],
) -> ReminderChannel:
    return ReminderChannel(store=backends.store, policy=settings.coaching_policy())


def get_lead_intake(
    settings: Annotated[Settings, Depends(get_settings)],
    backends: Annotated[Backends, Depends(get_backends)],
    messenger: Annotated[MessagingClient, Depends(get_messaging_client)],
) -> LeadIntake:
    return LeadIntake(
        store=backends.store,
        directory=backends.directory,
        messenger=messenger,
        policy=settings.coaching_policy(),
    )


def get_current_coach(
    user_id: Annotated[str, Depends(get_current_user_id)],
    manager: Annotated[ConnectionManager, Depends(get_connection_manager)],
) -> Coach:
    """The coach account owned by the calling user. 404 if they have none."""
    return manager.get_coach_for_owner(user_id)


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
AdminUserId = Annotated[str, Depends(require_admin)]
CurrentCoach = Annotated[Coach, Depends(get_current_coach)]
BackendsDep = Annotated[Backends, Depends(get_backends)]
ConnectionManagerDep = Annotated[ConnectionManager, Depends(get_connection_manager)]
SharingGateDep = Annotated[SharingGate, Depends(get_sharing_gate)]
ReminderChannelDep = Annotated[ReminderChannel, Depends(get_reminder_channel)]
LeadIntakeDep = Annotated[LeadIntake, Depends(get_lead_intake)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
