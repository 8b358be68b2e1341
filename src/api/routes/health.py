"""
Liveness and readiness probes.

/health answers as long as the process is up. /health/ready also checks
that configuration is complete and that Snowflake answers a query, so a
deploy with a bad key or a suspended warehouse never receives traffic.
Email is reported but does not fail readiness: codes and lead notices
are best-effort.
"""

import logging
from typing import Any

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from ... import __version__
from ...config.settings import Settings
from ...infrastructure.snowflake.client import get_snowflake_connection
from ..dependencies import SettingsDep, build_snowflake_config

logger = logging.getLogger(__name__)

router = APIRouter()

# Reported in the response but never turns readiness red
NON_BLOCKING_CHECKS = {"messaging"}


class HealthResponse(BaseModel):
    status: str
    version: str
    details: dict[str, Any] = {}


class ReadinessCheck(BaseModel):
    name: str
    status: str  # "ok" or "error"
    error: str | None = None


class ReadinessResponse(BaseModel):
    status: str  # "ready" or "not_ready"
    version: str
    checks: list[ReadinessCheck]


def _check_configuration(missing_fields: list[str]) -> ReadinessCheck:
    if missing_fields:
        return ReadinessCheck(
            name="configuration",
            status="error",
            error=f"Missing required fields: {', '.join(missing_fields)}",
        )
    return ReadinessCheck(name="configuration", status="ok")


def _check_database(settings: Settings, configured: bool) -> ReadinessCheck:
    if settings.snowflake_mock_mode:
        return ReadinessCheck(name="database", status="ok", error="mock mode")
    if not configured:
        return ReadinessCheck(name="database", status="error", error="not configured")

    try:
        with get_snowflake_connection(build_snowflake_config(settings)) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            finally:
                cursor.close()
    except Exception as e:
        logger.error("Snowflake did not answer readiness probe", extra={"error": str(e)})
        return ReadinessCheck(name="database", status="error", error=str(e))
    return ReadinessCheck(name="database", status="ok")


def _check_messaging(settings: Settings) -> ReadinessCheck:
    if settings.messaging_mock_mode:
        return ReadinessCheck(name="messaging", status="ok", error="mock mode")
    if not settings.smtp_host:
        return ReadinessCheck(name="messaging", status="error", error="SMTP host not configured")
    return ReadinessCheck(name="messaging", status="ok")


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="200 while the process is up. Touches no external service.",
)
async def health_check(settings: SettingsDep) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        details={
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "messaging": settings.messaging_mock_mode,
            }
        }
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness probe",
    description="200 when configuration is complete and the database answers, 503 otherwise.",
    responses={
        503: {
            "description": "Configuration incomplete or database unreachable",
            "model": ReadinessResponse,
        }
    },
)
def readiness_check(settings: SettingsDep, response: Response) -> ReadinessResponse:
    """
    Run every probe and report each one.

    Declared sync so the blocking Snowflake round trip runs in the
    threadpool instead of on the event loop.
    """
    # SMTP_HOST is covered by the messaging probe
    missing_fields = [
        field for field in settings.validate_required_fields()
        if field.startswith("SNOWFLAKE")
    ]
    checks = [
        _check_configuration(missing_fields),
        _check_database(settings, configured=not missing_fields),
        _check_messaging(settings),
    ]

    ready = all(
        check.status == "ok"
        for check in checks
        if check.name not in NON_BLOCKING_CHECKS
    )

    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "Not ready",
            extra={"failed": [c.name for c in checks if c.status != "ok"]}
        )

    return ReadinessResponse(
        status="ready" if ready else "not_ready",
        version=__version__,
        checks=checks,
    )
