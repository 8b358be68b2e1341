"""
Snowflake persistence for connections, codes, settings, reminders and leads.
"""
