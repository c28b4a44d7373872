"""Configuration settings for the lab audit read models."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = int(os.environ.get("DB_PORT", 5433 if host == "localhost" else 5432))
    password = os.environ.get("DB_PASSWORD", "lab_audit_pass")
    user = os.environ.get("DB_USER", "lab_audit_user")
    db_name = os.environ.get("DB_NAME", "lab_audit_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_event_page_size():
    """Page size used when draining the event log by time range."""
    return max(1, int(os.environ.get("EVENT_LOG_PAGE_SIZE", 500)))


def get_feed_limits():
    """Default and maximum page size of the incident feed."""
    default_limit = int(os.environ.get("INCIDENT_FEED_DEFAULT_LIMIT", 20))
    max_limit = int(os.environ.get("INCIDENT_FEED_MAX_LIMIT", 100))
    return dict(default_limit=default_limit, max_limit=max_limit)


def get_default_range_days():
    """Window used by the HTTP API when a caller sends no time range."""
    return int(os.environ.get("ANALYTICS_DEFAULT_RANGE_DAYS", 30))
