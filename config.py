"""Configuration module for the Reminder Scheduling Engine.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the scheduling engine.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminders.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    # MCP Server Configuration
    MCP_HOST: str = "127.0.0.1"
    """MCP server host address"""

    MCP_PORT: int = 8006
    """MCP server port for SSE transport (separate from REST API)"""

    MCP_TRANSPORT: str = "sse"
    """MCP transport type: 'stdio' for local, 'sse' for network access"""

    # Scheduling
    DEFAULT_TIMEZONE: str = "UTC"
    """Timezone used when a caller explicitly opts into a fallback"""

    MAX_WEEKDAYS: int = 4
    """Maximum number of weekdays a weekly schedule may select"""

    DST_PROBE_MAX_MINUTES: int = 60
    """How far forward to probe for a valid local time inside a DST gap"""

    MIGRATION_DST_PROBE_MAX_MINUTES: int = 90
    """Wider probe ceiling used as a last resort during timezone migration"""

    # Sync queue
    MAX_QUEUE_ITEMS: int = 20
    """Queue size cap; oldest entries are evicted beyond it"""

    MAX_QUEUE_ATTEMPTS: int = 5
    """Attempts after which a queued item is marked as permanently failed"""

    QUEUE_RATE_LIMIT_SECONDS: float = 0.25
    """Delay before each remote write during a flush"""

    QUEUE_BACKOFF_BASE_SECONDS: float = 2.0
    """Base of the exponential backoff applied to transient failures"""

    QUEUE_BACKOFF_MAX_SECONDS: float = 60.0
    """Upper bound of the queue backoff window"""

    DECLINE_TTL_HOURS: int = 24
    """How long a declined device timezone stays suppressed"""

    # Idempotent creation
    IDEMPOTENCY_TTL_DAYS: int = 30
    """Lifetime of an idempotency mapping"""

    WRITE_MAX_ATTEMPTS: int = 4
    """Attempts for a transactional write hitting transient backend errors"""

    # Batch recompute
    RECOMPUTE_BATCH_SIZE: int = 50
    """Reminders committed per transactional batch"""

    MAX_CLIENT_RECOMPUTE_COUNT: int = 5
    """Above this many reminders the recompute is deferred to the server"""

    RECOMPUTE_FETCH_LIMIT: int = 500
    """Page size used when reading an owner's reminders for a recompute run"""

    SERVER_RECOMPUTE_ENABLED: bool = True
    """Record a server-side recompute job when the client ceiling is exceeded"""

    # Background Worker Configuration
    WORKER_ENABLED: bool = True
    """Enable/disable the background worker"""

    WORKER_CHECK_INTERVAL: int = 60
    """Interval in seconds between worker iterations (default: 60 seconds)"""

    REMOTE_API_URL: str = "http://127.0.0.1:8005"
    """Base URL of the REST API used by the device-side profile client"""

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
