"""
Configuration management.
"""

import os
from dataclasses import dataclass, field


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: _env_flag("DEBUG", "false"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))
    store_filename: str = field(
        default_factory=lambda: os.getenv("STORE_FILENAME", "tenancy_store.json")
    )

    # Escrow policy
    submission_window_days: int = field(
        default_factory=lambda: int(os.getenv("SUBMISSION_WINDOW_DAYS", "7"))
    )
    dispute_resolution: str = field(
        default_factory=lambda: os.getenv("DISPUTE_RESOLUTION", "restore").lower()
    )
    enforce_refund_ceiling: bool = field(
        default_factory=lambda: _env_flag("ENFORCE_REFUND_CEILING", "true")
    )
    open_escrow_on_confirm: bool = field(
        default_factory=lambda: _env_flag("OPEN_ESCROW_ON_CONFIRM", "true")
    )
    currency: str = field(default_factory=lambda: os.getenv("CURRENCY", "INR"))

    # Caller tokens
    session_secret: str = field(default_factory=lambda: os.getenv("SESSION_SECRET", ""))
    token_duration_hours: int = field(
        default_factory=lambda: int(os.getenv("TOKEN_DURATION_HOURS", "8"))
    )
    allow_dev_tokens: bool = field(
        default_factory=lambda: _env_flag("ALLOW_DEV_TOKENS", "true")
    )

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    def to_dict(self) -> dict:
        """Convert config to dictionary (secrets omitted)."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "log_level": self.log_level,
            "data_dir": self.data_dir,
            "store_filename": self.store_filename,
            "submission_window_days": self.submission_window_days,
            "dispute_resolution": self.dispute_resolution,
            "enforce_refund_ceiling": self.enforce_refund_ceiling,
            "open_escrow_on_confirm": self.open_escrow_on_confirm,
            "currency": self.currency,
            "token_duration_hours": self.token_duration_hours,
            "allow_dev_tokens": self.allow_dev_tokens,
        }
