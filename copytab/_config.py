"""Configuration: environment settings and persisted client preferences."""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from copytab.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "COPYTAB_"
DEFAULT_HOME = Path("~/.copytab")


class Settings(BaseSettings):
    """Settings read from ``COPYTAB_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote store
    remote_url: str
    remote_key: str

    # Text generation
    generation_api_key: str
    generation_url: str | None = None

    # Local data
    home: Path = DEFAULT_HOME

    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=5, ge=1)
    auto_sync_interval: float | None = Field(default=None, gt=0)

    @property
    def data_dir(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def database_path(self) -> Path:
        return self.data_dir / "offline.db"

    @property
    def completion_url(self) -> str:
        """Base URL of the generation backend (defaults to the remote store)."""
        return self.generation_url or self.remote_url


def load_settings(**overrides: Any) -> Settings:
    """Load settings, failing fast when required values are missing.

    Args:
        **overrides: Values that take precedence over the environment.

    Returns:
        Validated settings.

    Raises:
        ConfigurationError: If a required value is missing or a value is
            invalid. The message names the environment variables involved.
    """
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        missing = []
        invalid = []
        for error in e.errors():
            name = f"{ENV_PREFIX}{str(error['loc'][0]).upper()}" if error["loc"] else ENV_PREFIX
            if error["type"] == "missing":
                missing.append(name)
            else:
                invalid.append(f"{name} ({error['msg']})")
        parts = []
        if missing:
            parts.append(f"missing required setting(s): {', '.join(missing)}")
        if invalid:
            parts.append(f"invalid setting(s): {', '.join(invalid)}")
        raise ConfigurationError("; ".join(parts) or str(e)) from e


class ConfigManager:
    """Manages persisted client preferences.

    Preferences live in ``config.json`` under the data directory: the
    active session user and the time of the last successful sync.
    """

    def __init__(self, base_path: Path) -> None:
        """Initialize the configuration manager.

        Args:
            base_path: Directory holding ``config.json``.
        """
        self.base_path = base_path
        self.config_path = base_path / "config.json"

    def load_config(self) -> dict[str, Any]:
        """Load configuration from config.json.

        Returns:
            Configuration dictionary.
        """
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Ignoring unreadable %s: %s", self.config_path, e)
                return {}
        return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to config.json.

        Args:
            config: Configuration dictionary to save.
        """
        self.base_path.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(config, f, indent=2)

    def get_session_user(self) -> str | None:
        """Get the persisted session user id, if any."""
        return self.load_config().get("session_user") or None

    def set_session_user(self, user_id: str | None) -> None:
        """Persist the session user id; None clears it.

        Args:
            user_id: User id or None.
        """
        config = self.load_config()
        if user_id:
            config["session_user"] = user_id
        else:
            config.pop("session_user", None)
        self.save_config(config)

    def get_last_sync(self) -> str | None:
        """Get the time of the last successful sync cycle."""
        return self.load_config().get("last_sync_at")

    def set_last_sync(self, timestamp: str) -> None:
        """Record the time of a successful sync cycle.

        Args:
            timestamp: ISO timestamp.
        """
        config = self.load_config()
        config["last_sync_at"] = timestamp
        self.save_config(config)
