import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILE_ENV_VAR = "AUTOPROTECTOR_CONFIG_FILE"

# Keys of the ``github_api`` section of the YAML config file and the
# settings fields they populate.
_GITHUB_API_KEYS = {
    "base_url": "github_api_base_url",
    "organization": "github_organization",
    "app_id": "github_app_id",
    "private_key_path": "github_private_key_path",
    "private_key": "github_private_key",
    "webhook_secret": "github_webhook_secret",
}


class ConfigError(Exception):
    """The configuration could not be read, parsed or validated."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables or YAML.

    Environment variables use the ``AUTOPROTECTOR_`` prefix, e.g.
    ``AUTOPROTECTOR_GITHUB_APP_ID``. The private key may be given either as
    a path to the ``.pem`` file GitHub generated (preferred; make sure no
    other user can read it) or as the PEM contents.

    Timing values are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPROTECTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # GitHub App. The organization slug is the one in its URL, e.g.
    # https://github.com/example-org -> "example-org".
    github_api_base_url: str = "https://api.github.com/"
    github_organization: str = ""
    github_app_id: str = ""
    github_private_key_path: Optional[Path] = None
    github_private_key: SecretStr = SecretStr("")
    github_webhook_secret: SecretStr = SecretStr("")

    # Webhook listener, consumed by the process that mounts the routes
    listen_host: str = "127.0.0.1"
    listen_port: int = Field(default=2342, ge=1, le=65535)

    # App JWT. GitHub rejects an exp more than 10 minutes ahead.
    jwt_clock_skew_seconds: int = Field(default=60, ge=0)
    jwt_lifetime_seconds: int = Field(default=540, gt=0, le=600)

    # Installation token renewal
    token_refresh_margin_seconds: int = Field(default=60, ge=0)
    token_exchange_timeout_seconds: float = Field(default=30.0, gt=0)

    # Outbound calls
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    retry_max_attempts: int = Field(default=4, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)

    debug: bool = False

    @field_validator("github_api_base_url")
    @classmethod
    def ensure_trailing_slash(cls, v: str) -> str:
        # Endpoint paths are joined onto the base URL
        return v if v.endswith("/") else f"{v}/"

    @field_validator("github_app_id", mode="before")
    @classmethod
    def coerce_app_id(cls, v: Any) -> Any:
        # The numeric App ID from the App's About page is fine in YAML
        return str(v) if isinstance(v, int) else v

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Settings":
        """Read settings from a YAML file; environment variables fill gaps.

        The GitHub App options live in a ``github_api`` section::

            github_api:
              organization: example-org
              app_id: 123456
              private_key_path: /etc/branch-autoprotector/private-key.pem
              webhook_secret: ...

        Other settings may appear at the top level under their field names.
        """
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except OSError as exc:
            raise ConfigError(f"could not read config file {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"could not parse config file {path}") from exc

        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

        values = {k: v for k, v in raw.items() if k != "github_api"}
        github_api = raw.get("github_api") or {}
        if not isinstance(github_api, dict):
            raise ConfigError(f"'github_api' in {path} must be a mapping")

        for key, value in github_api.items():
            if key not in _GITHUB_API_KEYS:
                raise ConfigError(f"unknown option 'github_api.{key}' in {path}")
            values[_GITHUB_API_KEYS[key]] = value

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration in {path}: {exc}") from exc


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process; ``get_settings.cache_clear()`` reloads."""
    config_file = os.environ.get(CONFIG_FILE_ENV_VAR)
    if config_file:
        return Settings.from_yaml(config_file)
    return Settings()
