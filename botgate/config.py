"""
Application configuration loaded from a JSON file, overridable from the
environment / .env file.

The JSON file uses camelCase keys under ``server``::

    {
      "bots": {"gate": "AA:BB:CC:DD:EE:01", "garage": "AA:BB:CC:DD:EE:02"},
      "server": {
        "address": ":8080",
        "useTLS": false,
        "certificate": "cert.pem",
        "privateKey": "key.pem",
        "authToken": "s3cret"
      }
    }

Environment variables use the ``BOTGATE_`` prefix and ``__`` between nested
keys, e.g. ``BOTGATE_SERVER__AUTH_TOKEN=s3cret``.  They win over the file.
"""

import json
import logging
import os
import re
from pathlib import Path

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.json"

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9._~-]+$")


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


class BotsConfig(BaseModel):
    gate: str
    garage: str

    @field_validator("gate", "garage")
    @classmethod
    def _check_mac(cls, value: str) -> str:
        value = value.strip()
        if not _MAC_RE.match(value):
            raise ValueError(f"malformed MAC address: {value!r}")
        return value.upper()


class ServerConfig(BaseModel):
    address: str = ":8080"
    use_tls: bool = Field(
        default=False, validation_alias=AliasChoices("use_tls", "useTLS")
    )
    certificate: str = ""
    private_key: str = Field(
        default="", validation_alias=AliasChoices("private_key", "privateKey")
    )
    # Secret path segment; only clients that know it can reach the websockets
    auth_token: str = Field(validation_alias=AliasChoices("auth_token", "authToken"))
    static_dir: str = Field(
        default="static", validation_alias=AliasChoices("static_dir", "staticDir")
    )

    @field_validator("auth_token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        if not _TOKEN_RE.match(value):
            raise ValueError("authToken must be a non-empty URL path segment")
        return value

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        _, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"address must look like 'host:port', got {value!r}")
        return value

    @property
    def host(self) -> str:
        return self.address.rpartition(":")[0] or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.address.rpartition(":")[2])


class LinkConfig(BaseModel):
    """Retry budgets and timings for the bot links."""

    connect_tries: PositiveInt = 3
    discover_service_tries: PositiveInt = 3
    discover_characteristics_tries: PositiveInt = 3
    grace_period: PositiveFloat = 15.0
    # null disables the bound / the keep-alive
    press_timeout: PositiveFloat | None = 10.0
    keepalive_interval: PositiveFloat | None = 90.0
    heartbeat_interval: PositiveFloat = 1.0


class Settings(BaseSettings):
    bots: BotsConfig
    server: ServerConfig
    link: LinkConfig = LinkConfig()
    debug: bool = False

    model_config = SettingsConfigDict(
        env_prefix="BOTGATE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # File values arrive as init kwargs; the environment overrides them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Load settings from the JSON file at ``path``.

    Falls back to ``$BOTGATE_CONFIG`` and then ``config.json``.  A missing file
    is not an error by itself (everything may come from the environment), but
    the resulting settings must validate.
    """
    config_path = Path(path or os.getenv("BOTGATE_CONFIG", DEFAULT_CONFIG_FILE))
    data: dict = {}
    if config_path.is_file():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed loading config {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config {config_path} must contain a JSON object")
    else:
        logger.warning("Config file %s not found, using environment only", config_path)

    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
