"""Configuration system for oidcflow using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.oidcflow] section (project-level)
3. ./oidcflow.toml (project-level, explicit)
4. ~/.config/oidcflow/config.toml (user-level, overrides project)
5. File named by OIDCFLOW_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use OIDCFLOW_ prefix with nested delimiter __.
Example: OIDCFLOW_CLIENT__CLIENT_ID, OIDCFLOW_INIT__RESPONSE_MODE
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("oidcflow.config")

#: response_type sent for each flow.
RESPONSE_TYPES: dict[str, str] = {
    "standard": "code",
    "implicit": "id_token token",
    "hybrid": "code id_token token",
}


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("oidcflow.toml")
    if project_toml.exists():
        files.append(project_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "oidcflow" / "config.toml"
    else:
        user_config = Path("~/.config/oidcflow/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("OIDCFLOW_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("oidcflow", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
    "redis_url",
    "token",
    "refresh_token",
    "id_token",
}

_REDACTED = "********"


class ClientSettings(BaseSettings):
    """Identity provider and client registration.

    Either a realm-based server (``url`` + ``realm``), a generic OpenID
    Connect issuer (``oidc_provider``), or a JSON adapter config document
    (``config_url``) must be configured.

    Environment prefix: OIDCFLOW_CLIENT__
    Example: OIDCFLOW_CLIENT__CLIENT_ID=my-app

    TOML section: [tool.oidcflow.client]
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDCFLOW_CLIENT__",
        extra="ignore",
    )

    url: str | None = Field(
        default=None,
        description="Base URL of the identity server (realm mode)",
    )
    realm: str | None = Field(
        default=None,
        description="Realm name (realm mode)",
    )
    client_id: str | None = Field(
        default=None,
        description="Client ID registered at the identity provider",
    )
    client_secret: str | None = Field(
        default=None,
        description="Client secret sent with the code exchange (confidential clients)",
    )
    oidc_provider: str | None = Field(
        default=None,
        description="OIDC issuer URL; metadata is discovered from /.well-known/openid-configuration",
    )
    config_url: str | None = Field(
        default=None,
        description="URL of a JSON adapter config with auth-server-url, realm and resource",
    )
    timeout: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout in seconds for identity provider requests",
    )

    def validate_required(self) -> None:
        """Check that the options required by the chosen mode are present.

        Raises
        ------
        ConfigurationError
            If a required option is missing.
        """
        if self.config_url:
            return
        if self.oidc_provider:
            if not self.client_id:
                msg = "Missing client_id for the OIDC provider"
                raise ConfigurationError(msg, option="client_id")
            return
        for option in ("url", "realm", "client_id"):
            if not getattr(self, option):
                msg = f"Missing required option: {option}"
                raise ConfigurationError(msg, option=option)


class InitSettings(BaseSettings):
    """Options accepted by ``AuthFlowManager.init``.

    Environment prefix: OIDCFLOW_INIT__
    Example: OIDCFLOW_INIT__RESPONSE_MODE=query

    TOML section: [tool.oidcflow.init]
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDCFLOW_INIT__",
        extra="ignore",
    )

    on_load: Literal["check-sso", "login-required"] | None = Field(
        default=None,
        description="Action taken when no callback or initial tokens are present",
    )
    flow: Literal["standard", "implicit", "hybrid"] = "standard"
    response_mode: Literal["query", "fragment"] = "fragment"
    pkce_method: Literal["S256"] | None = Field(
        default="S256",
        description="PKCE method; set to false to disable PKCE",
    )
    pkce_verifier_length: int = Field(default=96, ge=43, le=128)
    use_nonce: bool = True
    check_login_iframe: bool = Field(
        default=True,
        description="Monitor the provider session through the check-session frame",
    )
    check_login_iframe_interval: float = Field(default=5.0, gt=0)
    silent_check_sso_redirect_uri: str | None = None
    silent_check_sso_fallback: bool = True
    time_skew: float | None = Field(
        default=None,
        description="Initial clock skew estimate in seconds; re-estimated on every token exchange",
    )
    redirect_uri: str | None = None
    origin: str | None = Field(
        default=None,
        description="Origin of the application page, used for path-relative endpoints",
    )
    logout_method: Literal["GET", "POST"] = "GET"
    scope: str | None = None
    locale: str | None = Field(
        default=None,
        description="ui_locales sent with logins started by on_load",
    )
    message_receive_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for a reply from a hidden frame",
    )
    enable_logging: bool = False
    max_login_retries: int = Field(
        default=1,
        ge=0,
        description="Automatic re-logins after an authentication_expired error",
    )
    adapter: Literal["default", "loopback"] = "default"
    token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None

    @field_validator("pkce_method", mode="before")
    @classmethod
    def _parse_pkce_method(cls, v: Any) -> str | None:
        """Accept ``False``/"false"/"" as disabled; only S256 is supported."""
        if v is None or v is False:
            return None
        if isinstance(v, str) and v.strip().lower() in {"", "false", "none", "off"}:
            return None
        if v != "S256":
            msg = f"Invalid value for pkce_method: {v!r}. Only 'S256' or false are supported"
            raise ValueError(msg)
        return v

    @property
    def response_type(self) -> str:
        """OAuth2 response_type derived from the flow."""
        return RESPONSE_TYPES[self.flow]


class StorageSettings(BaseSettings):
    """Callback state storage.

    Environment prefix: OIDCFLOW_STORAGE__
    Example: OIDCFLOW_STORAGE__BACKEND=redis
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDCFLOW_STORAGE__",
        extra="ignore",
    )

    backend: Literal["local", "cookie", "redis"] = Field(
        default="local",
        description="local (key/value store with cookie fallback), cookie, or redis",
    )
    prefix: str = "oidcflow-callback-"
    ttl_seconds: int = Field(default=3600, ge=1)
    max_entries: int = Field(
        default=256,
        ge=1,
        description="Capacity of the in-process key/value store",
    )
    redis_url: str = "redis://localhost:6379/0"


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: OIDCFLOW_LOG__
    Example: OIDCFLOW_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDCFLOW_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


def build_settings(cls: type[BaseSettings], options: Any = None) -> Any:
    """Instantiate a settings section, converting validation failures.

    Parameters
    ----------
    cls : type[BaseSettings]
        The settings class to build.
    options : BaseSettings or dict or None
        An existing instance (returned as-is) or keyword options.

    Returns
    -------
    BaseSettings
        The validated settings instance.

    Raises
    ------
    ConfigurationError
        If an option has an invalid value.
    """
    if isinstance(options, cls):
        return options
    try:
        return cls(**(options or {}))
    except ValidationError as exc:
        first = exc.errors()[0]
        option = ".".join(str(p) for p in first.get("loc", ()))
        msg = f"Invalid value for {option}: {first.get('msg')}"
        raise ConfigurationError(msg, option=option) from exc


class OIDCFlowSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: OIDCFLOW__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.oidcflow] section
    3. ./oidcflow.toml (project-level)
    4. ~/.config/oidcflow/config.toml (user-level, overrides project)
    5. OIDCFLOW_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDCFLOW__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    client: ClientSettings = Field(default_factory=ClientSettings)
    init: InitSettings = Field(default_factory=InitSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    _sections: ClassVar[list[tuple[str, str, str]]] = [
        ("Client", "client", "CLIENT"),
        ("Init Options", "init", "INIT"),
        ("Callback Storage", "storage", "STORAGE"),
        ("Logging", "log", "LOG"),
    ]

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        merged = _deep_merge(toml_config, data)
        super().__init__(**merged)

    def _dump(self) -> dict[str, Any]:
        """Dump all sections with sensitive fields excluded."""
        return self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr, _ in self._sections},
        )

    def _redacted_names(self, attr_name: str) -> list[str]:
        section_cls = type(getattr(self, attr_name))
        return sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())

    def _held_secrets(self, attr_name: str) -> list[str]:
        section = getattr(self, attr_name)
        return [name for name in self._redacted_names(attr_name) if getattr(section, name)]

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# oidcflow Configuration", "# Generated by: oidcflow config --toml", ""]
        all_data = self._dump()

        for _, section_name, _ in self._sections:
            lines.append(f"[{section_name}]")
            for field_name, field_value in all_data.get(section_name, {}).items():
                if field_value is None:
                    # TOML has no null; leave a commented placeholder
                    lines.append(f"# {field_name} =")
                    continue
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            # Masked secrets stay commented out
            lines.extend(f'# {rn} = "{_REDACTED}"' for rn in self._held_secrets(section_name))
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# oidcflow Environment Variables",
            "# Generated by: oidcflow config --env",
            "",
        ]
        all_data = self._dump()

        for _, attr_name, env_prefix in self._sections:
            for field_name, field_value in all_data.get(attr_name, {}).items():
                if field_value is None:
                    continue
                env_name = f"OIDCFLOW_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            for redacted_name in self._held_secrets(attr_name):
                env_name = f"OIDCFLOW_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'# export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["oidcflow Configuration", "=" * 60, ""]
        all_data = self._dump()

        for display_name, attr_name, _ in self._sections:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:28} = {value_str}")
            lines.extend(f"  {rn:28} = {_REDACTED}" for rn in self._redacted_names(attr_name))

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> OIDCFlowSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return OIDCFlowSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> OIDCFlowSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
