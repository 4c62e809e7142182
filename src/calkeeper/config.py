"""Configuration loading and validation.

Reads ``calkeeper.toml``, resolves ``${VAR_NAME}`` environment references,
and returns a validated :class:`CalendarConfig` dataclass.

Example::

    [oauth]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "http://localhost:8000/api/oauth/callback"
    scopes = ["https://www.googleapis.com/auth/calendar"]

    [storage]
    application_root = "."
    token_path = "token/token.json"
    encryption_key = "${CALKEEPER_ENCRYPTION_KEY}"

    [calendar]
    default_calendar_id = "primary"

    [logging]
    level = "INFO"
    path = "logs/calendar.log"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calkeeper.errors import ConfigurationError
from calkeeper.security.cipher import decode_key

DEFAULT_CONFIG_FILENAME = "calkeeper.toml"
DEFAULT_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/calendar",)
DEFAULT_TOKEN_PATH = "token/token.json"
ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_REQUIRED_OAUTH_FIELDS = ("client_id", "client_secret", "redirect_uri")


@dataclass
class OAuthConfig:
    """OAuth client settings from the [oauth] section."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def __repr__(self) -> str:
        return (
            f"OAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r})"
        )


@dataclass
class StorageConfig:
    """Credential storage settings from the [storage] section."""

    application_root: Path = field(default_factory=Path.cwd)
    token_path: str = DEFAULT_TOKEN_PATH
    encryption_key: bytes | None = None

    def __repr__(self) -> str:
        key = "<REDACTED>" if self.encryption_key else None
        return (
            f"StorageConfig(application_root={self.application_root!r}, "
            f"token_path={self.token_path!r}, encryption_key={key})"
        )


@dataclass
class CalendarSettings:
    """Calendar API behavior from the [calendar] section."""

    default_calendar_id: str | None = None
    timezone: str = "UTC"
    max_results_per_page: int = 250
    http_timeout_seconds: float = 30.0
    expiry_skew_seconds: int = 60


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    path: str | None = None


@dataclass
class CacheConfig:
    """Calendar-list cache from the [cache] section."""

    enabled: bool = False
    path: str = "cache/calendars.json"
    ttl_seconds: int = 3600


@dataclass
class WebConfig:
    """Web boundary settings from the [web] section."""

    secure_cookies: bool = True
    debug: bool = False
    dashboard_url: str | None = None
    cors_origins: tuple[str, ...] = ()


@dataclass
class CalendarConfig:
    """Parsed and validated calkeeper configuration."""

    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def validate(self) -> None:
        """Raise ``ConfigurationError`` when required OAuth settings are absent."""
        missing = [
            name for name in _REQUIRED_OAUTH_FIELDS if not str(getattr(self.oauth, name)).strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if not self.oauth.scopes:
            raise ConfigurationError("oauth.scopes must list at least one scope")

    @classmethod
    def from_mapping(
        cls,
        data: dict[str, Any],
        *,
        base_dir: Path | None = None,
    ) -> CalendarConfig:
        """Build a config from an already-parsed mapping (e.g. TOML data).

        ``${VAR}`` references are resolved first.  A relative
        ``storage.application_root`` is interpreted relative to *base_dir*
        (default: the current directory).
        """
        data = resolve_env_vars(data)
        base = base_dir or Path.cwd()

        config = cls(
            oauth=_parse_oauth(_section(data, "oauth")),
            storage=_parse_storage(_section(data, "storage"), base),
            calendar=_parse_calendar(_section(data, "calendar")),
            logging=_parse_logging(_section(data, "logging")),
            cache=_parse_cache(_section(data, "cache")),
            web=_parse_web(_section(data, "web")),
        )
        config.validate()
        return config


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigurationError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        # The original value is not echoed: it may be a secret template.
        raise ConfigurationError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    return section


def _parse_oauth(section: dict[str, Any]) -> OAuthConfig:
    raw_scopes = section.get("scopes", list(DEFAULT_SCOPES))
    if isinstance(raw_scopes, str):
        raw_scopes = raw_scopes.split()
    if not isinstance(raw_scopes, list):
        raise ConfigurationError("oauth.scopes must be a list of strings")
    scopes = tuple(str(s).strip() for s in raw_scopes if str(s).strip())

    return OAuthConfig(
        client_id=str(section.get("client_id", "")).strip(),
        client_secret=str(section.get("client_secret", "")).strip(),
        redirect_uri=str(section.get("redirect_uri", "")).strip(),
        scopes=scopes,
    )


def _parse_storage(section: dict[str, Any], base_dir: Path) -> StorageConfig:
    root = Path(str(section.get("application_root", ".")))
    if not root.is_absolute():
        root = base_dir / root

    raw_key = section.get("encryption_key")
    if raw_key is None or (isinstance(raw_key, str) and not raw_key.strip()):
        raw_key = os.environ.get(ENCRYPTION_KEY_ENV) or None

    # decode_key raises InvalidKeyError for a wrong-length key; that is fatal.
    encryption_key = decode_key(raw_key) if raw_key is not None else None

    return StorageConfig(
        application_root=root,
        token_path=str(section.get("token_path", DEFAULT_TOKEN_PATH)),
        encryption_key=encryption_key,
    )


def _positive_int(section: dict[str, Any], key: str, default: int, prefix: str) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{prefix}.{key} must be an integer") from exc
    if value <= 0:
        raise ConfigurationError(f"Invalid {prefix}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_calendar(section: dict[str, Any]) -> CalendarSettings:
    default_calendar_id = section.get("default_calendar_id")
    if default_calendar_id is not None:
        default_calendar_id = str(default_calendar_id).strip() or None

    try:
        timeout = float(section.get("http_timeout_seconds", 30.0))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("calendar.http_timeout_seconds must be a number") from exc
    if timeout <= 0:
        raise ConfigurationError("calendar.http_timeout_seconds must be positive")

    skew = section.get("expiry_skew_seconds", 60)
    if not isinstance(skew, int) or isinstance(skew, bool) or skew < 0:
        raise ConfigurationError("calendar.expiry_skew_seconds must be a non-negative integer")

    return CalendarSettings(
        default_calendar_id=default_calendar_id,
        timezone=str(section.get("timezone", "UTC")),
        max_results_per_page=min(
            _positive_int(section, "max_results_per_page", 250, "calendar"), 2500
        ),
        http_timeout_seconds=timeout,
        expiry_skew_seconds=skew,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        level = "ERROR"
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigurationError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'.")
    path = section.get("path")
    if section.get("enabled") is False:
        path = None
    return LoggingConfig(level=level, format=fmt, path=str(path) if path else None)


def _parse_cache(section: dict[str, Any]) -> CacheConfig:
    return CacheConfig(
        enabled=bool(section.get("enabled", False)),
        path=str(section.get("path", "cache/calendars.json")),
        ttl_seconds=_positive_int(section, "ttl_seconds", section.get("ttl", 3600), "cache"),
    )


def _parse_web(section: dict[str, Any]) -> WebConfig:
    origins = section.get("cors_origins", [])
    if not isinstance(origins, list):
        raise ConfigurationError("web.cors_origins must be a list of strings")
    dashboard_url = str(section.get("dashboard_url", "")).strip() or None
    return WebConfig(
        secure_cookies=bool(section.get("secure_cookies", True)),
        debug=bool(section.get("debug", False)),
        dashboard_url=dashboard_url,
        cors_origins=tuple(str(o) for o in origins),
    )


def load_config(path: Path) -> CalendarConfig:
    """Load and validate a ``calkeeper.toml`` file.

    *path* may be the file itself or a directory containing
    ``calkeeper.toml``.  A relative ``storage.application_root`` is resolved
    against the directory holding the file.

    Raises
    ------
    ConfigurationError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    path = Path(path)
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigurationError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return CalendarConfig.from_mapping(data, base_dir=toml_path.parent.resolve())
