import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from gitlab_mcp.server.core.config.models import GatewayConfigModel

# No logging in this module as it's used to load the logging config

__all__ = ["ConfigError", "load_config"]

CONFIG_PATH_ENV = "GITLAB_MCP_CONFIG"
SQLITE_URL_PREFIX = "sqlite:///"
STORAGE_TYPE_ALIASES = {"postgresql": "sqlite", "postgres": "sqlite"}
VALID_STORAGE_TYPES = ("memory", "file", "sqlite")


class ConfigError(ValueError):
    """Raised when the gateway configuration is invalid.

    ``problems`` holds every issue found, not just the first one.
    """

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid gateway configuration:\n" + "\n".join(f"  - {p}" for p in problems))


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _parse_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ValueError(f"expected an integer, got {value!r}") from exc


def _set(config: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = config
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[leaf] = value


# (env var, dotted config key, parser)
_ENV_FIELDS: list[tuple[str, str, Callable[[str], Any]]] = [
    ("HOST", "host", str),
    ("PORT", "port", _parse_int),
    ("GITLAB_MCP_BASE_URL", "base_url", str),
    ("OAUTH_ENABLED", "oauth.enabled", _parse_bool),
    ("OAUTH_SESSION_SECRET", "oauth.session_secret", str),
    ("OAUTH_TOKEN_TTL", "oauth.token_ttl_seconds", _parse_int),
    ("OAUTH_REFRESH_TOKEN_TTL", "oauth.refresh_token_ttl_seconds", _parse_int),
    ("OAUTH_DEVICE_POLL_INTERVAL", "oauth.device_poll_interval_seconds", _parse_int),
    ("OAUTH_DEVICE_TIMEOUT", "oauth.device_timeout_seconds", _parse_int),
    ("OAUTH_STORAGE_FILE_PATH", "oauth.storage.file.path", str),
    ("OAUTH_STORAGE_SAVE_INTERVAL", "oauth.storage.file.save_interval_ms", _parse_int),
    ("OAUTH_STORAGE_PRETTY_PRINT", "oauth.storage.file.pretty_print", _parse_bool),
    ("OAUTH_STORAGE_SQLITE_PATH", "oauth.storage.sqlite.path", str),
    ("OAUTH_ENCRYPTION_KEY", "oauth.storage.sqlite.encryption_key", str),
    ("GITLAB_MCP_LOG_LEVEL", "logging.level", str.upper),
    ("GITLAB_MCP_LOG_FILE", "logging.path", str),
]


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError([f"Config file not found: {path}"])
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError([f"Config file {path} must contain a mapping"])
    return data


def _apply_gitlab_env(config: dict[str, Any], env: Mapping[str, str]) -> None:
    oauth = config.get("oauth") or {}
    gitlab = oauth.get("gitlab") if isinstance(oauth, dict) else None
    if gitlab is None and not env.get("GITLAB_OAUTH_CLIENT_ID"):
        return

    if env.get("GITLAB_OAUTH_CLIENT_ID"):
        _set(config, "oauth.gitlab.client_id", env["GITLAB_OAUTH_CLIENT_ID"])
    if env.get("GITLAB_OAUTH_CLIENT_SECRET"):
        _set(config, "oauth.gitlab.client_secret", env["GITLAB_OAUTH_CLIENT_SECRET"])

    base_url = env.get("GITLAB_BASE_URL")
    if not base_url and env.get("GITLAB_API_URL"):
        base_url = env["GITLAB_API_URL"].rstrip("/").removesuffix("/api/v4")
    if base_url:
        _set(config, "oauth.gitlab.base_url", base_url)

    if env.get("GITLAB_OAUTH_SCOPES"):
        # Comma-separated in the environment, space-separated on the wire
        scopes = [s.strip() for s in env["GITLAB_OAUTH_SCOPES"].split(",") if s.strip()]
        _set(config, "oauth.gitlab.scope", " ".join(scopes))


def _apply_storage_env(config: dict[str, Any], env: Mapping[str, str], problems: list[str]) -> None:
    raw_type = env.get("OAUTH_STORAGE_TYPE")
    if raw_type:
        storage_type = raw_type.strip().lower()
        storage_type = STORAGE_TYPE_ALIASES.get(storage_type, storage_type)
        if storage_type not in VALID_STORAGE_TYPES:
            problems.append(
                f"OAUTH_STORAGE_TYPE must be one of {', '.join(VALID_STORAGE_TYPES)} "
                f"(or postgresql), got {raw_type!r}"
            )
        else:
            _set(config, "oauth.storage.type", storage_type)

    if env.get("OAUTH_STORAGE_SQLITE_PATH"):
        return
    database_url = env.get("DATABASE_URL") or env.get("OAUTH_STORAGE_POSTGRESQL_URL")
    if not database_url:
        return
    if database_url.startswith(SQLITE_URL_PREFIX):
        _set(config, "oauth.storage.sqlite.path", database_url[len(SQLITE_URL_PREFIX) :])
    elif config.get("oauth", {}).get("storage", {}).get("type") == "sqlite":
        problems.append(f"DATABASE_URL must start with {SQLITE_URL_PREFIX} for the relational backend")


def _apply_env(config: dict[str, Any], env: Mapping[str, str]) -> list[str]:
    problems: list[str] = []
    for name, key, parse in _ENV_FIELDS:
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            _set(config, key, parse(raw))
        except ValueError as exc:
            problems.append(f"{name}: {exc}")

    _apply_gitlab_env(config, env)
    _apply_storage_env(config, env, problems)

    endpoint = env.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        _set(config, "telemetry.endpoint", endpoint)
        _set(config, "telemetry.enabled", True)
    return problems


def _format_validation_error(exc: ValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        problems.append(f"{location}: {message}" if location else message)
    return problems


def load_config(
    env: Mapping[str, str] | None = None,
    config_path: str | Path | None = None,
) -> GatewayConfigModel:
    """Load the gateway configuration.

    An optional YAML file (``config_path`` or ``$GITLAB_MCP_CONFIG``) provides the
    base; environment variables override it.

    Raises:
        ConfigError: With every problem found, after the whole config was checked
    """
    env = os.environ if env is None else env
    path = config_path or env.get(CONFIG_PATH_ENV)

    config: dict[str, Any] = _read_config_file(Path(path)) if path else {}
    problems = _apply_env(config, env)

    try:
        model = GatewayConfigModel.model_validate(config)
    except ValidationError as exc:
        raise ConfigError(problems + _format_validation_error(exc)) from exc

    if problems:
        raise ConfigError(problems)
    return model
