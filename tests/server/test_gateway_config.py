from pathlib import Path

import pytest

from gitlab_mcp.server.core.config.gateway_config import ConfigError, load_config

SECRET = "c" * 32


def _oauth_env(**overrides: str) -> dict[str, str]:
    env = {
        "OAUTH_ENABLED": "true",
        "OAUTH_SESSION_SECRET": SECRET,
        "GITLAB_OAUTH_CLIENT_ID": "gitlab-app",
    }
    env.update(overrides)
    return env


def test_defaults_without_environment() -> None:
    config = load_config(env={})

    assert config.host == "127.0.0.1"
    assert config.port == 8000
    assert config.oauth.enabled is False
    assert config.oauth.gitlab is None
    assert config.oauth.storage.type == "memory"
    assert config.telemetry.enabled is False


def test_environment_overlay() -> None:
    config = load_config(
        env=_oauth_env(
            HOST="0.0.0.0",
            PORT="9000",
            GITLAB_OAUTH_CLIENT_SECRET="shh",
            GITLAB_API_URL="https://gitlab.example.com/api/v4",
            GITLAB_OAUTH_SCOPES="api, read_user",
            OAUTH_TOKEN_TTL="1800",
            OAUTH_STORAGE_TYPE="file",
            OAUTH_STORAGE_FILE_PATH="/tmp/sessions.json",
            OAUTH_STORAGE_PRETTY_PRINT="yes",
            GITLAB_MCP_LOG_LEVEL="debug",
        )
    )

    assert (config.host, config.port) == ("0.0.0.0", 9000)
    gitlab = config.oauth.gitlab
    assert gitlab.client_id == "gitlab-app"
    assert gitlab.client_secret == "shh"
    assert gitlab.base_url == "https://gitlab.example.com"
    assert gitlab.scope == "api read_user"
    assert config.oauth.token_ttl_seconds == 1800
    assert config.oauth.storage.type == "file"
    assert config.oauth.storage.file.path == "/tmp/sessions.json"
    assert config.oauth.storage.file.pretty_print is True
    assert config.logging.level == "DEBUG"


def test_explicit_gitlab_base_url_wins_over_api_url() -> None:
    config = load_config(
        env=_oauth_env(
            GITLAB_BASE_URL="https://gl.internal",
            GITLAB_API_URL="https://other.example.com/api/v4",
        )
    )
    assert config.oauth.gitlab.base_url == "https://gl.internal"


def test_short_session_secret_is_rejected() -> None:
    with pytest.raises(ConfigError) as exc_info:
        load_config(env=_oauth_env(OAUTH_SESSION_SECRET="too-short"))
    assert any("at least 32 characters" in problem for problem in exc_info.value.problems)


def test_all_problems_are_reported_together() -> None:
    with pytest.raises(ConfigError) as exc_info:
        load_config(env={"OAUTH_ENABLED": "true", "PORT": "eighty"})

    message = str(exc_info.value)
    assert "PORT: expected an integer" in message
    assert "OAUTH_SESSION_SECRET is required" in message
    assert "GITLAB_OAUTH_CLIENT_ID is required" in message


def test_postgresql_is_served_by_the_relational_backend() -> None:
    config = load_config(
        env=_oauth_env(
            OAUTH_STORAGE_TYPE="postgresql",
            DATABASE_URL="sqlite:////var/lib/gateway/sessions.db",
        )
    )
    assert config.oauth.storage.type == "sqlite"
    assert config.oauth.storage.sqlite.path == "/var/lib/gateway/sessions.db"


def test_non_sqlite_database_url_is_rejected_for_relational_storage() -> None:
    with pytest.raises(ConfigError) as exc_info:
        load_config(
            env=_oauth_env(OAUTH_STORAGE_TYPE="sqlite", DATABASE_URL="postgres://db/gateway")
        )
    assert "DATABASE_URL must start with sqlite:///" in str(exc_info.value)


def test_unknown_storage_type_is_rejected() -> None:
    with pytest.raises(ConfigError) as exc_info:
        load_config(env=_oauth_env(OAUTH_STORAGE_TYPE="redis"))
    assert "OAUTH_STORAGE_TYPE must be one of" in str(exc_info.value)


def test_otlp_endpoint_enables_telemetry() -> None:
    config = load_config(env={"OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4318"})
    assert config.telemetry.enabled is True
    assert config.telemetry.endpoint == "http://collector:4318"


def test_yaml_file_is_overridden_by_environment(tmp_path: Path) -> None:
    config_file = tmp_path / "gateway.yml"
    config_file.write_text(
        f"""
port: 8123
oauth:
  enabled: true
  session_secret: "{SECRET}"
  gitlab:
    client_id: from-yaml
    base_url: https://gitlab.yaml.example
  storage:
    type: file
"""
    )

    config = load_config(
        env={"GITLAB_MCP_CONFIG": str(config_file), "GITLAB_OAUTH_CLIENT_ID": "from-env"}
    )

    assert config.port == 8123
    assert config.oauth.gitlab.client_id == "from-env"
    assert config.oauth.gitlab.base_url == "https://gitlab.yaml.example"
    assert config.oauth.storage.type == "file"


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as exc_info:
        load_config(env={}, config_path=tmp_path / "absent.yml")
    assert "Config file not found" in str(exc_info.value)


def test_config_file_must_be_a_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "list.yml"
    config_file.write_text("- one\n- two\n")
    with pytest.raises(ConfigError):
        load_config(env={}, config_path=config_file)
