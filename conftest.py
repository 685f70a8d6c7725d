"""
Test conftest — isolate Snowflake credentials and config-path environment
variables so Settings() behaves the same on a developer machine and in CI.
"""
import pytest

_ENV_VARS = [
    "SNOWFLAKE_PASSWORD",
    "SNOWFLAKE_TOKEN",
    "DIGITALSE_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_snowflake_env(monkeypatch):
    """Remove credential env vars for every test and disable .env loading so
    a local .env file doesn't leak real credentials into tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import digitalse.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
