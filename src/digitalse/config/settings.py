"""
config/settings.py — DigitalSE Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered: all fields are validated and typed.

  - BudgetConfig rejects non-positive limits at parse time
  - SafetyConfig refuses a confirm set that leaves DESTRUCTIVE out
  - CostOverride values must be positive
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a numbered, human-readable list of every problem
  - load_settings() respects DIGITALSE_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from digitalse.exceptions import ConfigurationError


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(ConfigurationError):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_SIDE_EFFECTS = {"READ", "WRITE", "DESTRUCTIVE"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    name: str = "DigitalSE"
    version: str = "1.0.0"
    max_context_turns: int = 20

    @field_validator("max_context_turns")
    @classmethod
    def _positive_turns(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_context_turns must be >= 1")
        return v


class BudgetConfig(BaseModel):
    """Per-turn ceiling on wall-clock seconds and tokens."""
    seconds: float = 60.0
    tokens: int = 32000

    @field_validator("seconds")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("budget.seconds must be > 0")
        return v

    @field_validator("tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("budget.tokens must be >= 1")
        return v


class CostOverride(BaseModel):
    seconds: Optional[float] = None
    tokens: Optional[int] = None
    max_seconds: Optional[float] = None

    @field_validator("seconds", "max_seconds")
    @classmethod
    def _positive_float(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("cost seconds must be > 0")
        return v

    @field_validator("tokens")
    @classmethod
    def _non_negative_tokens(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("cost tokens must be >= 0")
        return v


class CostsConfig(BaseModel):
    """Overrides for the catalog's static per-tool estimates, keyed by tool name."""
    tools: dict[str, CostOverride] = Field(default_factory=dict)


class ExecutorConfig(BaseModel):
    max_concurrency: int = 4
    retry_transient_reads: bool = True

    @field_validator("max_concurrency")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("executor.max_concurrency must be >= 1")
        return v


class SafetyConfig(BaseModel):
    confirm_side_effects: list[str] = Field(default_factory=lambda: ["WRITE", "DESTRUCTIVE"])

    @field_validator("confirm_side_effects")
    @classmethod
    def _valid_side_effects(cls, v: list[str]) -> list[str]:
        upper = [x.upper() for x in v]
        bad = [x for x in upper if x not in _VALID_SIDE_EFFECTS]
        if bad:
            raise ValueError(
                f"safety.confirm_side_effects has unknown values: {bad}. "
                f"Valid values: {sorted(_VALID_SIDE_EFFECTS)}"
            )
        if "DESTRUCTIVE" not in upper:
            raise ValueError(
                "safety.confirm_side_effects must include DESTRUCTIVE. "
                "Destructive statements always require confirmation."
            )
        return upper


class SnowflakeConfig(BaseModel):
    account: str = ""
    user: str = ""
    role: str = "DIGITALSE_ADMIN_RL"
    warehouse: str = "DIGITALSE_WH"
    database: str = "DIGITALSE"
    documentation_service: str = "SNOWFLAKE_DOCUMENTATION.SHARED.CKE_SNOWFLAKE_DOCS_SERVICE"
    documentation_max_results: int = 5
    semantic_view: str = "DIGITALSE.PUBLIC.ACCOUNT_USAGE_SEMANTIC_VIEW"
    analyst_timeout_seconds: float = 45.0

    @field_validator("documentation_max_results")
    @classmethod
    def _positive_results(cls, v: int) -> int:
        if v < 1:
            raise ValueError("snowflake.documentation_max_results must be >= 1")
        return v

    @property
    def account_url(self) -> str:
        return f"https://{self.account}.snowflakecomputing.com"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────


_yaml_sections: ContextVar[Optional[dict[str, Any]]] = ContextVar("digitalse_yaml_sections", default=None)


class YamlSectionsSource(PydanticBaseSettingsSource):
    """Sections read from config.yaml by load_settings(). Ranked below env and .env."""

    def get_field_value(self, field, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return dict(_yaml_sections.get() or {})


class Settings(BaseSettings):
    """
    DigitalSE runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    snowflake_password: Optional[str] = Field(default=None, alias="SNOWFLAKE_PASSWORD")
    snowflake_token: Optional[str] = Field(default=None, alias="SNOWFLAKE_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    costs: CostsConfig = Field(default_factory=CostsConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    snowflake: SnowflakeConfig = Field(default_factory=SnowflakeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlSectionsSource(settings_cls),
            file_secret_settings,
        )

    # -- Convenience properties ----------------------------------------------

    @property
    def agent_name(self) -> str:
        return self.agent.name

    def validate_all(self, online: bool = True) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems that Pydantic can't see.

        Args:
            online: When False (offline demo mode) Snowflake credentials are
                    not required.
        """
        errors: list[str] = []

        # ── Snowflake connection ─────────────────────────────────────────────
        if online:
            if not self.snowflake.account.strip():
                errors.append("snowflake.account must be set to reach the warehouse.")
            if not self.snowflake.user.strip():
                errors.append("snowflake.user must be set to reach the warehouse.")
            if not (self.snowflake_password or self.snowflake_token):
                errors.append(
                    "Either SNOWFLAKE_PASSWORD or SNOWFLAKE_TOKEN must be set "
                    "in your .env file."
                )
            if not self.snowflake_token:
                errors.append(
                    "The usage analyst needs SNOWFLAKE_TOKEN for the Cortex "
                    "Analyst REST endpoint."
                )

        # ── Per-call ceilings cannot exceed the whole turn ───────────────────
        for tool, override in sorted(self.costs.tools.items()):
            if override.max_seconds is not None and override.max_seconds > self.budget.seconds:
                errors.append(
                    f"costs.tools.{tool}.max_seconds ({override.max_seconds:g}) is "
                    f"larger than budget.seconds ({self.budget.seconds:g})."
                )
            if override.tokens is not None and override.tokens > self.budget.tokens:
                errors.append(
                    f"costs.tools.{tool}.tokens ({override.tokens}) is larger than "
                    f"budget.tokens ({self.budget.tokens}); the tool could never run."
                )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nDigitalSE startup failed: {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()

_KNOWN_SECTIONS = {
    "agent", "budget", "costs", "executor", "safety", "snowflake", "logging",
}


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. DIGITALSE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("DIGITALSE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from config.yaml, environment variables and .env.
    Environment variables (e.g. BUDGET__SECONDS=30) override YAML values.
    """
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    sections = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    token = _yaml_sections.set(sections)
    try:
        instance = Settings()
    finally:
        _yaml_sections.reset(token)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use.
    """
    if _singleton is not None:
        return _singleton  # no lock needed once set
    return load_settings()
