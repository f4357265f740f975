"""Application settings with Pydantic Settings validation.

Secrets (feed credentials, database password) are loaded from the .env file
or the environment. Non-sensitive configuration is loaded from
config/main.yaml and config/*.yaml files, merged, and validated against
JSON schemas in config/schemas/.
"""

import json
import os
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.logging_config import get_logger
from src.domain.exceptions import ConfigurationError
from src.domain.models import ClassificationRules, MatchMode
from src.domain.polling_constants import (
    CONTENT_COOLDOWN_HOURS,
    DEFAULT_BATCH_PAUSE_SECONDS,
    DEFAULT_BIG_SALE_THRESHOLD,
    DEFAULT_CATCHUP_LOOKBACK_HOURS,
    DEFAULT_ENRICHMENT_DELAY_SECONDS,
    DEFAULT_LOOKBACK_BUFFER_MINUTES,
    DEFAULT_MAX_RUN_ERRORS,
    DEFAULT_PROCESSING_BATCH_SIZE,
    DEFAULT_RECENT_IDS_CACHE_SIZE,
    DEFAULT_TGL_MARKER_TEXT,
)

POSTGRES_POOL_MIN_DEFAULT: Final[int] = 1
POSTGRES_POOL_MAX_DEFAULT: Final[int] = 12
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 15_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 5
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "sales_celebration_bot"

SERVICETITAN_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0
SERVICETITAN_PAGE_SIZE_DEFAULT: Final[int] = 200
DISPATCH_TIMEOUT_SECONDS_DEFAULT: Final[float] = 10.0

CONFIG_DIR_ENV: Final[str] = "CELEBRATION_CONFIG_DIR"
DEFAULT_CONFIG_DIR: Final[str] = "config"

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; lists are replaced."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _config_dir() -> Path:
    return Path(os.getenv(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR))


def load_schema(schema_name: str) -> dict[str, Any]:
    """JSON Schema for a config file stem, or ``{}`` when none is shipped."""
    schema_path = _config_dir() / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any], schema_name: str, file_path: str = ""
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ConfigurationError: If validation fails
    """
    schema = load_schema(schema_name)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ConfigurationError(error_msg) from e


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return loaded


def load_all_configs() -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    Loading order (later overrides earlier):
    1. main.yaml
    2. All other *.yaml files (sorted alphabetically)

    Each file is validated against its JSON Schema if available.

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigurationError: If a file is unreadable or fails schema validation
    """
    config_dir = _config_dir()
    merged_config: dict[str, Any] = {}
    if not config_dir.is_dir():
        logger.debug("config_dir_missing", path=str(config_dir))
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    ordered = ([main_path] if main_path.exists() else []) + yaml_files

    for yaml_file in ordered:
        file_config = _read_yaml(yaml_file)
        validate_config_section(file_config, yaml_file.stem, str(yaml_file))
        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=yaml_file.stem)

    logger.info("config_load_complete", file_count=len(ordered))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env / environment.
    Non-sensitive config is loaded from YAML with fallback to defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    servicetitan_client_id: str | None = Field(
        default=None, description="ServiceTitan OAuth client id (from .env)"
    )
    servicetitan_client_secret: SecretStr | None = Field(
        default=None, description="ServiceTitan OAuth client secret (from .env)"
    )
    servicetitan_app_key: SecretStr | None = Field(
        default=None, description="ServiceTitan application key (from .env)"
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    # === UPSTREAM FEED ===

    servicetitan_base_url: str = Field(
        default="https://api.servicetitan.io", description="ServiceTitan API base URL"
    )
    servicetitan_auth_url: str = Field(
        default="https://auth.servicetitan.io/connect/token",
        description="ServiceTitan OAuth token endpoint",
    )
    servicetitan_tenant_id: str = Field(default="", description="ServiceTitan tenant")
    servicetitan_timeout_seconds: float = Field(
        default=SERVICETITAN_TIMEOUT_SECONDS_DEFAULT, gt=0
    )
    servicetitan_page_size: int = Field(default=SERVICETITAN_PAGE_SIZE_DEFAULT, ge=1)

    # === POLLING ===

    polling_enabled: bool = Field(default=True, description="Master polling switch")
    big_sale_threshold: float = Field(
        default=DEFAULT_BIG_SALE_THRESHOLD,
        ge=0,
        description="Amount a sale must exceed to be celebrated",
    )
    tgl_marker_text: str = Field(
        default=DEFAULT_TGL_MARKER_TEXT, description="Text identifying a TGL"
    )
    tgl_match_mode: MatchMode = Field(
        default=MatchMode.SUBSTRING, description="substring or exact"
    )
    tgl_case_sensitive: bool = Field(default=True)
    lookback_buffer_minutes: int = Field(
        default=DEFAULT_LOOKBACK_BUFFER_MINUTES,
        ge=0,
        description="Regular/manual poll overlap behind the watermark",
    )
    catchup_lookback_hours: int = Field(
        default=DEFAULT_CATCHUP_LOOKBACK_HOURS,
        ge=1,
        description="Catchup poll window",
    )
    recent_ids_cache_size: int = Field(
        default=DEFAULT_RECENT_IDS_CACHE_SIZE,
        ge=1,
        description="Recently-processed id FIFO size",
    )
    enrichment_delay_seconds: float = Field(
        default=DEFAULT_ENRICHMENT_DELAY_SECONDS, ge=0
    )
    processing_batch_size: int = Field(default=DEFAULT_PROCESSING_BATCH_SIZE, ge=1)
    batch_pause_seconds: float = Field(default=DEFAULT_BATCH_PAUSE_SECONDS, ge=0)
    max_run_errors: int = Field(default=DEFAULT_MAX_RUN_ERRORS, ge=1)
    content_cooldown_hours: int = Field(default=CONTENT_COOLDOWN_HOURS, ge=0)
    dispatch_timeout_seconds: float = Field(
        default=DISPATCH_TIMEOUT_SECONDS_DEFAULT, gt=0
    )

    # === DATABASE ===

    database_type: Literal["sqlite", "postgres"] = Field(default="sqlite")
    db_path: str = Field(default="data/celebrations.db", description="SQLite file")
    postgres_host: str = Field(default="localhost")
    postgres_port: int = Field(default=5432, ge=1, le=65535)
    postgres_database: str = Field(default="celebrations")
    postgres_user: str = Field(default="postgres")
    # Overlapping pollers each hold one connection while they run.
    postgres_min_connections: int = Field(default=POSTGRES_POOL_MIN_DEFAULT, ge=1)
    postgres_max_connections: int = Field(default=POSTGRES_POOL_MAX_DEFAULT, ge=1)
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT, ge=0
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT, ge=1
    )
    postgres_application_name: str = Field(default=POSTGRES_APPLICATION_NAME_DEFAULT)
    postgres_ssl_mode: str | None = Field(
        default=None, description="libpq sslmode, e.g. require"
    )

    # === OBSERVABILITY ===

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")
    metrics_port: int = Field(default=9000, description="Prometheus exporter port")

    @field_validator("tgl_marker_text")
    @classmethod
    def _marker_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("tgl_marker_text must not be empty")
        return value

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)
        updates: dict[str, Any] = {}

        def _assign(field_name: str, value: Any) -> None:
            if value is None or field_name in fields_from_env:
                return
            updates[field_name] = value

        servicetitan_config = config.get("servicetitan") or {}
        _assign("servicetitan_base_url", servicetitan_config.get("base_url"))
        _assign("servicetitan_auth_url", servicetitan_config.get("auth_url"))
        _assign("servicetitan_tenant_id", servicetitan_config.get("tenant_id"))
        _assign(
            "servicetitan_timeout_seconds", servicetitan_config.get("timeout_seconds")
        )
        _assign("servicetitan_page_size", servicetitan_config.get("page_size"))

        polling_config = config.get("polling") or {}
        _assign("polling_enabled", polling_config.get("enabled"))
        _assign("lookback_buffer_minutes", polling_config.get("lookback_buffer_minutes"))
        _assign("catchup_lookback_hours", polling_config.get("catchup_lookback_hours"))
        _assign("recent_ids_cache_size", polling_config.get("recent_ids_cache_size"))
        _assign(
            "enrichment_delay_seconds", polling_config.get("enrichment_delay_seconds")
        )
        _assign("processing_batch_size", polling_config.get("batch_size"))
        _assign("batch_pause_seconds", polling_config.get("batch_pause_seconds"))
        _assign("max_run_errors", polling_config.get("max_run_errors"))

        classification_config = config.get("classification") or {}
        _assign("big_sale_threshold", classification_config.get("big_sale_threshold"))
        _assign("tgl_marker_text", classification_config.get("tgl_marker_text"))
        _assign("tgl_match_mode", classification_config.get("tgl_match_mode"))
        _assign("tgl_case_sensitive", classification_config.get("tgl_case_sensitive"))

        delivery_config = config.get("delivery") or {}
        _assign("dispatch_timeout_seconds", delivery_config.get("timeout_seconds"))
        _assign("content_cooldown_hours", delivery_config.get("cooldown_hours"))

        database_config = config.get("database") or {}
        _assign("database_type", database_config.get("type"))
        _assign("db_path", database_config.get("path"))

        postgres_config = database_config.get("postgres") or {}
        _assign("postgres_host", postgres_config.get("host"))
        _assign("postgres_port", postgres_config.get("port"))
        _assign("postgres_database", postgres_config.get("database"))
        _assign("postgres_user", postgres_config.get("user"))
        _assign("postgres_min_connections", postgres_config.get("min_connections"))
        _assign("postgres_max_connections", postgres_config.get("max_connections"))
        _assign(
            "postgres_statement_timeout_ms",
            postgres_config.get("statement_timeout_ms"),
        )
        _assign(
            "postgres_connect_timeout_seconds",
            postgres_config.get("connect_timeout_seconds"),
        )
        _assign("postgres_application_name", postgres_config.get("application_name"))
        _assign("postgres_ssl_mode", postgres_config.get("ssl_mode"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("log_json", logging_config.get("json"))

        if not updates:
            return

        # Re-validate YAML values through the same field constraints as env values.
        validated = self.__class__.model_validate(
            {**self.model_dump(), **updates}
        )
        for field_name in updates:
            object.__setattr__(self, field_name, getattr(validated, field_name))
            self.model_fields_set.add(field_name)

    def classification_rules(self) -> ClassificationRules:
        """Qualification rules derived from configuration."""
        return ClassificationRules(
            big_sale_threshold=self.big_sale_threshold,
            tgl_marker_text=self.tgl_marker_text,
            tgl_match_mode=self.tgl_match_mode,
            tgl_case_sensitive=self.tgl_case_sensitive,
        )


def load_settings(**overrides: Any) -> Settings:
    """Build settings, converting validation failures to ConfigurationError."""
    try:
        return Settings(**overrides)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Raises:
        ConfigurationError: If configuration is malformed
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
