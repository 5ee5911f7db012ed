"""Application settings with Pydantic Settings validation.

Secrets (bot token, API keys, passwords) are loaded from the environment or a
.env file. Non-sensitive configuration is loaded from config/main.yaml and any
other config/*.yaml files, merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from media_ingest.config.logging_config import get_logger
from media_ingest.domain.processing_constants import (
    AI_ESCALATION_CONFIDENCE_THRESHOLD,
    FILE_REFERENCE_TTL,
    INCONSISTENT_GROUP_BATCH_SIZE,
    MAX_REDOWNLOAD_ATTEMPTS,
    MAX_STALLED_RETRIES,
    MEDIA_GROUP_RECHECK_DELAY,
    STALE_PROCESSING_TIMEOUT,
)

CONFIG_DIR: Final[Path] = Path("config")

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "telegram_media_ingest"

TELEGRAM_API_BASE_URL_DEFAULT: Final[str] = "https://api.telegram.org"
TELEGRAM_REQUEST_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0
TELEGRAM_MAX_RETRIES_DEFAULT: Final[int] = 3

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str, config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load JSON Schema from ``<config_dir>/schemas/``; empty dict if absent."""
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = CONFIG_DIR,
) -> None:
    """Validate a config section against its JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
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
        raise ValueError(error_msg) from e


def _load_yaml_file(path: Path, config_dir: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    validate_config_section(data, path.stem, str(path), config_dir)
    logger.debug("config_file_loaded", path=str(path), schema=path.stem)
    return data


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from ``config_dir``.

    ``main.yaml`` is loaded first, then every other ``*.yaml`` file in
    alphabetical order, each overriding what came before. Validation errors
    propagate; unreadable files are logged and skipped.
    """
    merged_config: dict[str, Any] = {}
    if not config_dir.is_dir():
        logger.info("config_load_complete", file_count=0)
        return merged_config

    main_path = config_dir / "main.yaml"
    others = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    paths = ([main_path] if main_path.exists() else []) + others

    loaded = 0
    for path in paths:
        try:
            file_config = _load_yaml_file(path, config_dir)
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(path), error=str(e))
            continue
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(path),
                schema=path.stem,
                error=str(e),
            )
            raise
        merged_config = deep_merge(merged_config, file_config)
        loaded += 1

    logger.info("config_load_complete", file_count=loaded)
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets come from the environment or .env. Everything else comes from
    config/*.yaml with fallback to the defaults declared here. Values set in
    the environment always win over YAML.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    telegram_bot_token: SecretStr | None = Field(
        default=None, description="Telegram Bot API token (from .env)"
    )
    openai_api_key: SecretStr | None = Field(
        default=None, description="OpenAI API key (from .env, optional)"
    )
    minio_access_key: SecretStr | None = Field(
        default=None, description="MinIO access key (from .env)"
    )
    minio_secret_key: SecretStr | None = Field(
        default=None, description="MinIO secret key (from .env)"
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )
    webhook_secret_token: SecretStr | None = Field(
        default=None,
        description="Expected X-Telegram-Bot-Api-Secret-Token header value",
    )

    def __init__(self, _config_dir: Path | str | None = None, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs(Path(_config_dir) if _config_dir else CONFIG_DIR)

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

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

        telegram_config = config.get("telegram") or {}
        _assign("telegram_api_base_url", telegram_config.get("api_base_url"))
        _assign(
            "telegram_request_timeout_seconds",
            telegram_config.get("request_timeout_seconds"),
        )
        _assign("telegram_max_retries", telegram_config.get("max_retries"))

        storage_config = config.get("storage") or {}
        _assign("minio_endpoint", storage_config.get("endpoint"))
        _assign("minio_bucket", storage_config.get("bucket"))
        _assign("minio_secure", storage_config.get("secure"))
        _assign("storage_public_base_url", storage_config.get("public_base_url"))

        processing_config = config.get("processing") or {}
        _assign(
            "ai_confidence_threshold",
            processing_config.get("ai_confidence_threshold"),
        )
        _assign(
            "stale_processing_minutes",
            processing_config.get("stale_processing_minutes"),
        )
        _assign("max_stalled_retries", processing_config.get("max_stalled_retries"))
        _assign(
            "media_group_recheck_delay_seconds",
            processing_config.get("media_group_recheck_delay_seconds"),
        )
        _assign("pending_batch_size", processing_config.get("pending_batch_size"))
        _assign(
            "validation_batch_size", processing_config.get("validation_batch_size")
        )
        _assign(
            "max_redownload_attempts",
            processing_config.get("max_redownload_attempts"),
        )
        _assign(
            "file_reference_ttl_hours",
            processing_config.get("file_reference_ttl_hours"),
        )

        llm_config = config.get("llm") or {}
        _assign("llm_enabled", llm_config.get("enabled"))
        _assign("llm_model", llm_config.get("model"))
        _assign("llm_temperature", llm_config.get("temperature"))
        _assign("llm_timeout_seconds", llm_config.get("timeout_seconds"))
        _assign("llm_prompt_file", llm_config.get("prompt_file"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("json_logs", logging_config.get("json"))

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/media_ingest.db", description="SQLite database path"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="media_ingest", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum number of connections in PostgreSQL pool",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum number of connections in PostgreSQL pool",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="PostgreSQL statement timeout in milliseconds",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="Application name for PostgreSQL connections",
    )
    postgres_ssl_mode: str | None = Field(
        default=None,
        description="Optional SSL mode for PostgreSQL connections (e.g., require)",
    )

    # Telegram Bot API
    telegram_api_base_url: str = Field(
        default=TELEGRAM_API_BASE_URL_DEFAULT, description="Bot API base URL"
    )
    telegram_request_timeout_seconds: float = Field(
        default=TELEGRAM_REQUEST_TIMEOUT_SECONDS_DEFAULT,
        gt=0,
        description="Timeout applied to every Bot API request",
    )
    telegram_max_retries: int = Field(
        default=TELEGRAM_MAX_RETRIES_DEFAULT,
        ge=0,
        description="Retries for transient Bot API failures",
    )

    # Object storage
    minio_endpoint: str = Field(
        default="localhost:9000", description="MinIO endpoint host:port"
    )
    minio_bucket: str = Field(default="telegram-media", description="Bucket name")
    minio_secure: bool = Field(default=False, description="Use HTTPS for MinIO")
    storage_public_base_url: str = Field(
        default="http://localhost:9000",
        description="Base URL used to build public object URLs",
    )

    # Processing
    ai_confidence_threshold: float = Field(
        default=AI_ESCALATION_CONFIDENCE_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Manual parse confidence below which the AI parser runs",
    )
    stale_processing_minutes: int = Field(
        default=int(STALE_PROCESSING_TIMEOUT.total_seconds() // 60),
        ge=1,
        description="Age after which a processing row counts as stalled",
    )
    max_stalled_retries: int = Field(
        default=MAX_STALLED_RETRIES,
        ge=0,
        description="Stalled resets before a message is moved to error",
    )
    media_group_recheck_delay_seconds: int = Field(
        default=int(MEDIA_GROUP_RECHECK_DELAY.total_seconds()),
        ge=0,
        description="Delay before re-checking a captionless media group",
    )
    pending_batch_size: int = Field(
        default=50, ge=1, description="Pending messages handled per sweep"
    )
    validation_batch_size: int = Field(
        default=100, ge=1, description="Messages checked per storage validation run"
    )
    inconsistent_group_batch_size: int = Field(
        default=INCONSISTENT_GROUP_BATCH_SIZE,
        ge=1,
        description="Media groups re-synced per sweep",
    )
    max_redownload_attempts: int = Field(
        default=MAX_REDOWNLOAD_ATTEMPTS,
        ge=1,
        description="Global cap on redownload attempts per message",
    )
    file_reference_ttl_hours: int = Field(
        default=int(FILE_REFERENCE_TTL.total_seconds() // 3600),
        ge=1,
        description="Assumed lifetime of a Telegram file reference",
    )

    # LLM configuration
    llm_enabled: bool = Field(
        default=True, description="Escalate low-confidence captions to the LLM"
    )
    llm_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")
    llm_temperature: float = Field(default=0.3, description="LLM temperature")
    llm_timeout_seconds: int = Field(default=30, description="LLM request timeout")
    llm_prompt_file: str = Field(
        default="config/prompts/caption.yaml",
        description="YAML file holding the caption system prompt",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON")

    @property
    def ai_parsing_available(self) -> bool:
        return self.llm_enabled and self.openai_api_key is not None


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings_cache() -> None:
    global _settings
    _settings = None
