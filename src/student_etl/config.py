"""student_etl.config

Runtime settings for the ingestion pipeline.

Precedence, lowest first:
  1. dataclass defaults
  2. optional YAML settings file (load_settings(path))
  3. environment variables (ENV_VARS below)
  4. explicit overrides passed by the caller (CLI flags)

Example settings file:

    db_dsn: "postgresql://etl@localhost/students"
    batch_size: 250
    temp_dir: /var/tmp/student_etl
    retention_seconds: 86400
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml


class SettingsValidationError(ValueError):
    """Raised when a settings file or environment value is invalid."""


@dataclass(frozen=True)
class Settings:
    db_dsn: str | None = None
    batch_size: int = 500
    temp_dir: Path = Path("./temp")
    salt_rounds: int = 10
    id_max_retries: int = 20
    pool_min_size: int = 1
    pool_max_size: int = 10
    retention_seconds: float = 24 * 60 * 60
    stale_after_seconds: float = 2 * 60 * 60
    sweep_interval_seconds: float = 60 * 60
    row_delay_seconds: float = 0.0
    batch_delay_seconds: float = 0.0
    initializing_delay_seconds: float = 0.0
    max_file_size_bytes: int = 200 * 1024 * 1024


# env var -> settings field
ENV_VARS = {
    "STUDENT_ETL_DB_DSN": "db_dsn",
    "BATCH_SIZE": "batch_size",
    "TEMP_DIR": "temp_dir",
    "SALT_ROUNDS": "salt_rounds",
    "STUDENT_ETL_POOL_MIN_SIZE": "pool_min_size",
    "STUDENT_ETL_POOL_MAX_SIZE": "pool_max_size",
    "STUDENT_ETL_RETENTION_SECONDS": "retention_seconds",
    "STUDENT_ETL_STALE_AFTER_SECONDS": "stale_after_seconds",
    "STUDENT_ETL_ROW_DELAY_SECONDS": "row_delay_seconds",
    "STUDENT_ETL_BATCH_DELAY_SECONDS": "batch_delay_seconds",
    "MAX_FILE_SIZE_BYTES": "max_file_size_bytes",
}

_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    try:
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
        if kind == "Path":
            return Path(value)
    except (TypeError, ValueError):
        raise SettingsValidationError(f"Setting '{name}' value {value!r} is not a valid {kind}.")
    return None if value is None else str(value)


def validate_settings(settings: Settings) -> Settings:
    """Raise SettingsValidationError if settings are out of range."""
    if settings.batch_size <= 0:
        raise SettingsValidationError(f"batch_size must be > 0 (got {settings.batch_size}).")
    if settings.salt_rounds < 4:
        raise SettingsValidationError(f"salt_rounds must be >= 4 (got {settings.salt_rounds}).")
    if settings.id_max_retries <= 0:
        raise SettingsValidationError("id_max_retries must be > 0.")
    if settings.pool_min_size < 0 or settings.pool_max_size < max(settings.pool_min_size, 1):
        raise SettingsValidationError(
            f"pool_max_size ({settings.pool_max_size}) must be >= pool_min_size "
            f"({settings.pool_min_size}) and >= 1."
        )
    for name in (
        "retention_seconds",
        "stale_after_seconds",
        "row_delay_seconds",
        "batch_delay_seconds",
        "initializing_delay_seconds",
    ):
        if getattr(settings, name) < 0:
            raise SettingsValidationError(f"{name} must be >= 0.")
    if settings.sweep_interval_seconds <= 0:
        raise SettingsValidationError("sweep_interval_seconds must be > 0.")
    return settings


def apply_overrides(settings: Settings, overrides: Mapping[str, Any]) -> Settings:
    """Return a copy of settings with non-None overrides applied and validated."""
    unknown = set(overrides) - set(_FIELD_TYPES)
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")
    changes = {k: _coerce(k, v) for k, v in overrides.items() if v is not None}
    return validate_settings(replace(settings, **changes))


def load_settings(
    yaml_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> Settings:
    """Build Settings from defaults, an optional YAML file, env vars and overrides.

    Raises:
        SettingsValidationError: On unknown keys or out-of-range values.
        FileNotFoundError: If yaml_path is given but does not exist.
    """
    settings = Settings()

    if yaml_path is not None:
        data = yaml.safe_load(yaml_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise SettingsValidationError("Settings YAML root must be a mapping.")
        settings = apply_overrides(settings, data)

    env = os.environ if environ is None else environ
    from_env = {field_name: env[var] for var, field_name in ENV_VARS.items() if env.get(var)}
    settings = apply_overrides(settings, from_env)

    return apply_overrides(settings, overrides)
