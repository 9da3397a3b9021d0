"""Global configuration for OpenSeries."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "civil_timezone": "Asia/Ho_Chi_Minh",
    "horizon_days": 90,
    "max_occurrences_per_run": 500,
    "require_bounded_rules": False,
    "default_duration_minutes": 120,
    "upcoming_limit": 5,
    "series_per_page": 20,
    "sweep_interval_minutes": 60,
    "sweep_concurrency": 4,
    "fanout_interval_minutes": 5,
    "fanout_batch_size": 200,
    "sqlite_vacuum_hours": 12,
    "enable_scheduler": True,
    "seed_series": 5,
    "seed_subscribers_per_series": 3,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "civil_timezone": str,
    "horizon_days": int,
    "max_occurrences_per_run": int,
    "require_bounded_rules": bool,
    "default_duration_minutes": int,
    "upcoming_limit": int,
    "series_per_page": int,
    "sweep_interval_minutes": int,
    "sweep_concurrency": int,
    "fanout_interval_minutes": int,
    "fanout_batch_size": int,
    "sqlite_vacuum_hours": int,
    "enable_scheduler": bool,
    "seed_series": int,
    "seed_subscribers_per_series": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    civil_timezone: str
    horizon_days: int
    max_occurrences_per_run: int
    require_bounded_rules: bool
    default_duration_minutes: int
    upcoming_limit: int
    series_per_page: int
    sweep_interval_minutes: int
    sweep_concurrency: int
    fanout_interval_minutes: int
    fanout_batch_size: int
    sqlite_vacuum_hours: int
    enable_scheduler: bool
    seed_series: int
    seed_subscribers_per_series: int
    fanout_cursor_key: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def horizon(self) -> timedelta:
        return timedelta(days=self.horizon_days)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=self.sweep_interval_minutes)

    @property
    def vacuum_interval(self) -> timedelta:
        return timedelta(hours=self.sqlite_vacuum_hours)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"OPENSERIES_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "openseries.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("OPENSERIES_BASE_DIR", Path.cwd()))
    env_config = os.getenv("OPENSERIES_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "openseries.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("OPENSERIES_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("OPENSERIES_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        fanout_cursor_key="subscription_fanout_cursor",
        config_path=config_path,
        **layered,
    )
    if settings.horizon_days < 1:
        raise ValueError("horizon_days must be at least 1")
    if settings.sweep_concurrency < 1:
        raise ValueError("sweep_concurrency must be at least 1")
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    effective: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        effective[key] = getattr(settings, key)
    return effective


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# OpenSeries configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
