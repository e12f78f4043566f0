from __future__ import annotations

import configparser
import os
import secrets
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, field_validator


class Settings(BaseModel):
    database_url: str = "sqlite+pysqlite:///./almoxarifado.db"
    session_secret: str = ""
    log_level: str = "INFO"
    movement_retry_attempts: int = 3
    admin_username: str = "admin"
    admin_password: str = "admin"

    @field_validator("movement_retry_attempts")
    @classmethod
    def retry_attempts_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("movement_retry_attempts must be >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper() or "INFO"


# INI section/key -> (settings field, environment variable)
_FIELDS: Dict[Tuple[str, str], Tuple[str, str]] = {
    ("database", "url"): ("database_url", "DATABASE_URL"),
    ("session", "secret"): ("session_secret", "SESSION_SECRET"),
    ("logging", "level"): ("log_level", "LOG_LEVEL"),
    ("stock", "retry_attempts"): ("movement_retry_attempts", "MOVEMENT_RETRY_ATTEMPTS"),
    ("admin", "username"): ("admin_username", "ADMIN_USERNAME"),
    ("admin", "password"): ("admin_password", "ADMIN_PASSWORD"),
}

_cached: Optional[Tuple[Settings, str, float]] = None


def _config_path() -> Path:
    return Path(os.getenv("ALMOXARIFADO_CONFIG_PATH", "almoxarifado.conf"))


def _read_file(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")
    out: Dict[str, str] = {}
    for (section, key), (field, _env) in _FIELDS.items():
        raw = (parser.get(section, key, fallback="") or "").strip()
        if raw:
            out[field] = raw
    return out


def load_settings() -> Settings:
    """Defaults, then the INI file, then environment variables."""
    global _cached

    path = _config_path()
    path_str = str(path)
    try:
        mtime = float(path.stat().st_mtime)
    except OSError:
        mtime = 0.0

    if _cached is not None:
        cfg_cached, cached_path, cached_mtime = _cached
        if cached_path == path_str and cached_mtime == mtime:
            return cfg_cached

    data = _read_file(path)
    for _key, (field, env) in _FIELDS.items():
        raw = (os.getenv(env) or "").strip()
        if raw:
            data[field] = raw

    cfg = Settings.model_validate(data)
    if not cfg.session_secret:
        cfg.session_secret = secrets.token_hex(32)

    _cached = (cfg, path_str, mtime)
    return cfg


def reset_settings_cache() -> None:
    global _cached
    _cached = None
