from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .formatting import LogFormat
from .models import LogLevel


logger = logging.getLogger("devicelog.config")

DEFAULT_EXPIRY_S = 7 * 24 * 60 * 60
DEFAULT_LOG_LEVEL = LogLevel.WARN


class ConfigurationError(ValueError):
    """Raised when a required setting (such as the endpoint URL) is empty."""


def _get_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _get_optional_str(name: str) -> str | None:
    v = os.getenv(name)
    if v is None:
        return None
    vv = v.strip()
    return vv or None


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default}})
        return default
    if value <= 0:
        logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default}})
        return default
    return value


def _get_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default}})
        return default
    if value <= 0:
        logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default}})
        return default
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default}})
    return default


def _get_level(name: str, default: LogLevel) -> LogLevel:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return LogLevel.parse(raw)
    except ValueError:
        logger.warning("invalid_setting", extra={"fields": {"name": name, "value": raw, "using": default.name}})
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = "./devicelog.sqlite"
    url: str | None = None
    log_level: LogLevel = DEFAULT_LOG_LEVEL
    expiry_s: int = DEFAULT_EXPIRY_S

    # Delivery
    request_timeout_s: float = 10.0
    delivery_workers: int = 8
    auth_token: str | None = None

    # Local files
    export_dir: str = "./devicelog_exports"
    prefs_path: str = "./devicelog_prefs.json"

    # SQLite tuning
    sqlite_journal_mode: str = "WAL"
    sqlite_synchronous: str = "NORMAL"
    sqlite_temp_store: str = "MEMORY"
    recover_corruption: bool = True

    # Console logging
    console_log_level: str = "INFO"
    console_log_format: str = "text"

    extra_headers: Dict[str, str] = field(default_factory=dict)

    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.extra_headers)
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers


def load_settings() -> Settings:
    return Settings(
        db_path=_get_str("DEVICELOG_DB_PATH", "./devicelog.sqlite"),
        url=_get_optional_str("DEVICELOG_URL"),
        log_level=_get_level("DEVICELOG_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        expiry_s=_get_positive_int("DEVICELOG_EXPIRY_S", DEFAULT_EXPIRY_S),
        request_timeout_s=_get_positive_float("DEVICELOG_REQUEST_TIMEOUT_S", 10.0),
        delivery_workers=_get_positive_int("DEVICELOG_DELIVERY_WORKERS", 8),
        auth_token=_get_optional_str("DEVICELOG_AUTH_TOKEN"),
        export_dir=_get_str("DEVICELOG_EXPORT_DIR", "./devicelog_exports"),
        prefs_path=_get_str("DEVICELOG_PREFS_PATH", "./devicelog_prefs.json"),
        sqlite_journal_mode=_get_str("DEVICELOG_SQLITE_JOURNAL_MODE", "WAL"),
        sqlite_synchronous=_get_str("DEVICELOG_SQLITE_SYNCHRONOUS", "NORMAL"),
        sqlite_temp_store=_get_str("DEVICELOG_SQLITE_TEMP_STORE", "MEMORY"),
        recover_corruption=_get_bool("DEVICELOG_RECOVER_CORRUPTION", True),
        console_log_level=_get_str("DEVICELOG_CONSOLE_LOG_LEVEL", "INFO").upper(),
        console_log_format=_get_str("DEVICELOG_CONSOLE_LOG_FORMAT", "text").lower(),
    )


@dataclass
class Preferences:
    """Values that survive restarts: endpoint URL, minimum level and formatter."""

    url: Optional[str] = None
    log_level: Optional[LogLevel] = None
    log_format: Optional[LogFormat] = None


class PreferenceStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Preferences:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Preferences()
        except (OSError, ValueError) as exc:
            logger.warning("preferences_unreadable", extra={"fields": {"path": str(self.path), "error": repr(exc)}})
            return Preferences()

        if not isinstance(data, Mapping):
            return Preferences()

        url = data.get("url")
        level: Optional[LogLevel] = None
        raw_level = data.get("log_level")
        if raw_level is not None:
            try:
                level = LogLevel.parse(raw_level)
            except ValueError:
                level = None

        raw_format = data.get("log_format")
        log_format = LogFormat.from_dict(raw_format) if isinstance(raw_format, Mapping) else None

        return Preferences(
            url=url if isinstance(url, str) and url.strip() else None,
            log_level=level,
            log_format=log_format,
        )

    def save(self, prefs: Preferences) -> None:
        blob: Dict[str, Any] = {
            "url": prefs.url,
            "log_level": prefs.log_level.name if prefs.log_level is not None else None,
            "log_format": prefs.log_format.to_dict() if prefs.log_format is not None else None,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(blob, sort_keys=True), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            logger.warning("preferences_not_saved", extra={"fields": {"path": str(self.path), "error": repr(exc)}})
