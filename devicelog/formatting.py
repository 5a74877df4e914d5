from __future__ import annotations

import logging
import platform
import re
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import utcnow_timestamp


logger = logging.getLogger("devicelog.formatting")

_UNSAFE_FILE_CHARS = re.compile(r"[^a-zA-Z0-9_\-.]")


def _default_device_uuid() -> str:
    return uuid.uuid4().hex


@dataclass
class LogFormat:
    """Renders stored records as display lines and supplies device metadata.

    Subclass and override ``format_log_message`` for a custom line layout.
    """

    device_uuid: str = field(default_factory=_default_device_uuid)
    app_version: str = ""
    os_version: str = field(default_factory=platform.platform)
    device_name: str = field(default_factory=platform.node)

    def format_log_message(self, level_name: str, tag: str, message: str, timestamp: str) -> str:
        return (
            f"{timestamp} | {self.app_version} : {self.os_version} | {self.device_uuid} | "
            f"[{level_name}/{tag}]: {message}"
        )

    def device_metadata(self) -> Dict[str, str]:
        return {
            "device_uuid": self.device_uuid,
            "app_version": self.app_version,
            "os_version": self.os_version,
            "device_name": self.device_name,
        }

    def to_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> LogFormat:
        known = {k: str(raw[k]) for k in ("device_uuid", "app_version", "os_version", "device_name") if k in raw}
        return cls(**known)


def default_export_file_name() -> str:
    return _UNSAFE_FILE_CHARS.sub("_", utcnow_timestamp() + ".txt")


def write_lines_to_file(directory: Path, file_name: str, lines: Iterable[str]) -> Optional[Path]:
    """Append ``lines`` to ``directory/file_name``. Returns None if the file could not be written."""

    path = Path(directory) / _UNSAFE_FILE_CHARS.sub("_", file_name)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
    except OSError as exc:
        logger.error("log_export_failed", extra={"fields": {"path": str(path), "error": repr(exc)}})
        return None
    return path
