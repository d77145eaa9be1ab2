# -*- coding: utf-8 -*-
"""
Local fallback sink.

When every delivery attempt fails, the alert is written to disk so it is
never silently lost: one JSON file (machine readable) and one text file
(the rendered message) per alert, under data/alerts by default.
"""
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from pricewatch.errors import FallbackSinkError
from pricewatch.utils.timeutils import Clock, isoformat, shift, utc_now

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class FallbackSink(Protocol):
    def persist(self, message: str, metadata: Dict[str, Any]) -> bool: ...


def _safe(part: Any) -> str:
    return _UNSAFE_CHARS.sub("-", str(part)).strip("-") or "unknown"


class LocalFallbackSink:
    """Writes undeliverable alerts to a local directory. Never raises from persist()."""

    def __init__(self, directory: str = "./data/alerts", clock: Clock = utc_now):
        self.directory = Path(directory)
        self.clock = clock

    def _base_name(self, metadata: Dict[str, Any], now: datetime) -> str:
        parts = [
            now.strftime("%Y-%m-%d_%H-%M-%S"),
            _safe(metadata.get("subjectSymbol", "unknown")),
            _safe(metadata.get("ruleType", "alert")),
            _safe(metadata.get("condition", "na")),
        ]
        if metadata.get("id") is not None:
            parts.append(_safe(metadata["id"]))
        return "_".join(parts)

    def write(self, message: str, metadata: Dict[str, Any]) -> Path:
        """
        Save alert as <timestamp>_<symbol>_<type>_<condition>[_<id>].json/.txt

        Returns:
            Path of the JSON file

        Raises:
            FallbackSinkError: directory or files could not be written
        """
        now = self.clock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)

            base = self._base_name(metadata, now)
            json_path = self.directory / f"{base}.json"
            counter = 1
            while json_path.exists():
                json_path = self.directory / f"{base}-{counter}.json"
                counter += 1
            text_path = json_path.with_suffix(".txt")

            payload = dict(metadata)
            payload["message"] = message
            payload["savedAt"] = isoformat(now)

            json_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
            text_path.write_text(f"{message}\n\nSaved at: {isoformat(now)}\n", encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            raise FallbackSinkError(f"cannot write fallback alert to {self.directory}: {e}") from e

        logger.info(f"Alert saved to local fallback: {json_path.name}")
        return json_path

    def persist(self, message: str, metadata: Dict[str, Any]) -> bool:
        """
        Non-raising variant of write() used by the dispatcher.

        Returns:
            True if both files were written, False otherwise
        """
        try:
            self.write(message, metadata)
            return True
        except FallbackSinkError as e:
            logger.error(f"Failed to save alert to local fallback: {e}")
            return False

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent fallback alerts, newest first. Unreadable files are skipped."""
        if not self.directory.exists():
            return []

        files = sorted(self.directory.glob("*.json"), reverse=True)[:limit]
        alerts = []
        for path in files:
            try:
                alerts.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to read fallback alert {path.name}: {e}")
        return alerts

    def cleanup_old(self, days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete fallback files older than `days`. Returns number of files deleted."""
        if not self.directory.exists():
            return 0

        cutoff = shift(now or self.clock(), -days * 86400)
        deleted = 0
        for path in list(self.directory.glob("*.json")) + list(self.directory.glob("*.txt")):
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff:
                    path.unlink()
                    deleted += 1
            except OSError as e:
                logger.error(f"Failed to delete fallback file {path.name}: {e}")

        if deleted:
            logger.info(f"Cleaned up {deleted} fallback files older than {days} days")
        return deleted
