import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Initialize crank logger
_logger = logging.getLogger("roundcrank")
_logger.setLevel(logging.INFO)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def setup_logging(workspace: Path, *, console: bool = False) -> Path:
    """Configures the rotating JSON log file for the workspace."""
    workspace = Path(workspace)
    workspace.mkdir(parents=True, exist_ok=True)
    log_file = workspace / "roundcrank.log"

    # Rotating handler: 10MB per file, keep 5 backups
    if not any(
        isinstance(h, logging.handlers.RotatingFileHandler) and h.baseFilename == str(log_file.resolve())
        for h in _logger.handlers
    ):
        handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5, encoding="utf-8"
        )
        # Structured JSON format for machine parsing
        handler.setFormatter(logging.Formatter('%(message)s'))
        _logger.addHandler(handler)

    if console and not any(type(h) is logging.StreamHandler for h in _logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
        _logger.addHandler(stream)
    return log_file


CRANK_EVENT_SCHEMA_VERSION = "v1"


def _log_timezone() -> tzinfo:
    """Timezone for record timestamps, from CRANK_TIMEZONE (default UTC)."""
    name = (os.getenv("CRANK_TIMEZONE") or "UTC").strip()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _build_crank_event(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(data or {})
    return {
        "schema_version": CRANK_EVENT_SCHEMA_VERSION,
        "event": str(event or "").strip(),
        "round_id": _optional_int(payload.get("round_id")),
        "action": str(payload.get("action") or ""),
        "transition": str(payload.get("transition") or ""),
        "attempt": _optional_int(payload.get("attempt")),
        "tx_id": str(payload.get("tx_id") or ""),
        "phase": str(payload.get("phase") or ""),
        "outcome": str(payload.get("outcome") or ""),
    }


def log_event(event: str, data: Dict[str, Any] = None, *, level: str = "info", **kwargs) -> Dict[str, Any]:
    """
    Unified structured log router.
    - log_event("close_window_scheduled", {"round_id": 42, "delay_ms": 0})
    - log_event("oracle_stuck", round_id=42, level="critical")
    """
    if data is None: data = {}

    # Merge extra kwargs into data for observability
    full_data = {**data, **kwargs}
    full_data = {**full_data, "crank_event": _build_crank_event(event, full_data)}

    record = {
        "timestamp": datetime.now(_log_timezone()).isoformat(),
        "level": level,
        "event": event,
        "data": full_data,
    }
    _logger.log(_LEVELS.get(level, logging.INFO), json.dumps(record, ensure_ascii=False, default=str))
    return record
