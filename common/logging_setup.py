from __future__ import annotations

import logging
import os
import sys
import json
import time
from typing import Any, Dict, Optional


ENV_LEVEL = "MAP_ALIGN_LOG_LEVEL"


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON log formatter:
      { "t": 169, "lvl": "DEBUG", "name": "map_align.matching", "msg": "pair matched", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=_json_default)


def _json_default(o: Any) -> Any:
    # numpy scalars/arrays show up in diagnostic payloads
    if hasattr(o, "tolist"):
        return o.tolist()
    return str(o)


def setup_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Configure the root logger once with JSON formatting on stderr
    (stdout stays free for script output).
    Level precedence:
      - explicit `level` arg
      - env MAP_ALIGN_LOG_LEVEL (e.g., DEBUG/INFO/WARNING/ERROR)
      - default INFO
    """
    root = logging.getLogger()
    if getattr(root, "_map_align_configured", False) and not force and level is None:
        return

    lvl_name = (level or os.environ.get(ENV_LEVEL) or "INFO").upper()
    lvl = getattr(logging, lvl_name, None)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    root._map_align_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)
