from __future__ import annotations

import json
import logging
import os
import sys
from typing import IO, Optional, Union

_FLAG = "_svmatch_configured"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record, e.g.
      {"t": 1700000000123, "lvl": "WARNING", "name": "matching",
       "msg": "Match failed: NoReferenceImage", "extra": {"reference_id": "..."}}

    "t" is the record creation time in epoch milliseconds. Structured fields
    are passed as extra={"extra": {...}}; numpy scalars and other non-JSON
    values are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        doc = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            doc["extra"] = fields
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


def _resolve_level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    level: Union[str, int, None] = None,
    force: bool = False,
    stream: Optional[IO[str]] = None,
) -> None:
    """
    Route the root logger to a single JSON handler (stdout unless `stream`).

    Level: explicit `level`, else env LOG_LEVEL, else INFO. Later calls are
    ignored unless force=True, which the CLI uses once the YAML config has
    been read.
    """
    root = logging.getLogger()
    if getattr(root, _FLAG, False) and not force:
        return
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))
    setattr(root, _FLAG, True)


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
