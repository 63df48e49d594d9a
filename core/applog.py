"""Structured session logger for the scheduling CLI.

Writes JSON lines to a file, creating parent directories as needed. Each CLI
invocation opens a session; planner outcomes (commits, collisions, partial
failures) are recorded as info/error records under that session id.
"""

from __future__ import annotations

import datetime as _dt
import json
import os
import time
import uuid
from typing import Any, Dict, Optional


def _json_default(value: Any) -> Any:
    if isinstance(value, (_dt.datetime, _dt.date)):
        return value.isoformat()
    return str(value)


class AppLogger:
    def __init__(self, path: str) -> None:
        self.path = path
        d = os.path.dirname(path)
        if d:
            os.makedirs(d, exist_ok=True)

    def _write(self, record: Dict[str, Any]) -> None:
        try:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False, default=_json_default) + "\n")
        except OSError:  # noqa: S110 - logging must never crash the app
            pass

    def start(self, cmd: str, args: Optional[Dict[str, Any]] = None) -> str:
        sid = str(uuid.uuid4())
        self._write({
            "ts": time.time(),
            "event": "start",
            "cmd": cmd,
            "args": args,
            "pid": os.getpid(),
            "session_id": sid,
        })
        return sid

    def end(
        self,
        session_id: str,
        status: str = "ok",
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        rec: Dict[str, Any] = {
            "ts": time.time(),
            "event": "end",
            "session_id": session_id,
            "status": status,
        }
        if duration_ms is not None:
            rec["duration_ms"] = int(duration_ms)
        if error:
            rec["error"] = error
        self._write(rec)

    def info(self, session_id: str, data: Dict[str, Any]) -> None:
        self._write({"ts": time.time(), "event": "info", "session_id": session_id, "data": data})

    def error(self, session_id: str, message: str, extra: Optional[Dict[str, Any]] = None) -> None:
        self._write({
            "ts": time.time(),
            "event": "error",
            "session_id": session_id,
            "message": message,
            "extra": extra,
        })
