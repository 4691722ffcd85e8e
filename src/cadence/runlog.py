from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class IterationLog:
    """One JSON Lines file per iteration: start and end entries plus streamed output."""

    def __init__(self, path: Path, handle: TextIO) -> None:
        self.path = path
        self._handle = handle

    @classmethod
    def open(cls, log_dir: Path, mode: str) -> IterationLog:
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S.%f")
        path = log_dir / f"{mode}-{stamp}.jsonl"
        return cls(path, path.open("a", encoding="utf-8"))

    def write(self, entry: dict[str, Any]) -> None:
        if self._handle.closed:
            return
        payload = {key: value for key, value in entry.items() if value not in ("", None, [])}
        payload.setdefault("at", _utcnow_iso())
        self._handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self._handle.flush()

    def output(self, source: str, line: str) -> None:
        self.write({"type": "output", "source": source, "text": line})

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()

    def __enter__(self) -> IterationLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
