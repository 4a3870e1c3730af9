"""Structured logging and observability helpers."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        operation: str,
        stage: str | None,
        message: str,
        variant: str | None = None,
        image: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "stage": stage,
            "variant": variant,
            "image": image,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        # Variant and image branches log from worker threads.
        with self._lock:
            self.records.append(record)

    def records_for_variant(self, variant: str) -> list[dict[str, Any]]:
        return self._records_where("variant", variant)

    def records_for_image(self, image: str) -> list[dict[str, Any]]:
        return self._records_where("image", image)

    def _records_where(self, key: str, value: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for record in self.records if record.get(key) == value]

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self.records]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.snapshot()]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
