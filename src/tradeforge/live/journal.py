"""Session journal for the live engine: JSONL streams plus a manifest."""

from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict

MANIFEST_NAME = "session_manifest.json"


def _json_safe(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if hasattr(value, "to_dict"):
        return _json_safe(value.to_dict())
    if hasattr(value, "value"):
        return _json_safe(value.value)
    return str(value)


def load_manifest(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}


class SessionJournal:
    def __init__(self, root: Path | str | None = None, session_id: str | None = None, config: dict | None = None):
        self.root = Path(root or "data/live/sessions")
        self.session_id = session_id or f"session_{int(time.time())}_{uuid.uuid4().hex[:6]}"
        self.session_dir = self.root / self.session_id
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._handles: dict[str, Any] = {}
        self._manifest_path = self.session_dir / MANIFEST_NAME
        self._manifest = load_manifest(self._manifest_path) or {
            "session_id": self.session_id,
            "created_at": time.time(),
            "trades": 0,
            "paused": False,
            "pause_reason": None,
            "config": _json_safe(config or {}),
        }
        self._write_manifest()

    @property
    def manifest(self) -> dict:
        return self._manifest

    def update_manifest(self, patch: Dict[str, Any]) -> None:
        self._manifest.update(_json_safe(patch))
        self._write_manifest()

    def _write_manifest(self) -> None:
        self._manifest_path.write_text(json.dumps(self._manifest, indent=2), encoding="utf-8")

    def _writer(self, name: str):
        if name not in self._handles:
            self._handles[name] = (self.session_dir / f"{name}.jsonl").open("a", encoding="utf-8")
        return self._handles[name]

    def _log(self, name: str, payload: dict) -> None:
        record = _json_safe(payload)
        record.setdefault("ts", time.time())
        handle = self._writer(name)
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        handle.flush()

    def log_event(self, event: dict) -> None:
        self._log("events", event)

    def log_decision(self, decision: dict) -> None:
        self._log("decisions", decision)

    def log_order(self, order: dict) -> None:
        self._log("orders", order)

    def log_trade(self, trade: dict) -> None:
        self._log("trades", trade)
        self._manifest["trades"] = int(self._manifest.get("trades", 0)) + 1
        self._write_manifest()

    def log_equity(self, equity: dict) -> None:
        self._log("equity", equity)

    def read(self, name: str) -> list[dict]:
        path = self.session_dir / f"{name}.jsonl"
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()
        self._write_manifest()

    def __enter__(self) -> "SessionJournal":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
