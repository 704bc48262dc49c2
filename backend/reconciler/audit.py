"""
Durable side outputs of the resolver: the append-only update audit log
(JSON lines) and the unresolved-results list consulted on later runs.
"""
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from shared.utils.logging import get_logger

from reconciler.errors import PersistenceFailure

logger = get_logger(__name__)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    os.replace(tmp, path)


class UpdateAuditLog:
    """One JSON object per line; never rewritten."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def append(
        self,
        result_id: int,
        competitor_name: str,
        tier: str,
        changes: dict[str, tuple[Any, Any]],
        divisions_searched: int,
        division: Optional[str] = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        entry = {
            "timestamp": _now_iso(),
            "result_id": result_id,
            "competitor_name": competitor_name,
            "tier": tier,
            "division": division,
            "divisions_searched": divisions_searched,
            "changes": {f: {"before": _plain(b), "after": _plain(a)} for f, (b, a) in changes.items()},
            "dry_run": dry_run,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            raise PersistenceFailure(f"audit log write failed: {exc}", path=str(self.path)) from exc
        return entry

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]


class UnresolvedList:
    """
    Results every tier failed on. Loaded as a skip set at the start of a run;
    on save, entries are merged with whatever is already on disk.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._pending: dict[int, dict[str, Any]] = {}

    def _read_disk(self) -> dict[int, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("unresolved_list_unreadable", path=str(self.path), error=str(exc))
            return {}
        entries = data.get("results", []) if isinstance(data, dict) else data
        out: dict[int, dict[str, Any]] = {}
        for e in entries if isinstance(entries, list) else []:
            if isinstance(e, dict) and isinstance(e.get("result_id"), int):
                out[e["result_id"]] = e
        return out

    def load_ids(self) -> set[int]:
        ids = set(self._read_disk()) | set(self._pending)
        logger.info("unresolved_list_loaded", path=str(self.path), count=len(ids))
        return ids

    def add(self, result_id: int, competitor_name: str, reason: str, tiers_attempted: list[str]) -> None:
        self._pending[result_id] = {
            "result_id": result_id,
            "competitor_name": competitor_name,
            "reason": reason,
            "tiers_attempted": tiers_attempted,
            "recorded_at": _now_iso(),
        }

    @property
    def pending(self) -> int:
        return len(self._pending)

    def save(self) -> int:
        """Merge pending entries into the file. Returns the total stored."""
        merged = self._read_disk()
        merged.update(self._pending)
        try:
            _write_atomic(
                self.path,
                {"updated_at": _now_iso(), "count": len(merged), "results": list(merged.values())},
            )
        except OSError as exc:
            raise PersistenceFailure(f"unresolved list write failed: {exc}", path=str(self.path)) from exc
        logger.info("unresolved_list_saved", path=str(self.path), added=len(self._pending), total=len(merged))
        self._pending.clear()
        return len(merged)
