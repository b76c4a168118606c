"""
REFINERY Audit Log — append-only, hash-chained JSONL.

Every line carries `h = sha256(entry_json + previous_h)`, so editing
or dropping any line breaks every hash after it. `verify()` walks the
chain and reports the first broken line.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from refinery.models import new_id, now_iso, parse_ts, utc_now
from refinery.storage.json_store import locked_file

GENESIS_HASH = "0" * 64


def _entry_hash(entry: dict[str, Any], previous: str) -> str:
    body = json.dumps({k: v for k, v in entry.items() if k != "h"}, sort_keys=True, default=str)
    return hashlib.sha256((body + previous).encode("utf-8")).hexdigest()


@dataclass
class ChainVerification:
    valid: bool
    entries: int
    broken_at: int | None = None
    reason: str = ""


class AuditLog:
    def __init__(self, base_path: Path | str):
        self.path = Path(base_path) / "audit" / "audit.jsonl"
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def _last_hash(self) -> str:
        lines = self._lines()
        if not lines:
            return GENESIS_HASH
        return json.loads(lines[-1])["h"]

    def record(
        self,
        action: str,
        actor: str,
        target_type: str,
        target_id: str,
        details: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "entry_id": new_id("audit"),
            "action": action,
            "actor": actor,
            "target_type": target_type,
            "target_id": target_id,
            "details": details or {},
            "timestamp": now_iso(),
            "correlation_id": correlation_id,
        }
        with locked_file(self.path):
            entry["h"] = _entry_hash(entry, self._last_hash())
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        logger.debug(f"[AUDIT] {action} {target_type}:{target_id} by {actor}")
        return entry

    def entries(self) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self._lines()]

    def query(
        self,
        action: str | None = None,
        actor: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        correlation_id: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Filter entries, newest first."""
        since_ts = parse_ts(since) if since else None
        until_ts = parse_ts(until) if until else None
        results = []
        for entry in reversed(self.entries()):
            if action and entry["action"] != action:
                continue
            if actor and entry["actor"] != actor:
                continue
            if target_type and entry["target_type"] != target_type:
                continue
            if target_id and entry["target_id"] != target_id:
                continue
            if correlation_id and entry.get("correlation_id") != correlation_id:
                continue
            ts = parse_ts(entry["timestamp"])
            if since_ts and ts < since_ts:
                continue
            if until_ts and ts > until_ts:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def stats(self) -> dict[str, Any]:
        entries = self.entries()
        cutoff = utc_now() - timedelta(hours=24)
        return {
            "total": len(entries),
            "by_action": dict(Counter(e["action"] for e in entries)),
            "last_24h": sum(1 for e in entries if parse_ts(e["timestamp"]) >= cutoff),
        }

    def verify(self) -> ChainVerification:
        previous = GENESIS_HASH
        lines = self._lines()
        for number, line in enumerate(lines, start=1):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                return ChainVerification(False, len(lines), number, "unparseable line")
            if entry.get("h") != _entry_hash(entry, previous):
                logger.warning(f"[AUDIT] Hash chain broken at line {number}")
                return ChainVerification(False, len(lines), number, "hash mismatch")
            previous = entry["h"]
        return ChainVerification(True, len(lines))
