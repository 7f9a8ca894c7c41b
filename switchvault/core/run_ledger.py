"""
Toggle Ledger.

Append-only ledger capturing every accepted kill-switch toggle.
No deletes, no edits. Each record carries the hash of the previous record,
so any rewrite of history breaks the chain.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from switchvault.core.failures import LedgerTamperingError, LedgerWriteError


# Event types
EVENT_TOGGLE = "KILL_SWITCH_TOGGLE"

VALID_EVENTS = {
    EVENT_TOGGLE,
}

GENESIS_HASH = "0" * 64


class ToggleLedger:
    """
    Append-only toggle ledger for auditing.

    Records are immutable once written. Appends are serialized by a lock so
    sequence numbers and the hash chain stay gap-free under concurrent toggles.
    """

    def __init__(self, storage_path: Optional[str] = None):
        if storage_path is None:
            storage_path = str(Path("data") / "switchvault" / "toggle_ledger.jsonl")

        self.storage_path = Path(storage_path)
        self._lock = threading.Lock()
        self._ensure_storage_exists()
        self._entry_count, self._last_hash = self._load_tail()
        # First sequence number written by this instance.
        self.session_start = self._entry_count

    def _ensure_storage_exists(self) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.storage_path.exists():
            self.storage_path.touch()

    def _load_tail(self) -> tuple:
        """Count existing entries and recover the last chain hash."""
        count = 0
        last_hash = GENESIS_HASH
        for entry in self.get_entries():
            count += 1
            last_hash = entry.get("hash", last_hash)
        return count, last_hash

    @staticmethod
    def _compute_hash(body: Dict[str, Any]) -> str:
        """Compute SHA-256 hash of a record body (everything except its own hash)."""
        normalized = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(normalized.encode()).hexdigest()

    def append(
        self,
        event: str,
        actor: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Append an immutable record to the ledger.

        Args:
            event: Event type (KILL_SWITCH_TOGGLE)
            actor: Principal that triggered the event
            payload: Optional payload data

        Returns:
            The created ledger record

        Raises:
            LedgerWriteError: If write fails
        """
        if event not in VALID_EVENTS:
            raise ValueError(f"Invalid event type: {event}. Valid: {VALID_EVENTS}")

        payload = payload or {}

        with self._lock:
            body = {
                "sequence": self._entry_count,
                "event": event,
                "actor": actor,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "payload": payload,
                "prev_hash": self._last_hash,
            }
            record = dict(body, hash=self._compute_hash(body))

            try:
                with open(self.storage_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, default=str) + "\n")
            except OSError as e:
                raise LedgerWriteError(f"Ledger write failure: {e}")

            self._entry_count += 1
            self._last_hash = record["hash"]

        return record

    def record_toggle(
        self,
        principal: str,
        key: str,
        from_state: bool,
        to_state: bool,
        version: int,
        timestamp: str,
    ) -> Dict[str, Any]:
        """Append the audit entry for an accepted toggle."""
        return self.append(
            EVENT_TOGGLE,
            principal,
            {
                "principal": principal,
                "key": key,
                "from_state": from_state,
                "to_state": to_state,
                "version": version,
                "timestamp": timestamp,
            },
        )

    def get_entries(self, key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get all ledger entries, optionally filtered by switch key."""
        entries = []
        try:
            with open(self.storage_path, "r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        entry = json.loads(line)
                        if key is None or entry.get("payload", {}).get("key") == key:
                            entries.append(entry)
        except FileNotFoundError:
            pass
        return entries

    def count_toggles(self, key: str, since_sequence: int = 0) -> int:
        """Number of toggle entries recorded for a key at or after since_sequence."""
        return sum(
            1 for e in self.get_entries(key)
            if e.get("event") == EVENT_TOGGLE and e.get("sequence", 0) >= since_sequence
        )

    def verify_integrity(self) -> bool:
        """
        Verify ledger integrity by checking sequence numbers and the hash chain.

        Returns:
            True if ledger is intact

        Raises:
            LedgerTamperingError: If tampering detected
        """
        prev_hash = GENESIS_HASH
        for i, entry in enumerate(self.get_entries()):
            if entry.get("sequence") != i:
                raise LedgerTamperingError(f"sequence gap at position {i}")

            if entry.get("prev_hash") != prev_hash:
                raise LedgerTamperingError(f"chain broken at sequence {i}")

            body = {k: v for k, v in entry.items() if k != "hash"}
            if self._compute_hash(body) != entry.get("hash"):
                raise LedgerTamperingError(f"hash mismatch at sequence {i}")

            prev_hash = entry["hash"]

        return True

    def __len__(self) -> int:
        return self._entry_count
