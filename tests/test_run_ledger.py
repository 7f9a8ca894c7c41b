"""
Toggle Ledger Tests.

Tests for the append-only, hash-chained toggle ledger.
"""

import json
import os
import tempfile
import threading

import pytest


class TestLedgerAppendOnly:
    """Tests that ledger is append-only."""

    def test_ledger_append_only(self):
        """Entries can only be appended, never removed."""
        from switchvault.core.run_ledger import ToggleLedger

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "ledger.jsonl")
            ledger = ToggleLedger(storage_path=path)

            ledger.record_toggle("principalA", "global", False, True, 1, "t1")
            ledger.record_toggle("principalB", "global", True, False, 2, "t2")

            entries = ledger.get_entries()
            assert len(entries) == 2
            assert entries[0]["sequence"] == 0
            assert entries[1]["sequence"] == 1
            assert len(ledger) == 2

    def test_invalid_event_rejected(self):
        from switchvault.core.run_ledger import ToggleLedger

        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = ToggleLedger(storage_path=os.path.join(tmpdir, "ledger.jsonl"))

            with pytest.raises(ValueError):
                ledger.append("SWITCH_DELETED", "system", {})

            assert len(ledger) == 0

    def test_reopen_continues_sequence_and_chain(self, tmp_path):
        """A new ledger instance picks up where the file left off."""
        from switchvault.core.run_ledger import ToggleLedger

        path = str(tmp_path / "ledger.jsonl")
        first = ToggleLedger(storage_path=path)
        record = first.record_toggle("principalA", "global", False, True, 1, "t1")

        second = ToggleLedger(storage_path=path)
        next_record = second.record_toggle("principalB", "global", True, False, 2, "t2")

        assert next_record["sequence"] == 1
        assert next_record["prev_hash"] == record["hash"]
        assert second.verify_integrity() is True


class TestToggleEntries:
    """Tests for toggle entry content and filtering."""

    def test_entry_fields(self, tmp_path):
        from switchvault.core.run_ledger import EVENT_TOGGLE, GENESIS_HASH, ToggleLedger

        ledger = ToggleLedger(storage_path=str(tmp_path / "ledger.jsonl"))
        record = ledger.record_toggle("principalA", "global", False, True, 1, "2026-01-01T00:00:00+00:00")

        assert record["event"] == EVENT_TOGGLE
        assert record["actor"] == "principalA"
        assert record["prev_hash"] == GENESIS_HASH
        assert record["payload"] == {
            "principal": "principalA",
            "key": "global",
            "from_state": False,
            "to_state": True,
            "version": 1,
            "timestamp": "2026-01-01T00:00:00+00:00",
        }

    def test_filter_and_count_by_key(self, tmp_path):
        from switchvault.core.run_ledger import ToggleLedger

        ledger = ToggleLedger(storage_path=str(tmp_path / "ledger.jsonl"))
        ledger.record_toggle("a", "global", False, True, 1, "t1")
        ledger.record_toggle("a", "payments", False, True, 1, "t2")
        ledger.record_toggle("a", "global", True, False, 2, "t3")

        assert len(ledger.get_entries("global")) == 2
        assert ledger.count_toggles("global") == 2
        assert ledger.count_toggles("payments") == 1
        assert ledger.count_toggles("unknown") == 0

    def test_session_start_marks_reopen_point(self, tmp_path):
        """Counting from session_start ignores entries from earlier processes."""
        from switchvault.core.run_ledger import ToggleLedger

        path = str(tmp_path / "ledger.jsonl")
        first = ToggleLedger(storage_path=path)
        assert first.session_start == 0
        first.record_toggle("a", "global", False, True, 1, "t1")

        second = ToggleLedger(storage_path=path)
        second.record_toggle("a", "global", False, True, 1, "t2")

        assert second.session_start == 1
        assert second.count_toggles("global") == 2
        assert second.count_toggles("global", since_sequence=second.session_start) == 1

    def test_write_failure_raises_without_advancing(self, tmp_path):
        from unittest.mock import patch

        from switchvault.core.failures import LedgerWriteError
        from switchvault.core.run_ledger import ToggleLedger

        ledger = ToggleLedger(storage_path=str(tmp_path / "ledger.jsonl"))

        with patch("builtins.open", side_effect=OSError("disk full")):
            with pytest.raises(LedgerWriteError):
                ledger.record_toggle("a", "global", False, True, 1, "t1")

        assert len(ledger) == 0
        record = ledger.record_toggle("a", "global", False, True, 1, "t2")
        assert record["sequence"] == 0
        assert ledger.verify_integrity() is True


class TestTamperDetection:
    """Tests that edits to the file break verification."""

    def _write_two(self, path):
        from switchvault.core.run_ledger import ToggleLedger

        ledger = ToggleLedger(storage_path=path)
        ledger.record_toggle("principalA", "global", False, True, 1, "t1")
        ledger.record_toggle("principalB", "global", True, False, 2, "t2")
        return ledger

    def test_intact_ledger_verifies(self, tmp_path):
        ledger = self._write_two(str(tmp_path / "ledger.jsonl"))
        assert ledger.verify_integrity() is True

    def test_edited_payload_detected(self, tmp_path):
        from switchvault.core.failures import LedgerTamperingError

        path = str(tmp_path / "ledger.jsonl")
        ledger = self._write_two(path)

        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
        entry = json.loads(lines[0])
        entry["payload"]["principal"] = "mallory"
        lines[0] = json.dumps(entry) + "\n"
        with open(path, "w", encoding="utf-8") as f:
            f.writelines(lines)

        with pytest.raises(LedgerTamperingError) as exc_info:
            ledger.verify_integrity()

        assert "hash mismatch" in str(exc_info.value)

    def test_deleted_entry_detected(self, tmp_path):
        from switchvault.core.failures import LedgerTamperingError

        path = str(tmp_path / "ledger.jsonl")
        ledger = self._write_two(path)

        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
        with open(path, "w", encoding="utf-8") as f:
            f.writelines(lines[1:])

        with pytest.raises(LedgerTamperingError):
            ledger.verify_integrity()


class TestConcurrentAppends:

    def test_sequences_gap_free_under_threads(self, tmp_path):
        from switchvault.core.run_ledger import ToggleLedger

        ledger = ToggleLedger(storage_path=str(tmp_path / "ledger.jsonl"))

        def worker(n):
            for i in range(25):
                ledger.record_toggle(f"p{n}", "global", False, True, i, "t")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = ledger.get_entries()
        assert [e["sequence"] for e in entries] == list(range(100))
        assert ledger.verify_integrity() is True
