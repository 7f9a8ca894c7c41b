"""
Kill-Switch Service Tests.

Tests the toggle state machine, authorization, contention handling,
watch propagation and ledger entries.
"""

import pytest
from unittest.mock import patch

from switchvault.control_plane.audit_pipeline import CheckOutcome
from switchvault.control_plane.audit_checks import build_default_checks
from switchvault.control_plane.authorization import AllowListPolicy, AuthorizationGate
from switchvault.control_plane.kill_switch import KillSwitchService
from switchvault.control_plane.stores import InMemorySwitchStore, SQLiteSwitchStore
from switchvault.control_plane.watch_broker import WatchBroker
from switchvault.core.failures import (
    ContentionError,
    StoreUnavailableError,
    UnauthorizedError,
    VersionConflictError,
)
from switchvault.core.retry_strategy import RetryConfig
from switchvault.core.run_ledger import EVENT_TOGGLE, ToggleLedger


POLICY = AllowListPolicy({"global": ["principalA", "principalB"], "payments": ["principalA"]})


def make_service(tmp_path, store=None, max_attempts=3):
    service = KillSwitchService(
        store=store or InMemorySwitchStore(),
        broker=WatchBroker(buffer_capacity=4),
        gate=AuthorizationGate(POLICY),
        ledger=ToggleLedger(str(tmp_path / "ledger.jsonl")),
        retry_config=RetryConfig(max_attempts=max_attempts, base_delay_ms=0),
    )
    service.checks = build_default_checks(service)
    return service


@pytest.fixture
def service(tmp_path):
    return make_service(tmp_path)


class TestGet:

    def test_get_creates_default_on_first_access(self, service):
        record = service.get("global")

        assert record.active is False
        assert record.version == 0
        assert service.store.list_keys() == ["global"]

    def test_get_is_stable(self, service):
        assert service.get("global") == service.get("global")


class TestToggleScenario:
    """The principalA / principalB / principalC walkthrough."""

    def test_global_walkthrough(self, service):
        start = service.get("global")
        assert (start.active, start.version) == (False, 0)

        first = service.toggle("global", "principalA")
        assert first.active is True
        assert first.version == 1
        assert first.last_actor == "principalA"

        second = service.toggle("global", "principalB")
        assert second.active is False
        assert second.version == 2
        assert second.last_actor == "principalB"

        with pytest.raises(UnauthorizedError) as exc_info:
            service.toggle("global", "principalC")

        assert exc_info.value.error_name == "Unauthorized"
        assert service.get("global").version == 2
        assert service.get("global").active is False

    def test_toggle_unknown_key_auto_creates(self, service):
        record = service.toggle("payments", "principalA")

        assert record.version == 1
        assert record.active is True

    def test_denied_toggle_does_not_create_or_publish(self, service):
        sub = service.broker.subscribe("payments")

        with pytest.raises(UnauthorizedError):
            service.toggle("payments", "principalB")

        assert "payments" not in service.store.list_keys()
        assert sub.get_nowait() is None
        assert len(service.ledger) == 0

    def test_keys_toggle_independently(self, service):
        service.toggle("global", "principalA")
        service.toggle("payments", "principalA")
        service.toggle("payments", "principalA")

        assert service.get("global").version == 1
        assert service.get("payments").version == 2
        assert service.get("payments").active is False


class TestContention:
    """Version conflicts are retried within budget, then surfaced."""

    def test_single_conflict_is_absorbed(self, service):
        real_cas = service.store.compare_and_set
        calls = {"n": 0}

        def flaky(key, expected, new_active, actor):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another writer wins the race first.
                real_cas(key, expected, not service.get(key).active, "rival")
                raise VersionConflictError(key, expected, expected + 1)
            return real_cas(key, expected, new_active, actor)

        service.get("global")
        with patch.object(service.store, "compare_and_set", side_effect=flaky):
            record = service.toggle("global", "principalA")

        assert calls["n"] == 2
        assert record.version == 2
        assert record.last_actor == "principalA"
        assert record.active is False

    def test_exhausted_budget_raises_contention(self, service):
        service.get("global")

        def always_conflict(key, expected, new_active, actor):
            raise VersionConflictError(key, expected, expected + 1)

        with patch.object(service.store, "compare_and_set", side_effect=always_conflict) as cas:
            with pytest.raises(ContentionError) as exc_info:
                service.toggle("global", "principalA")

        assert cas.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.error_name == "Contention"
        assert service.get("global").version == 0
        assert len(service.ledger) == 0

    def test_attempt_budget_is_configurable(self, tmp_path):
        service = make_service(tmp_path, max_attempts=1)
        service.get("global")

        with patch.object(
            service.store, "compare_and_set",
            side_effect=VersionConflictError("global", 0, 1),
        ) as cas:
            with pytest.raises(ContentionError):
                service.toggle("global", "principalA")

        assert cas.call_count == 1


class TestPropagation:
    """Accepted toggles reach watchers and the ledger."""

    def test_subscriber_sees_current_then_updates(self, service):
        sub = service.subscribe("global")

        service.toggle("global", "principalA")
        service.toggle("global", "principalB")

        versions = []
        while True:
            record = sub.get_nowait()
            if record is None:
                break
            versions.append(record.version)

        assert versions == [0, 1, 2]

    def test_ledger_records_toggle(self, service):
        record = service.toggle("global", "principalA")

        entries = service.ledger.get_entries("global")
        assert len(entries) == 1
        entry = entries[0]
        assert entry["event"] == EVENT_TOGGLE
        assert entry["payload"]["principal"] == "principalA"
        assert entry["payload"]["key"] == "global"
        assert entry["payload"]["from_state"] is False
        assert entry["payload"]["to_state"] is True
        assert entry["payload"]["version"] == 1
        assert entry["payload"]["timestamp"] == record.updated_at


class TestToggleFailures:
    """Failures after authorization: what commits and what does not."""

    def test_ledger_write_failure_keeps_committed_toggle(self, service):
        """A committed toggle is returned and published even if the ledger cannot be written."""
        sub = service.subscribe("global")
        assert sub.get_nowait().version == 0

        with patch("builtins.open", side_effect=OSError("disk full")):
            record = service.toggle("global", "principalA")

        assert record.version == 1
        assert record.active is True
        assert service.get("global") == record
        assert sub.get_nowait().version == 1
        assert len(service.ledger) == 0

    def test_unledgered_toggle_fails_genesis_check(self, service):
        with patch("builtins.open", side_effect=OSError("disk full")):
            service.toggle("global", "principalA")

        report = service.run_audit(["genesis_integrity", "ledger_chain"])

        assert report.checks[0].outcome == CheckOutcome.FAIL
        assert "version=1 ledger=0" in report.checks[0].detail
        assert report.checks[1].outcome == CheckOutcome.PASS

    def test_store_failure_surfaces_without_retry(self, service):
        service.get("global")
        sub = service.subscribe("global")
        sub.get_nowait()

        with patch.object(
            service.store, "compare_and_set",
            side_effect=StoreUnavailableError("database is locked"),
        ) as cas:
            with pytest.raises(StoreUnavailableError):
                service.toggle("global", "principalA")

        assert cas.call_count == 1
        assert service.get("global").version == 0
        assert sub.get_nowait() is None
        assert len(service.ledger) == 0


class TestServiceAudit:
    """Audits by name run against live service state."""

    def test_default_checks_against_consistent_state(self, service):
        service.toggle("global", "principalA")
        service.toggle("global", "principalB")

        report = service.run_audit(["genesis_integrity", "ledger_chain", "kill_switch_state", "tangle_rule"])

        outcomes = {c.name: c.outcome for c in report.checks}
        assert outcomes == {
            "genesis_integrity": CheckOutcome.PASS,
            "ledger_chain": CheckOutcome.PASS,
            "kill_switch_state": CheckOutcome.PASS,
            "tangle_rule": CheckOutcome.PENDING,
        }
        assert service.get_audit(report.run_id) is report

    def test_active_switch_fails_state_check(self, service):
        service.toggle("global", "principalA")

        report = service.run_audit(["kill_switch_state"])

        assert report.checks[0].outcome == CheckOutcome.FAIL
        assert "ACTIVE" in report.checks[0].detail

    def test_version_ledger_mismatch_fails_genesis(self, service):
        service.get("global")
        service.store.compare_and_set("global", 0, True, "out-of-band")

        report = service.run_audit(["genesis_integrity"])

        assert report.checks[0].outcome == CheckOutcome.FAIL
        assert "global" in report.checks[0].detail

    def test_unknown_check_name_fails(self, service):
        report = service.run_audit(["no_such_check"])

        assert len(report.checks) == 1
        assert report.checks[0].outcome == CheckOutcome.FAIL
        assert "no_such_check" in report.checks[0].detail


class TestWithSQLiteStore:

    def test_walkthrough_on_sqlite(self, tmp_path):
        service = make_service(tmp_path, store=SQLiteSwitchStore(tmp_path / "switches.db"))

        service.toggle("global", "principalA")
        record = service.toggle("global", "principalB")

        assert (record.active, record.version, record.last_actor) == (False, 2, "principalB")
