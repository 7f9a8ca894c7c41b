"""
Built-in audit checks.

Each check reads live service state; none returns a fixed verdict except
tangle_rule, which stays PENDING until consensus verification exists.
"""

from typing import TYPE_CHECKING, List

from switchvault.core.failures import LedgerTamperingError

from .audit_pipeline import Check, CheckRegistry, CheckResult

if TYPE_CHECKING:
    from .kill_switch import KillSwitchService


DEFAULT_WATCH_KEY = "global"


def genesis_integrity_check(service: 'KillSwitchService') -> Check:
    """
    Every record's version must equal the number of ledgered toggles for its key.

    A non-durable store starts from version 0 on every process start, so only
    ledger entries written since this ledger was opened are counted for it.
    """

    def run() -> CheckResult:
        since = 0 if service.store.durable else service.ledger.session_start
        mismatches = []
        keys = service.store.list_keys()
        for key in keys:
            record = service.store.get(key)
            toggles = service.ledger.count_toggles(key, since_sequence=since)
            if record.version != toggles:
                mismatches.append(f"{key}: version={record.version} ledger={toggles}")

        if mismatches:
            return CheckResult.failed("; ".join(mismatches))
        return CheckResult.passed(f"{len(keys)} switch(es) consistent with ledger")

    return Check("genesis_integrity", run, "switch versions match ledger history")


def ledger_chain_check(service: 'KillSwitchService') -> Check:
    def run() -> CheckResult:
        try:
            service.ledger.verify_integrity()
        except LedgerTamperingError as e:
            return CheckResult.failed(str(e))
        return CheckResult.passed(f"{len(service.ledger)} ledger entries chained")

    return Check("ledger_chain", run, "toggle ledger hash chain is intact")


def kill_switch_state_check(service: 'KillSwitchService', key: str = DEFAULT_WATCH_KEY) -> Check:
    """PASS while the switch is off; FAIL while the system is shut down."""

    def run() -> CheckResult:
        record = service.get(key)
        if record.active:
            return CheckResult.failed(
                f"{key} ACTIVE since {record.updated_at} (by {record.last_actor})"
            )
        return CheckResult.passed(f"{key} INACTIVE at version {record.version}")

    return Check("kill_switch_state", run, f"{key} kill switch is not engaged")


def tangle_rule_check() -> Check:
    return Check(
        "tangle_rule",
        lambda: CheckResult.pending("consensus verification not implemented"),
        "placeholder for tangle consensus verification",
    )


def build_default_checks(service: 'KillSwitchService', watch_key: str = DEFAULT_WATCH_KEY) -> CheckRegistry:
    checks: List[Check] = [
        genesis_integrity_check(service),
        ledger_chain_check(service),
        kill_switch_state_check(service, watch_key),
        tangle_rule_check(),
    ]
    return CheckRegistry(checks)
