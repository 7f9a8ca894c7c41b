"""
Kill-Switch Service for SwitchVault

Orchestrates the per-key state machine:

    INACTIVE --toggle--> ACTIVE --toggle--> INACTIVE

Toggle order:
1. Authorize principal for "toggle" on the key
2. Read the current record (auto-created on first access)
3. Compare-and-set the flipped state against the observed version
4. On version conflict, re-read and retry within the attempt budget
5. Append the toggle to the ledger
6. Publish the new record to watchers

Once the compare-and-set commits the toggle has happened: a ledger write
failure is logged and left for the genesis_integrity audit, never raised.
"""

import logging
import time
from typing import Iterable, List, Optional

from switchvault.core.failures import (
    ContentionError,
    LedgerWriteError,
    SwitchNotFoundError,
    VersionConflictError,
)
from switchvault.core.retry_strategy import (
    RetryConfig,
    classify_failure,
    decide_retry,
)
from switchvault.core.run_ledger import ToggleLedger

from .audit_pipeline import AuditPipeline, AuditReport, AuditReportStore, CheckRegistry
from .authorization import ACTION_TOGGLE, AuthorizationGate
from .stores import SwitchRecord, SwitchStore
from .watch_broker import Subscription, WatchBroker

logger = logging.getLogger(__name__)


class KillSwitchService:
    """
    Owns one store, broker, gate, ledger and audit pipeline.

    Thread-safe: all mutation goes through the store's compare_and_set,
    so any number of callers may get/toggle/subscribe concurrently.
    """

    def __init__(
        self,
        store: SwitchStore,
        broker: WatchBroker,
        gate: AuthorizationGate,
        ledger: ToggleLedger,
        retry_config: Optional[RetryConfig] = None,
        pipeline: Optional[AuditPipeline] = None,
        checks: Optional[CheckRegistry] = None,
        reports: Optional[AuditReportStore] = None,
    ):
        self.store = store
        self.broker = broker
        self.gate = gate
        self.ledger = ledger
        self.retry_config = retry_config or RetryConfig()
        self.pipeline = pipeline or AuditPipeline()
        self.checks = checks if checks is not None else CheckRegistry()
        self.reports = reports or AuditReportStore()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> SwitchRecord:
        """Current record for key, creating the default on first access."""
        try:
            return self.store.get(key)
        except SwitchNotFoundError:
            record = self.store.create_if_absent(key)
            logger.info("Created switch key=%s (active=%s)", key, record.active)
            return record

    def list_switches(self) -> List[SwitchRecord]:
        return [self.store.get(key) for key in self.store.list_keys()]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def toggle(self, key: str, principal: str) -> SwitchRecord:
        """
        Flip the switch for key on behalf of principal.

        Raises:
            UnauthorizedError: gate denied the principal (never retried)
            ContentionError: compare-and-set lost every attempt in the budget
            StoreUnavailableError: backing store failed (never retried)
        """
        self.gate.require(principal, key, ACTION_TOGGLE)

        attempts = 0
        while True:
            current = self.get(key)
            attempts += 1
            try:
                updated = self.store.compare_and_set(
                    key, current.version, not current.active, principal,
                )
                break
            except VersionConflictError as e:
                decision = decide_retry(classify_failure(e), attempts, self.retry_config)
                if not decision.should_retry:
                    logger.warning(
                        "Contention on key=%s principal=%s after %d attempts",
                        key, principal, attempts,
                    )
                    raise ContentionError(key, attempts)
                logger.debug("Version conflict on key=%s: %s", key, decision.reason)
                if decision.delay_ms:
                    time.sleep(decision.delay_ms / 1000.0)

        try:
            self.ledger.record_toggle(
                principal=principal,
                key=key,
                from_state=current.active,
                to_state=updated.active,
                version=updated.version,
                timestamp=updated.updated_at,
            )
        except LedgerWriteError as e:
            # The write is committed; genesis_integrity reports the missing entry.
            logger.error("Toggle key=%s version=%d not ledgered: %s", key, updated.version, e)

        self.broker.publish(updated)
        logger.info(
            "Toggled key=%s %s -> %s version=%d by %s",
            key, current.state.value, updated.state.value, updated.version, principal,
        )
        return updated

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def subscribe(self, key: str) -> Subscription:
        """Subscribe to key; the first frame is the current state."""
        return self.broker.subscribe(key, snapshot=lambda: self.get(key))

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def run_audit(self, names: Iterable[str]) -> AuditReport:
        """Run registered checks by name and keep the sealed report."""
        report = self.pipeline.run(self.checks.resolve(list(names)))
        self.reports.add(report)
        return report

    def get_audit(self, run_id: str) -> Optional[AuditReport]:
        return self.reports.get(run_id)

    def close(self) -> None:
        self.broker.close()
        self.store.close()
