"""
Audit Pipeline for SwitchVault

Runs an ordered sequence of named checks and seals the results into an
AuditReport. The pipeline sequences, times and seals; outcomes come only
from the checks themselves.

A check that raises is recorded as FAIL with the captured fault and the
run continues with the next check. Nothing escapes `run`.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from switchvault.core.failures import CheckExecutionFault

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    PENDING = "PENDING"


@dataclass(frozen=True)
class CheckResult:
    """What a check function returns."""
    outcome: CheckOutcome
    detail: str = ""

    @classmethod
    def passed(cls, detail: str = "") -> 'CheckResult':
        return cls(CheckOutcome.PASS, detail)

    @classmethod
    def failed(cls, detail: str = "") -> 'CheckResult':
        return cls(CheckOutcome.FAIL, detail)

    @classmethod
    def pending(cls, detail: str = "") -> 'CheckResult':
        return cls(CheckOutcome.PENDING, detail)


CheckFn = Callable[[], Union[CheckResult, CheckOutcome]]


@dataclass(frozen=True)
class Check:
    """A named, pluggable audit check."""
    name: str
    fn: CheckFn
    description: str = ""

    def __call__(self) -> Union[CheckResult, CheckOutcome]:
        return self.fn()


@dataclass(frozen=True)
class CheckEntry:
    """One sealed line of an audit report."""
    name: str
    outcome: CheckOutcome
    detail: str
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "durationMs": round(self.duration_ms, 3),
        }


@dataclass
class AuditReport:
    """
    Result of one audit run.

    Append-only while running; immutable once completed_at is set.
    """
    run_id: str
    started_at: str
    checks: List[CheckEntry] = field(default_factory=list)
    completed_at: Optional[str] = None

    @property
    def sealed(self) -> bool:
        return self.completed_at is not None

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(c.outcome == CheckOutcome.PASS for c in self.checks)

    def append(self, entry: CheckEntry) -> None:
        if self.sealed:
            raise RuntimeError(f"Audit report {self.run_id} is sealed")
        self.checks.append(entry)

    def seal(self) -> None:
        if self.sealed:
            raise RuntimeError(f"Audit report {self.run_id} is already sealed")
        self.checks = tuple(self.checks)
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def __setattr__(self, name, value):
        if getattr(self, "completed_at", None) is not None:
            raise AttributeError(f"Audit report {self.run_id} is sealed")
        super().__setattr__(name, value)

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "startedAt": self.started_at,
            "checks": [c.to_dict() for c in self.checks],
            "completedAt": self.completed_at,
            "passed": self.passed,
        }


CheckSpec = Union[Check, Tuple[str, CheckFn]]


def _coerce_check(spec: CheckSpec) -> Check:
    if isinstance(spec, Check):
        return spec
    name, fn = spec
    return Check(name=name, fn=fn)


def _coerce_result(value) -> CheckResult:
    if isinstance(value, CheckResult):
        return value
    if isinstance(value, CheckOutcome):
        return CheckResult(value)
    if isinstance(value, str) and value in CheckOutcome.__members__:
        return CheckResult(CheckOutcome(value))
    raise TypeError(f"check returned {type(value).__name__}, expected CheckResult or CheckOutcome")


class AuditPipeline:
    """Sequences checks, times each one and seals the report."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock

    @staticmethod
    def generate_run_id() -> str:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"AUDIT-{ts}-{uuid.uuid4().hex[:6]}"

    def run(self, checks: Sequence[CheckSpec], run_id: Optional[str] = None) -> AuditReport:
        """
        Execute checks in order and return the sealed report.

        Args:
            checks: Check objects or (name, callable) pairs

        Returns:
            Sealed AuditReport with one entry per check
        """
        report = AuditReport(
            run_id=run_id or self.generate_run_id(),
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("Audit %s started with %d checks", report.run_id, len(checks))

        for spec in checks:
            check = _coerce_check(spec)
            started = self._clock()
            try:
                result = _coerce_result(check())
            except Exception as e:
                fault = CheckExecutionFault(check.name, e)
                logger.warning("Audit %s: %s", report.run_id, fault)
                result = CheckResult.failed(f"{type(e).__name__}: {e}")
            elapsed_ms = (self._clock() - started) * 1000.0

            report.append(CheckEntry(
                name=check.name,
                outcome=result.outcome,
                detail=result.detail,
                duration_ms=elapsed_ms,
            ))

        report.seal()
        logger.info(
            "Audit %s sealed: %s",
            report.run_id,
            ", ".join(f"{c.name}={c.outcome.value}" for c in report.checks) or "no checks",
        )
        return report


class CheckRegistry:
    """Name -> Check lookup used when callers refer to checks by name."""

    def __init__(self, checks: Iterable[Check] = ()):
        self._checks: Dict[str, Check] = OrderedDict()
        for check in checks:
            self.register(check)

    def register(self, check: Check) -> None:
        self._checks[check.name] = check

    def get(self, name: str) -> Optional[Check]:
        return self._checks.get(name)

    def names(self) -> List[str]:
        return list(self._checks.keys())

    def resolve(self, names: Iterable[str]) -> List[Check]:
        """
        Map names to checks, in order.

        Unknown names resolve to a check that FAILs, so the report still
        shows every name the caller asked for.
        """
        resolved = []
        for name in names:
            check = self._checks.get(name)
            if check is None:
                check = Check(
                    name=name,
                    fn=lambda name=name: CheckResult.failed(f"No check registered under '{name}'"),
                )
            resolved.append(check)
        return resolved

    def __contains__(self, name: str) -> bool:
        return name in self._checks

    def __len__(self) -> int:
        return len(self._checks)


class AuditReportStore:
    """Bounded in-memory history of sealed reports, oldest evicted first."""

    def __init__(self, max_reports: int = 100):
        self._reports: "OrderedDict[str, AuditReport]" = OrderedDict()
        self._max_reports = max_reports
        self._lock = threading.Lock()

    def add(self, report: AuditReport) -> None:
        if not report.sealed:
            raise ValueError("Only sealed reports can be stored")
        with self._lock:
            self._reports[report.run_id] = report
            while len(self._reports) > self._max_reports:
                self._reports.popitem(last=False)

    def get(self, run_id: str) -> Optional[AuditReport]:
        with self._lock:
            return self._reports.get(run_id)

    def recent(self, limit: int = 10) -> List[AuditReport]:
        with self._lock:
            return list(self._reports.values())[-limit:][::-1]
