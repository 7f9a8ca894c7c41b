"""
Retry Strategy Selection for toggle contention.

Bounded, deterministic retry decisions for compare-and-set races.
Only version conflicts are retried; authorization denials never are.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from switchvault.core.failures import (
    SwitchVaultError,
    UnauthorizedError,
    VersionConflictError,
)


# ============================================================================
# FAILURE CLASSIFICATION
# ============================================================================

class FailureClass(Enum):
    """Classification of failure types for retry decisions."""
    VERSION_CONFLICT = "version_conflict"  # Lost a compare-and-set race - retryable
    POLICY = "policy"                      # Authorization denial - not retryable
    STORE = "store"                        # Backing store failure - not retryable here
    UNKNOWN = "unknown"


# Retryable failure classes
RETRYABLE_FAILURES = {
    FailureClass.VERSION_CONFLICT,
}


@dataclass(frozen=True)
class RetryDecision:
    """Immutable retry decision."""
    should_retry: bool
    reason: str
    attempt_number: int
    max_attempts: int
    delay_ms: int


@dataclass
class RetryConfig:
    """Retry configuration. max_attempts counts every compare-and-set, including the first."""
    max_attempts: int = 3
    base_delay_ms: int = 1
    max_delay_ms: int = 20
    backoff_multiplier: float = 2.0


def classify_failure(error: Exception) -> FailureClass:
    """
    Classify a failure for retry decision.

    This is deterministic based on the exception type.
    """
    if isinstance(error, VersionConflictError):
        return FailureClass.VERSION_CONFLICT
    if isinstance(error, UnauthorizedError):
        return FailureClass.POLICY
    if isinstance(error, SwitchVaultError):
        return FailureClass.STORE
    return FailureClass.UNKNOWN


def compute_retry_delay(attempt: int, config: RetryConfig) -> int:
    """
    Compute delay before retry in milliseconds.

    Uses exponential backoff with jitter-free determinism.
    """
    if config.base_delay_ms <= 0:
        return 0
    delay = int(config.base_delay_ms * (config.backoff_multiplier ** (attempt - 1)))
    return min(delay, config.max_delay_ms)


def decide_retry(
    failure_class: FailureClass,
    attempts_made: int,
    config: RetryConfig,
) -> RetryDecision:
    """
    Decide whether and how to retry after `attempts_made` failed attempts.

    Returns an immutable RetryDecision.
    """
    if failure_class not in RETRYABLE_FAILURES:
        return RetryDecision(
            should_retry=False,
            reason=f"Failure class {failure_class.value} is not retryable",
            attempt_number=attempts_made,
            max_attempts=config.max_attempts,
            delay_ms=0,
        )

    if attempts_made >= config.max_attempts:
        return RetryDecision(
            should_retry=False,
            reason=f"Attempt cap ({config.max_attempts}) exhausted",
            attempt_number=attempts_made,
            max_attempts=config.max_attempts,
            delay_ms=0,
        )

    return RetryDecision(
        should_retry=True,
        reason=f"Retry permitted for {failure_class.value}",
        attempt_number=attempts_made + 1,
        max_attempts=config.max_attempts,
        delay_ms=compute_retry_delay(attempts_made, config),
    )


def summarize_config(config: RetryConfig) -> Dict[str, float]:
    """Flat view of a retry config for health output."""
    return {
        "max_attempts": config.max_attempts,
        "base_delay_ms": config.base_delay_ms,
        "max_delay_ms": config.max_delay_ms,
        "backoff_multiplier": config.backoff_multiplier,
    }
