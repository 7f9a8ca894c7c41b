"""
Failure Taxonomy & Codes for SwitchVault.

Canonical failure codes for every error the service can surface.
Every raised SwitchVaultError carries a code. Codes are immutable once assigned.
"""

from typing import Dict, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class FailureCode:
    """Immutable failure code definition."""
    code: str
    category: str
    name: str  # wire name used in API error bodies
    description: str


# ============================================================================
# FAILURE CODE REGISTRY
# ============================================================================

# State store failures (SV-STORE-XXX)
STORE_001 = FailureCode("SV-STORE-001", "STORE", "NotFound", "Switch key has never been created")
STORE_002 = FailureCode("SV-STORE-002", "STORE", "VersionConflict", "Expected version does not match stored version")
STORE_003 = FailureCode("SV-STORE-003", "STORE", "StoreUnavailable", "Backing store could not complete the operation")

# Authorization failures (SV-AUTH-XXX)
AUTH_001 = FailureCode("SV-AUTH-001", "AUTH", "Unauthorized", "Principal is not permitted to perform this action")
AUTH_002 = FailureCode("SV-AUTH-002", "AUTH", "PolicyConfigError", "Authorization policy is missing or invalid")

# Service failures (SV-SVC-XXX)
SVC_001 = FailureCode("SV-SVC-001", "SERVICE", "Contention", "Retry budget exhausted by concurrent writers")

# Ledger failures (SV-LEDGER-XXX)
LEDGER_001 = FailureCode("SV-LEDGER-001", "LEDGER", "LedgerWriteError", "Toggle ledger write failure")
LEDGER_002 = FailureCode("SV-LEDGER-002", "LEDGER", "LedgerTampering", "Toggle ledger chain or sequence is broken")

# Audit failures (SV-AUDIT-XXX)
AUDIT_001 = FailureCode("SV-AUDIT-001", "AUDIT", "CheckExecutionFault", "Audit check raised during execution")

# All codes registry
_CODE_REGISTRY: Dict[str, FailureCode] = {
    fc.code: fc for fc in [
        STORE_001, STORE_002, STORE_003,
        AUTH_001, AUTH_002,
        SVC_001,
        LEDGER_001, LEDGER_002,
        AUDIT_001,
    ]
}


def get_failure_code(code: str) -> Optional[FailureCode]:
    """Get a failure code by its code string."""
    return _CODE_REGISTRY.get(code)


def get_all_codes() -> Dict[str, FailureCode]:
    """Get all registered failure codes."""
    return _CODE_REGISTRY.copy()


def validate_codes_unique() -> bool:
    """Verify all codes are unique."""
    codes = list(_CODE_REGISTRY.keys())
    return len(codes) == len(set(codes))


def format_failure_message(failure_code: FailureCode, details: Optional[str] = None) -> str:
    """
    Format a failure message with code.

    Returns:
        Single-line failure message suitable for logs and CLI output
    """
    message = f"[{failure_code.code}] {failure_code.description}"
    if details:
        message += f": {details}"
    return message


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SwitchVaultError(Exception):
    """Exception with canonical failure code."""

    failure_code: FailureCode = STORE_003

    def __init__(self, details: Optional[str] = None, failure_code: Optional[FailureCode] = None):
        if failure_code is not None:
            self.failure_code = failure_code
        self.details = details
        super().__init__(format_failure_message(self.failure_code, details))

    @property
    def code(self) -> str:
        return self.failure_code.code

    @property
    def category(self) -> str:
        return self.failure_code.category

    @property
    def error_name(self) -> str:
        """Wire name for API error bodies ("Unauthorized", "Contention", ...)."""
        return self.failure_code.name


class SwitchNotFoundError(SwitchVaultError):
    """Raised when a switch key has never been created."""
    failure_code = STORE_001

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"key={key!r}")


class VersionConflictError(SwitchVaultError):
    """Raised by compare-and-set when the expected version is stale."""
    failure_code = STORE_002

    def __init__(self, key: str, expected_version: int, actual_version: int):
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"key={key!r} expected={expected_version} actual={actual_version}"
        )


class StoreUnavailableError(SwitchVaultError):
    """Raised when the backing store fails underneath an operation."""
    failure_code = STORE_003


class UnauthorizedError(SwitchVaultError):
    """Raised when the authorization gate denies a principal."""
    failure_code = AUTH_001

    def __init__(self, principal: Optional[str], key: str, action: str, reason: str):
        self.principal = principal
        self.key = key
        self.action = action
        self.reason = reason
        super().__init__(f"principal={principal!r} key={key!r} action={action}: {reason}")


class PolicyConfigError(SwitchVaultError):
    """Raised when an authorization policy file cannot be loaded."""
    failure_code = AUTH_002


class ContentionError(SwitchVaultError):
    """Raised when a toggle keeps losing compare-and-set races."""
    failure_code = SVC_001

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"key={key!r} attempts={attempts}")


class LedgerWriteError(SwitchVaultError):
    """Raised when ledger write fails."""
    failure_code = LEDGER_001


class LedgerTamperingError(SwitchVaultError):
    """Raised when ledger tampering is detected."""
    failure_code = LEDGER_002


class CheckExecutionFault(SwitchVaultError):
    """
    Wraps an exception raised inside an audit check.

    Never propagated out of the audit pipeline; it is converted into a
    FAIL outcome on the report.
    """
    failure_code = AUDIT_001

    def __init__(self, check_name: str, cause: BaseException):
        self.check_name = check_name
        self.cause = cause
        super().__init__(f"check={check_name!r} raised {type(cause).__name__}: {cause}")
