"""
SwitchVault Control Plane - Core Components

This package contains the kill-switch coordination components:
- SwitchStore: Versioned switch records with compare-and-set
- WatchBroker: Push delivery of switch changes to subscribers
- AuthorizationGate: Pluggable access policy for toggles
- KillSwitchService: Read / toggle / watch orchestration
- AuditPipeline: Ordered, sealed check runs
"""

from .stores import (
    SwitchRecord,
    SwitchState,
    SwitchStore,
    InMemorySwitchStore,
    SQLiteSwitchStore,
)
from .watch_broker import WatchBroker, Subscription
from .authorization import (
    AuthorizationGate,
    AuthorizationDecision,
    AuthorizationPolicy,
    AllowListPolicy,
    RootAuthorityPolicy,
    AllowAuthenticatedPolicy,
    load_policy,
)
from .audit_pipeline import (
    AuditPipeline,
    AuditReport,
    AuditReportStore,
    Check,
    CheckEntry,
    CheckOutcome,
    CheckRegistry,
    CheckResult,
)
from .kill_switch import KillSwitchService

__all__ = [
    # Stores
    'SwitchRecord',
    'SwitchState',
    'SwitchStore',
    'InMemorySwitchStore',
    'SQLiteSwitchStore',
    # Watch
    'WatchBroker',
    'Subscription',
    # Authorization
    'AuthorizationGate',
    'AuthorizationDecision',
    'AuthorizationPolicy',
    'AllowListPolicy',
    'RootAuthorityPolicy',
    'AllowAuthenticatedPolicy',
    'load_policy',
    # Audit
    'AuditPipeline',
    'AuditReport',
    'AuditReportStore',
    'Check',
    'CheckEntry',
    'CheckOutcome',
    'CheckRegistry',
    'CheckResult',
    # Service
    'KillSwitchService',
]
