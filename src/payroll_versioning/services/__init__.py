"""Payroll versioning services."""

from payroll_versioning.services.state_machine import ReceiptStateMachine
from payroll_versioning.services.snapshot_service import RulesetSnapshotManager
from payroll_versioning.services.version_store import VersionStore
from payroll_versioning.services.diff_engine import ReceiptComparator
from payroll_versioning.services.lifecycle_service import ReceiptLifecycleService
from payroll_versioning.services.authorization_gate import AuthorizationGate

__all__ = [
    "AuthorizationGate",
    "ReceiptComparator",
    "ReceiptLifecycleService",
    "ReceiptStateMachine",
    "RulesetSnapshotManager",
    "VersionStore",
]
