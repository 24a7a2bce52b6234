"""Compliance audit trail.

Usage:
    from tachyon_ops.audit import AuditTrail, ComplianceEvent, emit_best_effort
"""

from .trail import (
    AuditConfig,
    AuditSink,
    AuditTrail,
    ComplianceEvent,
    emit_best_effort,
)

__all__ = [
    "AuditConfig",
    "AuditSink",
    "AuditTrail",
    "ComplianceEvent",
    "emit_best_effort",
]
