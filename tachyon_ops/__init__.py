"""Tachyon operations tooling.

Two subsystems:
- Database migrations: ordered, checksum-tracked, transactional schema changes
- Release promotion: versioned release manifests and staging-before-production gating
"""

__version__ = "0.1.0"
