"""Content digests for migration drift detection."""

import hashlib
from enum import Enum

# Length of a hex SHA-256 digest; the tracking column is sized to it
CHECKSUM_LENGTH = 64


class ChecksumComparison(str, Enum):
    """Outcome of comparing a recorded checksum with a computed one."""

    MATCH = "match"
    MISMATCH = "mismatch"


class ChecksumTracker:
    """Computes and compares migration content digests.

    Stateless: the same bytes always produce the same digest, on any
    platform and in any run.
    """

    @staticmethod
    def digest(content: bytes) -> str:
        """SHA-256 hex digest of raw migration content.

        Args:
            content: Raw bytes as read from the migration file

        Returns:
            64 character lowercase hex digest
        """
        return hashlib.sha256(content).hexdigest()

    @staticmethod
    def compare(existing: str, computed: str) -> ChecksumComparison:
        """Compare a recorded checksum with a freshly computed one.

        Args:
            existing: Checksum stored in the tracking table
            computed: Checksum of the current content

        Returns:
            MATCH or MISMATCH
        """
        if existing.strip().lower() == computed.strip().lower():
            return ChecksumComparison.MATCH
        return ChecksumComparison.MISMATCH
