"""Pytest fixtures shared by the migration and release tests."""

from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from tachyon_ops.audit.trail import AuditTrail, ComplianceEvent


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    """Sleep coroutine that returns immediately."""
    return _no_sleep


@pytest.fixture
def recording_sleep():
    """Sleep coroutine that records requested delays instead of sleeping."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def console() -> Console:
    """Rich console writing to an in-memory buffer."""
    return Console(file=StringIO(), width=200, force_terminal=False, color_system=None)


@pytest.fixture
def audit_trail(tmp_path: Path) -> AuditTrail:
    """Audit trail writing under a temporary directory."""
    return AuditTrail(tmp_path / "audit-base")


class FailingSink:
    """Audit sink whose emit always fails."""

    def __init__(self):
        self.attempts = 0

    def emit(self, event: ComplianceEvent) -> None:
        self.attempts += 1
        raise OSError("audit backend unavailable")


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()
