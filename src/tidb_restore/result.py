# Copyright 2025 Canonical Ltd.
# See LICENSE file for licensing details.

"""Outcome of a reconciliation pass."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a pass that did not fail.

    A pass either finished the work it could do, or has to wait for a
    precondition and asks to be run again after a delay. Waiting is not a
    failure and is never recorded as a restore condition.
    """

    reason: Optional[str] = None
    requeue_after: Optional[float] = None

    @classmethod
    def done(cls) -> "SyncResult":
        """Return the outcome of a finished pass."""
        return cls()

    @classmethod
    def wait(cls, reason: str, delay: float) -> "SyncResult":
        """Return the outcome of a pass waiting for a precondition."""
        return cls(reason=reason, requeue_after=delay)

    @property
    def is_waiting(self) -> bool:
        """Return True if the pass must be run again after a delay."""
        return self.requeue_after is not None
