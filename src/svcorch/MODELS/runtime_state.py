"""
Per-service runtime state, owned and replaced by the service's supervisor.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Phase(str, Enum):
    """Lifecycle phase of a supervised service."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RuntimeState:
    """
    Snapshot of a service's lifecycle.

    Instances are never mutated; the supervisor swaps in a new snapshot on
    every transition, so a reader always sees a consistent value.
    """

    phase: Phase = Phase.PENDING
    restart_count: int = 0
    last_error: Optional[str] = None
    pid: Optional[int] = None
    retrying: bool = False

    @property
    def settled(self) -> bool:
        """True once the phase will not change without an outside command."""
        if self.phase in (Phase.READY, Phase.STOPPED):
            return True
        return self.phase is Phase.FAILED and not self.retrying
