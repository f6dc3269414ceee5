"""
Recovery policy for crashed or failing processes.

Pure decision logic: given the recent history of a process and how many
times it has already been restarted, decide whether to keep it alive,
restart it (immediately or after an exponential backoff) or give up.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .classifier import ClassifiedError, ErrorCategory, Severity
from .store import ProcessHistory

# Receives the port conflict error; returns environment overrides for the
# next launch (e.g. {"PORT": "3001"}) or None when no remediation exists.
PortRemediation = Callable[[ClassifiedError], Optional[dict[str, str]]]


class RecoveryAction(Enum):
    KEEP_ALIVE = "keep_alive"
    RESTART_NOW = "restart_now"
    RESTART_AFTER = "restart_after"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    reason: str
    delay: float = 0.0  # seconds, for RESTART_AFTER
    environment: dict[str, str] = field(default_factory=dict)

    @property
    def restarts(self) -> bool:
        return self.action in (RecoveryAction.RESTART_NOW, RecoveryAction.RESTART_AFTER)

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "delay": self.delay,
            "environment": dict(self.environment),
        }


def keep_alive(reason: str) -> RecoveryDecision:
    return RecoveryDecision(RecoveryAction.KEEP_ALIVE, reason)


def give_up(reason: str) -> RecoveryDecision:
    return RecoveryDecision(RecoveryAction.GIVE_UP, reason)


class RecoveryPolicy:
    """Bounded restarts with exponential backoff and category overrides."""

    def __init__(
        self,
        max_restarts: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30000,
        port_conflict_remediation: Optional[PortRemediation] = None,
    ):
        self.max_restarts = max_restarts
        self.backoff_base_ms = max(0, backoff_base_ms)
        self.backoff_max_ms = max(self.backoff_base_ms, backoff_max_ms)
        self.port_conflict_remediation = port_conflict_remediation

    @classmethod
    def from_config(cls, config, port_conflict_remediation: Optional[PortRemediation] = None):
        return cls(
            max_restarts=config.max_restarts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_max_ms=config.backoff_max_ms,
            port_conflict_remediation=port_conflict_remediation,
        )

    def backoff(self, restart_count: int) -> float:
        """Delay in seconds before restart number restart_count + 1."""
        exponent = min(max(restart_count, 0), 32)
        delay_ms = min(self.backoff_base_ms * (2 ** exponent), self.backoff_max_ms)
        return delay_ms / 1000

    def _restart(self, restart_count: int, reason: str, environment=None) -> RecoveryDecision:
        delay = self.backoff(restart_count)
        if delay <= 0:
            return RecoveryDecision(RecoveryAction.RESTART_NOW, reason, environment=environment or {})
        return RecoveryDecision(RecoveryAction.RESTART_AFTER, reason, delay, environment or {})

    def decide(self, history: ProcessHistory, restart_count: int, alive: bool = False) -> RecoveryDecision:
        """Decide what to do for a process.

        alive is True while the process is still running. The decision is
        the same as after an exit, except that a remediated port conflict
        restarts at once: the process holding the port is the one restarted.
        """
        error = history.latest_error()
        if error is None:
            return keep_alive("no classified errors")

        if error.category == ErrorCategory.PORT_CONFLICT and error.severity == Severity.CRITICAL:
            if self.port_conflict_remediation is None:
                return give_up(f"port conflict: {error.raw_line[:200]}")
            if restart_count >= self.max_restarts:
                return give_up(f"port conflict persists after {restart_count} restarts")
            overrides = self.port_conflict_remediation(error)
            if not overrides:
                return give_up(f"port conflict: {error.raw_line[:200]}")
            if alive:
                return RecoveryDecision(
                    RecoveryAction.RESTART_NOW, "port conflict remediated", environment=dict(overrides)
                )
            return self._restart(restart_count, "port conflict remediated", dict(overrides))

        if error.severity != Severity.CRITICAL:
            return keep_alive(f"non-fatal {error.severity.value.lower()}: {error.matched_pattern}")

        if restart_count >= self.max_restarts:
            return give_up(f"exceeded {self.max_restarts} restarts ({error.category.value})")

        return self._restart(restart_count, f"{error.category.value}: {error.matched_pattern}")
