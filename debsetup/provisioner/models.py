"""Data models for the provisioning engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable


class Condition(Enum):
    SATISFIED = "satisfied"
    NOT_SATISFIED = "not_satisfied"

    @classmethod
    def of(cls, value: bool) -> "Condition":
        return cls.SATISFIED if value else cls.NOT_SATISFIED


class Outcome(Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    ABORTED = "aborted"


class SkipReason(Enum):
    ALREADY_SATISFIED = "already satisfied"
    BLOCKED = "blocked"
    DRY_RUN = "dry run"


class FailurePolicy(Enum):
    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


class RunStatus(Enum):
    ALL_APPLIED = "all_applied"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ProvisioningStep:
    name: str
    precondition: Callable[[], Condition]
    apply: Callable[[], str | None]
    postcondition: Callable[[], Condition]
    depends_on: tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise ValueError("name must be a non-empty string")
        # Accept any iterable of names but store it ordered and hashable.
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(self.depends_on)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepResult:
    step_name: str
    outcome: Outcome
    detail: str = ""
    reason: SkipReason | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def succeeded(self) -> bool:
        """True when dependents may proceed."""
        if self.outcome == Outcome.APPLIED:
            return True
        return self.outcome == Outcome.SKIPPED and self.reason in (
            SkipReason.ALREADY_SATISFIED,
            SkipReason.DRY_RUN,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step_name,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class RunReport:
    results: tuple[StepResult, ...]
    status: RunStatus
    policy: FailurePolicy = FailurePolicy.FAIL_FAST
    dry_run: bool = False

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def by_outcome(self, outcome: Outcome) -> list[StepResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.ALL_APPLIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "policy": self.policy.value,
            "dry_run": self.dry_run,
            "steps": [r.to_dict() for r in self.results],
        }


__all__ = [
    "Condition",
    "Outcome",
    "SkipReason",
    "FailurePolicy",
    "RunStatus",
    "ProvisioningStep",
    "StepResult",
    "RunReport",
]
