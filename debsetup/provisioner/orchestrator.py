"""Step orchestration: ordering, idempotence checks and failure policy."""

import logging
import threading
from enum import Enum
from typing import Callable

from ..errors import PrivilegeError, ProvisionError
from .models import (
    Condition,
    FailurePolicy,
    Outcome,
    ProvisioningStep,
    RunReport,
    SkipReason,
    StepResult,
)
from .registry import StepRegistry
from .report import ReportBuilder

_logging = logging.getLogger(__name__)


class OrchestratorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class Orchestrator:
    """Runs a validated plan once against the live host.

    The orchestrator is the only place where step failures are turned into
    run-level decisions; probe and apply errors never propagate past it.
    """

    def __init__(
        self,
        registry: StepRegistry,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
        dry_run: bool = False,
        stop_event: threading.Event | None = None,
        on_result: Callable[[StepResult], None] | None = None,
    ):
        self.registry = registry
        self.policy = policy
        self.dry_run = dry_run
        self.stop_event = stop_event or threading.Event()
        self.on_result = on_result
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def run(self) -> RunReport:
        if self._state != OrchestratorState.IDLE:
            raise RuntimeError(f"Orchestrator already used (state: {self._state.value})")
        self._state = OrchestratorState.RUNNING

        results: dict[str, StepResult] = {}
        halted: str | None = None

        for step in self.registry.ordered():
            if halted is None and self.stop_event.is_set():
                halted = "stop requested"
                _logging.warning("Stop requested, remaining steps will not run")

            if halted is not None:
                result = StepResult(step.name, Outcome.ABORTED, detail=halted)
            else:
                result = self._run_step(step, results)

            results[step.name] = result
            _logging.debug(f"{step.name}: {result.outcome.value} {result.detail}")
            if self.on_result:
                self.on_result(result)

            if (
                halted is None
                and result.outcome == Outcome.FAILED
                and self.policy == FailurePolicy.FAIL_FAST
            ):
                halted = f"not run: '{step.name}' failed"

        self._state = (
            OrchestratorState.ABORTED if halted is not None else OrchestratorState.COMPLETED
        )
        return ReportBuilder().build(results.values(), self.policy, self.dry_run)

    def _run_step(
        self, step: ProvisioningStep, results: dict[str, StepResult]
    ) -> StepResult:
        blocked = [d for d in step.depends_on if not results[d].succeeded]
        if blocked:
            return StepResult(
                step.name,
                Outcome.SKIPPED,
                detail=f"blocked by: {', '.join(blocked)}",
                reason=SkipReason.BLOCKED,
            )

        if self.dry_run:
            pending = [
                d for d in step.depends_on if results[d].reason == SkipReason.DRY_RUN
            ]
            if pending:
                return StepResult(
                    step.name,
                    Outcome.SKIPPED,
                    detail=f"would {step.description} (after {', '.join(pending)})",
                    reason=SkipReason.DRY_RUN,
                )

        try:
            before = step.precondition()
        except ProvisionError as e:
            if self.dry_run and isinstance(e, PrivilegeError):
                return StepResult(
                    step.name,
                    Outcome.SKIPPED,
                    detail=f"would {step.description} if needed (state unknown without root)",
                    reason=SkipReason.DRY_RUN,
                )
            return StepResult(step.name, Outcome.FAILED, detail=f"state unknown: {e}")
        except Exception as e:
            return self._crashed(step, "state unknown", e)

        if before == Condition.SATISFIED:
            return StepResult(
                step.name, Outcome.SKIPPED, reason=SkipReason.ALREADY_SATISFIED
            )

        if self.dry_run:
            return StepResult(
                step.name,
                Outcome.SKIPPED,
                detail=f"would {step.description}",
                reason=SkipReason.DRY_RUN,
            )

        _logging.info(f"Applying {step.name}")
        try:
            detail = step.apply() or step.description
        except ProvisionError as e:
            return StepResult(step.name, Outcome.FAILED, detail=str(e))
        except Exception as e:
            return self._crashed(step, "apply failed", e)

        try:
            after = step.postcondition()
        except ProvisionError as e:
            return StepResult(
                step.name, Outcome.FAILED, detail=f"applied, but state unknown: {e}"
            )
        except Exception as e:
            return self._crashed(step, "applied, but state unknown", e)
        if after != Condition.SATISFIED:
            return StepResult(
                step.name,
                Outcome.FAILED,
                detail="applied, but the host is not in the expected state",
            )

        return StepResult(step.name, Outcome.APPLIED, detail=detail)

    @staticmethod
    def _crashed(step: ProvisioningStep, prefix: str, error: Exception) -> StepResult:
        _logging.error(f"Unexpected error in {step.name}", exc_info=error)
        return StepResult(
            step.name,
            Outcome.FAILED,
            detail=f"{prefix}: unexpected {type(error).__name__}: {error}",
        )


__all__ = [
    "Orchestrator",
    "OrchestratorState",
]
