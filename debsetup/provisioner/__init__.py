"""Provisioning engine: steps, plan validation, orchestration and reports."""

from .models import (
    Condition,
    FailurePolicy,
    Outcome,
    ProvisioningStep,
    RunReport,
    RunStatus,
    SkipReason,
    StepResult,
)
from .orchestrator import Orchestrator, OrchestratorState
from .registry import StepRegistry
from .report import ReportBuilder, render_report

__all__ = [
    "Condition",
    "FailurePolicy",
    "Outcome",
    "ProvisioningStep",
    "RunReport",
    "RunStatus",
    "SkipReason",
    "StepResult",
    "Orchestrator",
    "OrchestratorState",
    "StepRegistry",
    "ReportBuilder",
    "render_report",
]
