"""Run report aggregation and rendering."""

from typing import Iterable

from .models import (
    FailurePolicy,
    Outcome,
    RunReport,
    RunStatus,
    SkipReason,
    StepResult,
)

OUTCOME_ICONS = {
    Outcome.APPLIED: "✅",
    Outcome.SKIPPED: "⚪",
    Outcome.FAILED: "❌",
    Outcome.ABORTED: "⛔",
}


class ReportBuilder:
    """Pure aggregation of step results into a run report."""

    def build(
        self,
        results: Iterable[StepResult],
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
        dry_run: bool = False,
    ) -> RunReport:
        results = tuple(results)
        return RunReport(
            results=results,
            status=self.status_of(results),
            policy=policy,
            dry_run=dry_run,
        )

    @staticmethod
    def status_of(results: Iterable[StepResult]) -> RunStatus:
        outcomes = {r.outcome for r in results}
        if Outcome.ABORTED in outcomes:
            return RunStatus.ABORTED
        if Outcome.FAILED in outcomes:
            return RunStatus.PARTIAL_FAILURE
        return RunStatus.ALL_APPLIED


def _describe(result: StepResult) -> str:
    if result.outcome == Outcome.SKIPPED and result.reason:
        if result.reason == SkipReason.DRY_RUN:
            return "pending"
        return f"skipped ({result.reason.value})"
    return result.outcome.value


def render_report(report: RunReport) -> str:
    title = "Provisioning Report"
    if report.dry_run:
        title += " (dry run)"
    lines = [title, ""]

    width = max((len(r.step_name) for r in report.results), default=0)
    for i, result in enumerate(report.results, 1):
        icon = OUTCOME_ICONS[result.outcome]
        lines.append(f"  {i:>2}. {icon} {result.step_name.ljust(width)}  {_describe(result)}")
        show_detail = result.outcome in (Outcome.FAILED, Outcome.ABORTED) or (
            result.reason in (SkipReason.DRY_RUN, SkipReason.BLOCKED)
        )
        if show_detail and result.detail:
            for detail_line in result.detail.splitlines():
                lines.append(f"      {detail_line}")

    lines.append("")
    lines.append(
        f"Applied: {report.count(Outcome.APPLIED)}  "
        f"Skipped: {report.count(Outcome.SKIPPED)}  "
        f"Failed: {report.count(Outcome.FAILED)}  "
        f"Aborted: {report.count(Outcome.ABORTED)}"
    )
    lines.append(f"Status: {report.status.value} (policy: {report.policy.value})")
    return "\n".join(lines)


__all__ = [
    "ReportBuilder",
    "render_report",
]
