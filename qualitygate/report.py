import re
from dataclasses import dataclass

from qualitygate.classify import Classifier, Finding
from qualitygate.models import PipelineRun, RunMode, StepStatus

DEFAULT_EXCERPT_LINES = 20

GLYPHS = {
    StepStatus.SUCCEEDED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "⊘",
}

COVERAGE_TOTAL = re.compile(r"^TOTAL\s.*?(\d+(?:\.\d+)?)%\s*$")


@dataclass(frozen=True)
class ReportEntry:
    name: str
    status: StepStatus
    glyph: str
    duration: float
    required: bool
    error_summary: str | None = None
    excerpt: tuple[str, ...] = ()
    omitted_lines: int = 0
    findings: tuple[Finding, ...] = ()


@dataclass(frozen=True)
class Report:
    overall_status: StepStatus
    mode: RunMode
    entries: tuple[ReportEntry, ...]
    passed: int
    failed: int
    skipped: int
    duration: float
    cancelled: bool = False
    coverage: float | None = None

    @property
    def failed_entries(self) -> tuple[ReportEntry, ...]:
        return tuple(e for e in self.entries if e.status == StepStatus.FAILED)


def summarize(run: PipelineRun, excerpt_lines: int = DEFAULT_EXCERPT_LINES,
              classifier: Classifier | None = None) -> Report:
    """Project a finished run into a report. Does not touch the run."""
    if excerpt_lines < 0:
        raise ValueError("excerpt_lines must not be negative")

    entries = []
    for result in run.results:
        excerpt: tuple[str, ...] = ()
        omitted = 0
        findings: tuple[Finding, ...] = ()
        if result.status == StepStatus.FAILED:
            excerpt = result.output[:excerpt_lines]
            omitted = len(result.output) - len(excerpt)
            if classifier is not None:
                findings = tuple(classifier.classify(result.output))
        entries.append(ReportEntry(
            name=result.step_name,
            status=result.status,
            glyph=GLYPHS[result.status],
            duration=result.duration,
            required=result.required,
            error_summary=result.error_summary,
            excerpt=excerpt,
            omitted_lines=omitted,
            findings=findings,
        ))

    duration = 0.0
    if run.finished_at is not None:
        duration = round((run.finished_at - run.started_at).total_seconds(), 2)

    return Report(
        overall_status=run.overall_status,
        mode=run.mode,
        entries=tuple(entries),
        passed=sum(1 for e in entries if e.status == StepStatus.SUCCEEDED),
        failed=sum(1 for e in entries if e.status == StepStatus.FAILED),
        skipped=sum(1 for e in entries if e.status == StepStatus.SKIPPED),
        duration=duration,
        cancelled=run.cancelled,
        coverage=extract_coverage(run),
    )


def extract_coverage(run: PipelineRun) -> float | None:
    """Total coverage from a pytest-cov/coverage.py terminal report, if any step printed one."""
    coverage = None
    for result in run.results:
        for line in result.output:
            match = COVERAGE_TOTAL.match(line.strip())
            if match:
                coverage = float(match.group(1))
    return coverage


def render_text(report: Report) -> str:
    width = max((len(e.name) for e in report.entries), default=0)
    status = "PASSED" if report.overall_status == StepStatus.SUCCEEDED else "FAILED"
    if report.cancelled:
        status += " (cancelled)"
    lines = [f"Quality gate: {status}  [{report.mode.value}]", ""]

    for entry in report.entries:
        line = f"  {entry.glyph} {entry.name.ljust(width)}"
        if entry.status != StepStatus.SKIPPED or entry.error_summary:
            line += f"  {entry.duration:6.2f}s"
        if entry.error_summary:
            line += f"  {entry.error_summary}"
        if not entry.required:
            line += "  (optional)"
        lines.append(line.rstrip())

    lines.append("")
    lines.append(f"Passed: {report.passed}  Failed: {report.failed}  Skipped: {report.skipped}")
    if report.coverage is not None:
        lines.append(f"Coverage: {report.coverage:g}%")

    for entry in report.failed_entries:
        if not entry.excerpt and not entry.findings:
            continue
        lines.append("")
        lines.append(f"━━━ {entry.name} ━━━")
        for text in entry.excerpt:
            lines.append(f"  {text}")
        if entry.omitted_lines:
            lines.append(f"  ... (+{entry.omitted_lines} more lines)")
        for finding in entry.findings:
            lines.append(f"  → {finding.suggested_fix}")

    return "\n".join(lines)


def report_to_dict(report: Report) -> dict:
    return {
        "status": report.overall_status.value,
        "mode": report.mode.value,
        "cancelled": report.cancelled,
        "duration": report.duration,
        "counts": {
            "passed": report.passed,
            "failed": report.failed,
            "skipped": report.skipped,
        },
        "coverage": report.coverage,
        "steps": [
            {
                "name": e.name,
                "status": e.status.value,
                "required": e.required,
                "duration": e.duration,
                "error_summary": e.error_summary,
                "excerpt": list(e.excerpt),
                "omitted_lines": e.omitted_lines,
                "findings": [
                    {"pattern": f.pattern, "suggested_fix": f.suggested_fix}
                    for f in e.findings
                ],
            }
            for e in report.entries
        ],
    }
