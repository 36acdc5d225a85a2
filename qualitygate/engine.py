import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable

from qualitygate.exceptions import ConfigurationError, InvocationError
from qualitygate.models import (
    CANCELLED,
    INVOCATION_ERROR,
    NOT_INSTALLED,
    PipelineRun,
    RunMode,
    Step,
    StepResult,
    StepStatus,
)
from qualitygate.runners import LineCallback, LocalRunner, Runner

logger = logging.getLogger(__name__)

StepLineCallback = Callable[[Step, str], None]
ResultCallback = Callable[[StepResult], None]


def run_step(step: Step, working_directory: str, runner: Runner | None = None,
             on_line: LineCallback | None = None) -> StepResult:
    """Invoke one step's program once and record the outcome.

    Tool outcomes never raise: a missing or unstartable program becomes a
    failed result with an "invocation error" summary, a non-zero exit becomes
    a failed result summarised from the tool's own output.
    """
    runner = runner or LocalRunner()
    start = time.monotonic()
    try:
        execution = runner.run(step.command, working_directory, on_line=on_line)
    except InvocationError as e:
        duration = round(time.monotonic() - start, 2)
        if e.missing and step.if_available:
            logger.info("Skipping %s: %s is not installed", step.name, e.program)
            return StepResult(
                step_name=step.name,
                status=StepStatus.SKIPPED,
                duration=duration,
                error_summary=NOT_INSTALLED,
                required=step.required,
            )
        logger.error("Step '%s' could not be started: %s", step.name, e)
        return StepResult(
            step_name=step.name,
            status=StepStatus.FAILED,
            duration=duration,
            output=(str(e),),
            error_summary=INVOCATION_ERROR,
            required=step.required,
        )

    duration = round(time.monotonic() - start, 2)
    output = tuple(execution.lines)
    if execution.exit_code == 0:
        logger.info("Step '%s' passed in %.2fs", step.name, duration)
        return StepResult(
            step_name=step.name,
            status=StepStatus.SUCCEEDED,
            duration=duration,
            output=output,
            exit_code=0,
            required=step.required,
        )

    logger.info("Step '%s' failed with exit code %d", step.name, execution.exit_code)
    return StepResult(
        step_name=step.name,
        status=StepStatus.FAILED,
        duration=duration,
        output=output,
        error_summary=summarize_failure(execution.lines, execution.exit_code),
        exit_code=execution.exit_code,
        required=step.required,
    )


def summarize_failure(lines: list[str], exit_code: int) -> str:
    for line in reversed(lines):
        text = line.strip().strip("=").strip()
        if text:
            return text
    return f"exit code {exit_code}"


def validate_steps(steps: list[Step]) -> None:
    if not steps:
        raise ConfigurationError("Pipeline needs at least one step")
    seen = set()
    read_only_seen = None
    for step in steps:
        if not step.name:
            raise ConfigurationError("Every step needs a name")
        if step.name in seen:
            raise ConfigurationError(f"Duplicate step name: {step.name}")
        seen.add(step.name)
        if step.mutates and step.concurrent:
            raise ConfigurationError(f"Step '{step.name}' rewrites files and can't run concurrently")
        if step.mutates and read_only_seen is not None:
            raise ConfigurationError(
                f"Step '{step.name}' rewrites files but is declared after "
                f"read-only step '{read_only_seen}'; formatters must run first"
            )
        if not step.mutates and read_only_seen is None:
            read_only_seen = step.name


class Pipeline:
    """An ordered list of steps run under a fail-fast or continue-on-failure mode."""

    def __init__(self, steps: list[Step], runner: Runner | None = None, workers: int = 1):
        steps = list(steps)
        validate_steps(steps)
        if workers < 1:
            raise ConfigurationError("workers must be at least 1")
        self.steps = tuple(steps)
        self.runner = runner or LocalRunner()
        self.workers = workers
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop the active invocation; remaining steps are recorded as skipped."""
        self._cancel.set()
        self.runner.terminate()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def batches(self) -> list[list[Step]]:
        """Group steps into execution batches, preserving declaration order."""
        batches: list[list[Step]] = []
        for step in self.steps:
            if (
                self.workers > 1
                and step.concurrent
                and batches
                and batches[-1][-1].concurrent
            ):
                batches[-1].append(step)
            else:
                batches.append([step])
        return batches

    def execute(self, mode: RunMode = RunMode.FAIL_FAST, working_directory: str = ".",
                on_line: StepLineCallback | None = None,
                on_result: ResultCallback | None = None) -> PipelineRun:
        self._cancel.clear()
        run = PipelineRun(mode=mode, started_at=datetime.now(timezone.utc))
        halted = False

        def record(result: StepResult) -> None:
            run.results.append(result)
            if on_result is not None:
                on_result(result)

        active: list[Step] = []
        try:
            for batch in self.batches():
                if halted or self.cancelled:
                    run.cancelled = run.cancelled or self.cancelled
                    for step in batch:
                        record(_skipped(step))
                    continue

                active = batch
                results = self._run_batch(batch, working_directory, on_line)
                active = []
                for result in results:
                    record(result)

                if self.cancelled:
                    run.cancelled = True
                    halted = True
                elif mode == RunMode.FAIL_FAST and any(
                    r.required and r.status == StepStatus.FAILED for r in results
                ):
                    logger.info("Required step failed; skipping remaining steps")
                    halted = True
        except KeyboardInterrupt:
            logger.warning("Interrupted; terminating active step")
            self.cancel()
            run.cancelled = True
            done = {r.step_name for r in run.results}
            running = {s.name for s in active}
            for step in self.steps:
                if step.name in done:
                    continue
                if step.name in running:
                    record(_cancelled(step, 0.0))
                else:
                    record(_skipped(step))

        run.finished_at = datetime.now(timezone.utc)
        return run

    def _run_batch(self, batch: list[Step], working_directory: str,
                   on_line: StepLineCallback | None) -> list[StepResult]:
        if len(batch) == 1:
            return [self._run_one(batch[0], working_directory, on_line)]

        logger.debug("Running %d steps concurrently", len(batch))
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [
                pool.submit(self._run_one, step, working_directory, on_line)
                for step in batch
            ]
            try:
                return [f.result() for f in futures]
            except KeyboardInterrupt:
                # Workers block on their subprocesses; kill them before the pool joins.
                self.cancel()
                raise

    def _run_one(self, step: Step, working_directory: str,
                 on_line: StepLineCallback | None) -> StepResult:
        if self.cancelled:
            return _skipped(step)
        logger.info("Running step '%s': %s", step.name, step.command.display())
        line_cb = None
        if on_line is not None:
            line_cb = lambda line: on_line(step, line)  # noqa: E731
        result = run_step(step, working_directory, runner=self.runner, on_line=line_cb)
        if self.cancelled and result.status != StepStatus.SKIPPED:
            return _cancelled(step, result.duration, result.output)
        return result


def _skipped(step: Step) -> StepResult:
    return StepResult(step_name=step.name, status=StepStatus.SKIPPED, required=step.required)


def _cancelled(step: Step, duration: float, output: tuple[str, ...] = ()) -> StepResult:
    return StepResult(
        step_name=step.name,
        status=StepStatus.FAILED,
        duration=duration,
        output=output,
        error_summary=CANCELLED,
        required=step.required,
    )
