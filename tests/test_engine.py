import os
import sys
import time

import pytest

from qualitygate.engine import Pipeline, run_step, summarize_failure, validate_steps
from qualitygate.exceptions import ConfigurationError, InvocationError
from qualitygate.models import (
    CANCELLED,
    INVOCATION_ERROR,
    NOT_INSTALLED,
    Command,
    RunMode,
    Step,
    StepStatus,
)
from qualitygate.runners import LocalRunner


def python_step(name: str, code: str, **kwargs) -> Step:
    return Step(name=name, command=Command(program=sys.executable, args=("-c", code)), **kwargs)


def statuses(run):
    return [r.status for r in run.results]


class TestRunStep:
    def test_success(self, fake_runner, step):
        runner = fake_runner({"flake8": (0, ["all good"])})
        result = run_step(step("lint", "flake8"), ".", runner=runner)
        assert result.status == StepStatus.SUCCEEDED
        assert result.exit_code == 0
        assert result.output == ("all good",)
        assert result.error_summary is None

    def test_check_failure_summarized_from_output(self, fake_runner, step):
        runner = fake_runner({"mypy": (1, [
            "src/app.py:3: error: Incompatible types",
            "src/app.py:9: error: Missing return statement",
            "Found 2 errors in 1 file (checked 4 source files)",
        ])})
        result = run_step(step("type-check", "mypy"), ".", runner=runner)
        assert result.status == StepStatus.FAILED
        assert result.exit_code == 1
        assert result.error_summary == "Found 2 errors in 1 file (checked 4 source files)"

    def test_invocation_error(self, fake_runner, step, missing_tool):
        runner = fake_runner({"flake8": missing_tool})
        result = run_step(step("lint", "flake8"), ".", runner=runner)
        assert result.status == StepStatus.FAILED
        assert result.error_summary == INVOCATION_ERROR
        assert result.exit_code is None
        assert result.is_invocation_error

    def test_missing_optional_tool_is_skipped(self, fake_runner, step):
        runner = fake_runner({"ruff": InvocationError("ruff", "command not found", missing=True)})
        result = run_step(step("lint-ruff", "ruff", if_available=True, required=False), ".", runner=runner)
        assert result.status == StepStatus.SKIPPED
        assert result.error_summary == NOT_INSTALLED

    def test_unstartable_tool_fails_even_if_available_flag_set(self, fake_runner, step):
        runner = fake_runner({"ruff": InvocationError("ruff", "permission denied")})
        result = run_step(step("lint-ruff", "ruff", if_available=True), ".", runner=runner)
        assert result.status == StepStatus.FAILED
        assert result.error_summary == INVOCATION_ERROR

    def test_streams_lines(self, fake_runner, step):
        seen = []
        runner = fake_runner({"pytest": (0, ["collected 3 items", "3 passed"])})
        run_step(step("test", "pytest"), ".", runner=runner, on_line=seen.append)
        assert seen == ["collected 3 items", "3 passed"]


class TestSummarizeFailure:
    def test_uses_last_non_empty_line(self):
        assert summarize_failure(["a", "b", "", "  "], 1) == "b"

    def test_strips_pytest_banner(self):
        assert summarize_failure(["===== 1 failed, 2 passed in 0.12s ====="], 1) == "1 failed, 2 passed in 0.12s"

    def test_falls_back_to_exit_code(self):
        assert summarize_failure([], 2) == "exit code 2"


class TestValidateSteps:
    def test_empty_list(self):
        with pytest.raises(ConfigurationError):
            validate_steps([])

    def test_duplicate_names(self, step):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            validate_steps([step("lint", "flake8"), step("lint", "ruff")])

    def test_formatter_after_checker(self, step):
        with pytest.raises(ConfigurationError, match="formatters must run first"):
            validate_steps([step("lint", "flake8"), step("format", "black", mutates=True)])

    def test_formatters_first_is_fine(self, step):
        validate_steps([
            step("format", "black", mutates=True),
            step("import-order", "isort", mutates=True),
            step("lint", "flake8"),
        ])

    def test_mutating_step_cannot_be_concurrent(self, step):
        with pytest.raises(ConfigurationError):
            validate_steps([step("format", "black", mutates=True, concurrent=True)])

    def test_pipeline_rejects_empty_list(self, fake_runner):
        with pytest.raises(ConfigurationError):
            Pipeline([], runner=fake_runner())

    def test_pipeline_rejects_zero_workers(self, fake_runner, step):
        with pytest.raises(ConfigurationError):
            Pipeline([step("lint")], runner=fake_runner(), workers=0)


class TestPipelineFailFast:
    def test_all_pass(self, fake_runner, gate_steps):
        run = Pipeline(gate_steps, runner=fake_runner()).execute()
        assert len(run.results) == len(gate_steps)
        assert statuses(run) == [StepStatus.SUCCEEDED] * 4
        assert run.overall_status == StepStatus.SUCCEEDED
        assert run.finished_at is not None
        assert run.cancelled is False

    def test_type_check_failure_skips_tests(self, fake_runner, gate_steps):
        runner = fake_runner({"mypy": (1, ["a.py:1: error: x", "a.py:2: error: y", "Found 2 errors in 1 file"])})
        run = Pipeline(gate_steps, runner=runner).execute(RunMode.FAIL_FAST)

        assert [r.step_name for r in run.results] == ["format", "lint", "type-check", "test"]
        assert statuses(run) == [
            StepStatus.SUCCEEDED,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        ]
        assert run.overall_status == StepStatus.FAILED
        assert "pytest" not in runner.calls

    def test_first_step_failure_skips_everything_after(self, fake_runner, gate_steps):
        runner = fake_runner({"black": (1, ["would reformat src/a.py"])})
        run = Pipeline(gate_steps, runner=runner).execute()
        assert statuses(run)[1:] == [StepStatus.SKIPPED] * 3
        assert runner.calls == ["black"]

    def test_optional_failure_does_not_halt(self, fake_runner, step):
        steps = [
            step("lint-ruff", "ruff", required=False),
            step("type-check", "mypy"),
        ]
        runner = fake_runner({"ruff": (1, ["E501 line too long"])})
        run = Pipeline(steps, runner=runner).execute()
        assert statuses(run) == [StepStatus.FAILED, StepStatus.SUCCEEDED]
        assert run.overall_status == StepStatus.SUCCEEDED

    def test_invocation_error_vs_check_failure(self, fake_runner, gate_steps, missing_tool):
        runner = fake_runner({
            "flake8": missing_tool,
            "mypy": (1, ["Found 2 errors in 1 file"]),
        })
        run = Pipeline(gate_steps, runner=runner).execute(RunMode.CONTINUE_ON_FAILURE)
        lint = run.result_for("lint")
        type_check = run.result_for("type-check")
        assert lint.status == StepStatus.FAILED
        assert lint.error_summary == INVOCATION_ERROR
        assert type_check.status == StepStatus.FAILED
        assert type_check.error_summary == "Found 2 errors in 1 file"

    def test_same_inputs_same_outcomes(self, fake_runner, gate_steps):
        runner = fake_runner({"mypy": (1, ["Found 1 error in 1 file"])})
        pipeline = Pipeline(gate_steps, runner=runner)
        first = pipeline.execute()
        second = pipeline.execute()
        assert statuses(first) == statuses(second)
        assert [r.output for r in first.results] == [r.output for r in second.results]
        assert [r.error_summary for r in first.results] == [r.error_summary for r in second.results]


class TestPipelineContinueOnFailure:
    def test_test_still_runs_after_type_check_failure(self, fake_runner, gate_steps):
        runner = fake_runner({"mypy": (1, ["Found 2 errors in 1 file"])})
        run = Pipeline(gate_steps, runner=runner).execute(RunMode.CONTINUE_ON_FAILURE)
        assert statuses(run) == [
            StepStatus.SUCCEEDED,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SUCCEEDED,
        ]
        assert run.overall_status == StepStatus.FAILED
        assert "pytest" in runner.calls

    def test_result_count_matches_step_count(self, fake_runner, gate_steps):
        runner = fake_runner({p: (1, ["bad"]) for p in ("black", "flake8", "mypy", "pytest")})
        run = Pipeline(gate_steps, runner=runner).execute(RunMode.CONTINUE_ON_FAILURE)
        assert len(run.results) == len(gate_steps)
        assert statuses(run) == [StepStatus.FAILED] * 4


class TestConcurrentBatches:
    def _steps(self, step):
        return [
            step("format-check", "black", concurrent=True),
            step("lint", "flake8", concurrent=True),
            step("type-check", "mypy", concurrent=True),
            step("test", "pytest"),
        ]

    def test_single_worker_runs_one_at_a_time(self, fake_runner, step):
        pipeline = Pipeline(self._steps(step), runner=fake_runner())
        assert [len(b) for b in pipeline.batches()] == [1, 1, 1, 1]

    def test_concurrent_steps_are_batched(self, fake_runner, step):
        pipeline = Pipeline(self._steps(step), runner=fake_runner(), workers=3)
        assert [[s.name for s in b] for b in pipeline.batches()] == [
            ["format-check", "lint", "type-check"],
            ["test"],
        ]

    def test_results_in_declaration_order(self, fake_runner, step):
        delays = {"black": 0.2, "flake8": 0.1, "mypy": 0.0}

        def slow(command):
            time.sleep(delays.get(command.program, 0))

        runner = fake_runner(on_run=slow)
        run = Pipeline(self._steps(step), runner=runner, workers=3).execute()
        assert [r.step_name for r in run.results] == ["format-check", "lint", "type-check", "test"]
        assert statuses(run) == [StepStatus.SUCCEEDED] * 4

    def test_failure_in_batch_skips_later_steps(self, fake_runner, step):
        runner = fake_runner({"flake8": (1, ["E1"])})
        run = Pipeline(self._steps(step), runner=runner, workers=3).execute()
        assert statuses(run) == [
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SUCCEEDED,
            StepStatus.SKIPPED,
        ]


class TestCancellation:
    def test_cancel_marks_current_failed_and_rest_skipped(self, fake_runner, gate_steps):
        pipeline = None

        def cancel_on_mypy(command):
            if command.program == "mypy":
                pipeline.cancel()

        runner = fake_runner(on_run=cancel_on_mypy)
        pipeline = Pipeline(gate_steps, runner=runner)
        run = pipeline.execute()

        assert run.cancelled is True
        assert runner.terminated is True
        assert statuses(run) == [
            StepStatus.SUCCEEDED,
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        ]
        assert run.result_for("type-check").error_summary == CANCELLED
        assert run.overall_status == StepStatus.FAILED

    def test_keyboard_interrupt(self, fake_runner, gate_steps):
        runner = fake_runner({"mypy": KeyboardInterrupt()})
        run = Pipeline(gate_steps, runner=runner).execute(RunMode.CONTINUE_ON_FAILURE)

        assert run.cancelled is True
        assert runner.terminated is True
        assert [r.step_name for r in run.results] == ["format", "lint", "type-check", "test"]
        assert run.result_for("type-check").error_summary == CANCELLED
        assert run.result_for("test").status == StepStatus.SKIPPED

    def test_next_execute_starts_fresh(self, fake_runner, gate_steps):
        pipeline = Pipeline(gate_steps, runner=fake_runner())
        pipeline.cancel()
        run = pipeline.execute()
        assert run.cancelled is False
        assert run.succeeded


class TestLocalRunner:
    def test_captures_output_lines(self):
        result = run_step(python_step("echo", "print('hello'); print('world')"), ".", runner=LocalRunner())
        assert result.status == StepStatus.SUCCEEDED
        assert result.output == ("hello", "world")

    def test_captures_stderr(self):
        code = "import sys; print('oops', file=sys.stderr); sys.exit(3)"
        result = run_step(python_step("fail", code), ".", runner=LocalRunner())
        assert result.status == StepStatus.FAILED
        assert result.exit_code == 3
        assert result.error_summary == "oops"

    def test_missing_program(self):
        step = Step(name="lint", command=Command(program="qualitygate-no-such-tool-xyz"))
        result = run_step(step, ".", runner=LocalRunner())
        assert result.status == StepStatus.FAILED
        assert result.error_summary == INVOCATION_ERROR

    def test_missing_program_if_available(self):
        step = Step(name="lint", command=Command(program="qualitygate-no-such-tool-xyz"), if_available=True)
        result = run_step(step, ".", runner=LocalRunner())
        assert result.status == StepStatus.SKIPPED

    def test_working_directory(self, tmp_path):
        (tmp_path / "sub").mkdir()
        step = Step(
            name="pwd",
            command=Command(program=sys.executable, args=("-c", "import os; print(os.getcwd())"), cwd="sub"),
        )
        result = run_step(step, str(tmp_path), runner=LocalRunner())
        assert os.path.realpath(result.output[0]) == os.path.realpath(tmp_path / "sub")

    def test_missing_working_directory(self, tmp_path):
        step = Step(name="pwd", command=Command(program=sys.executable, cwd="nope"), if_available=True)
        result = run_step(step, str(tmp_path), runner=LocalRunner())
        assert result.status == StepStatus.FAILED
        assert result.error_summary == INVOCATION_ERROR

    def test_env(self):
        step = Step(
            name="env",
            command=Command(
                program=sys.executable,
                args=("-c", "import os; print(os.environ['QG_VAR'])"),
                env=(("QG_VAR", "hello123"),),
            ),
        )
        result = run_step(step, ".", runner=LocalRunner())
        assert result.output == ("hello123",)

    @pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
    def test_cancel_kills_running_process(self):
        steps = [
            python_step("slow", "import time; print('started', flush=True); time.sleep(30)"),
            python_step("after", "print('never')"),
        ]
        pipeline = Pipeline(steps, runner=LocalRunner())

        def on_line(step, line):
            if line == "started":
                pipeline.cancel()

        start = time.monotonic()
        run = pipeline.execute(on_line=on_line)
        assert time.monotonic() - start < 10
        assert run.cancelled is True
        assert run.results[0].error_summary == CANCELLED
        assert run.results[1].status == StepStatus.SKIPPED
