import pytest

from qualitygate.exceptions import InvocationError
from qualitygate.models import Command, Step
from qualitygate.runners import Execution, Runner


class FakeRunner(Runner):
    """Answers each program with a canned exit code and output."""

    def __init__(self, outcomes: dict | None = None, on_run=None):
        self.outcomes = outcomes or {}
        self.on_run = on_run
        self.calls = []
        self.terminated = False
        self.cleaned_up = False

    def run(self, command, working_directory, on_line=None):
        self.calls.append(command.program)
        if self.on_run is not None:
            self.on_run(command)
        outcome = self.outcomes.get(command.program, (0, []))
        if isinstance(outcome, BaseException):
            raise outcome
        exit_code, lines = outcome
        for line in lines:
            if on_line is not None:
                on_line(line)
        return Execution(exit_code=exit_code, lines=list(lines))

    def terminate(self):
        self.terminated = True

    def cleanup(self):
        self.cleaned_up = True


def make_step(name: str, program: str | None = None, **kwargs) -> Step:
    return Step(name=name, command=Command(program=program or name), **kwargs)


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def step():
    return make_step


@pytest.fixture
def gate_steps():
    """format -> lint -> type-check -> test, all required."""
    return [
        make_step("format", "black"),
        make_step("lint", "flake8"),
        make_step("type-check", "mypy"),
        make_step("test", "pytest"),
    ]


@pytest.fixture
def missing_tool():
    return InvocationError("flake8", "command not found", missing=True)
