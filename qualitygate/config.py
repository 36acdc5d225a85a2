import logging
import os
import shlex
from dataclasses import dataclass, field

import yaml

from qualitygate.exceptions import ConfigurationError
from qualitygate.models import Command, RunMode, Step

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("qualitygate.yml", "qualitygate.yaml", ".qualitygate.yml")

MODES = ("analyze-only", "full-cleanup", "ci", "debug", "security")

RUN_MODES = {
    "analyze-only": RunMode.CONTINUE_ON_FAILURE,
    "full-cleanup": RunMode.FAIL_FAST,
    "ci": RunMode.FAIL_FAST,
    "debug": RunMode.FAIL_FAST,
    "security": RunMode.CONTINUE_ON_FAILURE,
}

TOOLS = ("black", "isort", "flake8", "ruff", "mypy", "pytest", "bandit", "safety")

TOP_LEVEL_KEYS = {
    "paths", "excerpt_lines", "workers", "runner", "image", "coverage",
    "setup", "modes", "classifiers", "tools", "env",
}

STEP_KEYS = {"name", "run", "required", "mutates", "concurrent", "if_available", "cwd", "env"}

# Whole-argument placeholders; each expands to zero or more arguments.
PLACEHOLDERS = ("{paths}", "{sources}", "{tests}")
FILTER_PLACEHOLDER = "{filter}"


@dataclass(frozen=True)
class StepSpec:
    """A step as declared in config, before scope placeholders are expanded."""

    name: str
    run: tuple[str, ...]
    required: bool = True
    mutates: bool = False
    concurrent: bool = False
    if_available: bool = False
    cwd: str | None = None
    env: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class CoverageSettings:
    baseline_path: str = ".qualitygate/coverage.json"
    fail_on_decrease: bool = False
    tolerance: float = 0.0


@dataclass(frozen=True)
class GateConfig:
    source_dir: str = "src"
    tests_dir: str = "tests"
    excerpt_lines: int = 20
    workers: int = 1
    runner: str = "local"
    image: str = "python:3.12"
    coverage: CoverageSettings = field(default_factory=CoverageSettings)
    setup: tuple[StepSpec, ...] = ()
    modes: tuple[tuple[str, tuple[StepSpec, ...]], ...] = ()
    classifiers: tuple[tuple[str, str], ...] = ()
    tools: tuple[tuple[str, tuple[str, ...]], ...] = ()
    env: tuple[tuple[str, str], ...] = ()

    def tool_args(self, tool: str) -> tuple[str, ...]:
        return dict(self.tools).get(tool, ())

    def mode_steps(self, mode: str) -> tuple[StepSpec, ...] | None:
        return dict(self.modes).get(mode)


@dataclass(frozen=True)
class Scope:
    paths: tuple[str, ...]
    sources: tuple[str, ...]
    tests: tuple[str, ...]

    def expand(self, name: str) -> tuple[str, ...]:
        return {"{paths}": self.paths, "{sources}": self.sources, "{tests}": self.tests}[name]


def find_config(workdir: str) -> str | None:
    for name in CONFIG_FILENAMES:
        path = os.path.join(workdir, name)
        if os.path.isfile(path):
            return path
    return None


def load_config(path: str | None) -> GateConfig:
    """Read a qualitygate.yml file. ``None`` gives the defaults."""
    if path is None:
        return GateConfig()

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return GateConfig()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid config file: expected YAML mapping, got {type(raw).__name__}")

    unknown = set(raw) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(map(str, unknown)))}")

    paths = _mapping(raw.get("paths", {}), "paths")
    coverage_raw = _mapping(raw.get("coverage", {}), "coverage")

    runner = raw.get("runner", "local")
    if runner not in ("local", "docker"):
        raise ConfigurationError(f"runner must be 'local' or 'docker', got {runner!r}")

    modes = []
    for mode, steps_raw in _mapping(raw.get("modes", {}), "modes").items():
        if mode not in MODES:
            raise ConfigurationError(f"Unknown mode in config: {mode} (expected one of {', '.join(MODES)})")
        modes.append((mode, _step_specs(steps_raw, f"modes.{mode}")))

    tools = []
    for tool, args in _mapping(raw.get("tools", {}), "tools").items():
        if tool not in TOOLS:
            raise ConfigurationError(f"Unknown tool in config: {tool}")
        tools.append((tool, _argv(args, f"tools.{tool}", allow_empty=True)))

    classifiers = []
    for i, rule in enumerate(raw.get("classifiers") or []):
        if not isinstance(rule, dict) or "pattern" not in rule or "fix" not in rule:
            raise ConfigurationError(f"classifiers[{i}] needs 'pattern' and 'fix'")
        classifiers.append((str(rule["pattern"]), str(rule["fix"])))

    config = GateConfig(
        source_dir=str(paths.get("source", "src")),
        tests_dir=str(paths.get("tests", "tests")),
        excerpt_lines=_int(raw.get("excerpt_lines", 20), "excerpt_lines", minimum=0),
        workers=_int(raw.get("workers", 1), "workers", minimum=1),
        runner=runner,
        image=str(raw.get("image", "python:3.12")),
        coverage=CoverageSettings(
            baseline_path=str(coverage_raw.get("baseline", ".qualitygate/coverage.json")),
            fail_on_decrease=bool(coverage_raw.get("fail_on_decrease", False)),
            tolerance=_float(coverage_raw.get("tolerance", 0.0), "coverage.tolerance"),
        ),
        setup=_step_specs(raw.get("setup") or [], "setup"),
        modes=tuple(modes),
        classifiers=tuple(classifiers),
        tools=tuple(tools),
        env=tuple(_str_dict(_mapping(raw.get("env", {}), "env")).items()),
    )
    logger.debug("Loaded config from %s", path)
    return config


def resolve_scope(scope: str, config: GateConfig, workdir: str) -> Scope:
    """Turn the CLI scope argument (a path or "all") into target path sets.

    Paths stay relative to the working directory so they also resolve inside
    a container that mounts it.
    """
    tests_present = os.path.isdir(os.path.join(workdir, config.tests_dir))
    tests = (config.tests_dir,) if tests_present else ()

    if scope == "all":
        if not os.path.exists(os.path.join(workdir, config.source_dir)):
            raise ConfigurationError(
                f"Source directory '{config.source_dir}' not found in {workdir}; "
                "set paths.source in qualitygate.yml"
            )
        return Scope(paths=(config.source_dir, *tests), sources=(config.source_dir,), tests=tests)

    target = os.path.join(workdir, scope)
    if not os.path.exists(target):
        raise ConfigurationError(f"Scope path not found: {scope}")
    rel = os.path.relpath(os.path.abspath(target), os.path.abspath(workdir))
    if rel.startswith(".."):
        raise ConfigurationError(f"Scope path is outside the working directory: {scope}")

    in_tests = tests_present and (rel == config.tests_dir or rel.startswith(config.tests_dir + os.sep))
    if in_tests:
        # Type checks and coverage still target the package when only tests are in scope
        return Scope(paths=(rel,), sources=(config.source_dir,), tests=(rel,))
    return Scope(paths=(rel,), sources=(rel,), tests=tests)


def preset_specs(mode: str, config: GateConfig) -> tuple[StepSpec, ...]:
    """Built-in step list for a mode, unless the config file overrides it."""
    if mode not in MODES:
        raise ConfigurationError(f"Unknown mode: {mode}")
    override = config.mode_steps(mode)
    if override is not None:
        return override

    def tool(name: str, *args: str, tail: tuple[str, ...] = ()) -> tuple[str, ...]:
        return (name, *args, *config.tool_args(name), *tail)

    format_check = (
        StepSpec("format-check", tool("black", "--check", tail=("{paths}",)), concurrent=True),
        StepSpec("import-order-check", tool("isort", "--check-only", tail=("{paths}",)), concurrent=True),
    )
    format_fix = (
        StepSpec("format", tool("black", tail=("{paths}",)), mutates=True),
        StepSpec("import-order", tool("isort", tail=("{paths}",)), mutates=True),
    )
    lint = (
        StepSpec("lint", tool("flake8", tail=("{paths}",)), concurrent=True),
        StepSpec("lint-ruff", tool("ruff", "check", tail=("{paths}",)),
                 required=False, concurrent=True, if_available=True),
    )
    type_check = (
        StepSpec("type-check", tool("mypy", tail=("{sources}",)), concurrent=True),
    )
    test = StepSpec("test", tool("pytest", tail=("{tests}", FILTER_PLACEHOLDER)))
    test_cov = StepSpec("test", tool(
        "pytest",
        tail=("{tests}", FILTER_PLACEHOLDER, "--cov={sources}", "--cov-report=term-missing"),
    ))
    security = (
        StepSpec("security-bandit", tool("bandit", "-r", tail=("{sources}",)),
                 concurrent=True, if_available=True),
        StepSpec("security-safety", tool("safety", "check"), concurrent=True, if_available=True),
    )

    if mode == "analyze-only":
        return format_check + lint + type_check + (test,)
    if mode == "full-cleanup":
        return format_fix + lint + type_check + (test,)
    if mode == "security":
        return security
    # ci and debug
    return format_check + lint + type_check + (test_cov,)


def build_steps(specs: tuple[StepSpec, ...], scope: Scope, test_filter: str | None = None,
                env: tuple[tuple[str, str], ...] = ()) -> list[Step]:
    steps = []
    for spec in specs:
        argv = expand_args(spec.run, scope, test_filter)
        if not argv:
            raise ConfigurationError(f"Step '{spec.name}' has an empty command")
        steps.append(Step(
            name=spec.name,
            command=Command(
                program=argv[0],
                args=tuple(argv[1:]),
                cwd=spec.cwd,
                env=tuple({**dict(env), **dict(spec.env)}.items()),
            ),
            required=spec.required,
            mutates=spec.mutates,
            concurrent=spec.concurrent,
            if_available=spec.if_available,
        ))
    return steps


def expand_args(args: tuple[str, ...], scope: Scope, test_filter: str | None = None) -> list[str]:
    """Expand scope placeholders.

    A bare ``{paths}`` becomes one argument per path; ``--cov={sources}``
    becomes one ``--cov=...`` per source. ``{filter}`` becomes ``-k PATTERN``
    or disappears.
    """
    result = []
    for arg in args:
        if arg == FILTER_PLACEHOLDER:
            if test_filter:
                result.extend(["-k", test_filter])
            continue
        placeholder = next((p for p in PLACEHOLDERS if p in arg), None)
        if placeholder is None:
            result.append(arg)
            continue
        for value in scope.expand(placeholder):
            result.append(arg.replace(placeholder, value))
    return result


def _step_specs(raw, where: str) -> tuple[StepSpec, ...]:
    if not isinstance(raw, list):
        raise ConfigurationError(f"{where} must be a list of steps")
    specs = []
    for i, step_raw in enumerate(raw):
        if not isinstance(step_raw, dict):
            raise ConfigurationError(f"{where}[{i}] must be a mapping")
        unknown = set(step_raw) - STEP_KEYS
        if unknown:
            raise ConfigurationError(f"{where}[{i}]: unknown keys {', '.join(sorted(map(str, unknown)))}")
        if "run" not in step_raw:
            raise ConfigurationError(f"{where}[{i}] has no 'run' command")
        run = _argv(step_raw["run"], f"{where}[{i}].run")
        specs.append(StepSpec(
            name=str(step_raw.get("name", " ".join(run))),
            run=run,
            required=bool(step_raw.get("required", True)),
            mutates=bool(step_raw.get("mutates", False)),
            concurrent=bool(step_raw.get("concurrent", False)),
            if_available=bool(step_raw.get("if_available", False)),
            cwd=str(step_raw["cwd"]) if step_raw.get("cwd") else None,
            env=tuple(_str_dict(_mapping(step_raw.get("env", {}), f"{where}[{i}].env")).items()),
        ))
    return tuple(specs)


def _argv(value, where: str, allow_empty: bool = False) -> tuple[str, ...]:
    if isinstance(value, str):
        argv = tuple(shlex.split(value))
    elif isinstance(value, list):
        argv = tuple(str(v) for v in value)
    elif value is None:
        argv = ()
    else:
        raise ConfigurationError(f"{where} must be a string or list")
    if not argv and not allow_empty:
        raise ConfigurationError(f"{where} is empty")
    return argv


def _mapping(value, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a mapping")
    return value


def _int(value, where: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigurationError(f"{where} must be an integer >= {minimum}")
    return value


def _float(value, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"{where} must be a non-negative number")
    return float(value)


def _str_dict(d: dict) -> dict:
    result = {}
    for k, v in d.items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        else:
            result[str(k)] = str(v)
    return result
