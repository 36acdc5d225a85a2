import argparse
import dataclasses
import json
import logging
import os
import sys

import yaml
from docker.errors import DockerException

from qualitygate import __version__
from qualitygate.baseline import compare, load_baseline, save_baseline
from qualitygate.classify import PatternClassifier
from qualitygate.config import (
    MODES,
    RUN_MODES,
    GateConfig,
    Scope,
    build_steps,
    find_config,
    load_config,
    preset_specs,
    resolve_scope,
)
from qualitygate.engine import Pipeline, validate_steps
from qualitygate.exceptions import ConfigurationError
from qualitygate.logging_config import configure_logging
from qualitygate.models import PipelineRun, RunMode, Step, StepResult
from qualitygate.report import GLYPHS, render_text, report_to_dict, summarize
from qualitygate.runners import DockerRunner, LocalRunner, Runner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CHECK_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INVOCATION_ERROR = 3
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> None:
    try:
        code = _run(argv)
    except KeyboardInterrupt:
        print()
        code = EXIT_INTERRUPTED
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = EXIT_CONFIG_ERROR
    except yaml.YAMLError as e:
        print("Error: Invalid YAML syntax in config file", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        code = EXIT_CONFIG_ERROR
    except DockerException as e:
        print(f"Error: Docker failed: {e}", file=sys.stderr)
        code = EXIT_INVOCATION_ERROR
    sys.exit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qualitygate",
        description="Run formatters, linters, type checkers and tests as one fail-fast gate.",
    )
    parser.add_argument(
        "scope",
        nargs="?",
        default="all",
        help="Path to check, or 'all' for the source and test directories (default: all)",
    )
    parser.add_argument("--mode", choices=MODES, default="ci", help="Which checks to run (default: ci)")
    parser.add_argument("--config", help="Config file (default: qualitygate.yml in the workdir, if present)")
    parser.add_argument("--workdir", default=".", help="Project directory (default: .)")
    failure = parser.add_mutually_exclusive_group()
    failure.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Run every step even after a required step fails",
    )
    failure.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop at the first required failure (default except for analyze-only and security)",
    )
    parser.add_argument("-k", "--filter", dest="test_filter", help="Only run tests matching this expression")
    parser.add_argument("--excerpt-lines", type=int, help="Output lines shown per failed step")
    parser.add_argument("--workers", type=int, help="Run concurrent-safe steps on this many workers")
    parser.add_argument("--docker-image", help="Run steps inside a container from this image")
    parser.add_argument("--stream", action="store_true", help="Echo tool output while steps run")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--no-setup", action="store_true", help="Skip the setup steps from the config file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set logging level (overrides LOG_LEVEL env var)",
    )
    parser.add_argument("--version", "-V", action="version", version=f"qualitygate {__version__}")
    return parser


def _run(argv: list[str] | None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level_override=args.log_level)

    workdir = os.path.abspath(args.workdir)
    if not os.path.isdir(workdir):
        raise ConfigurationError(f"Not a directory: {args.workdir}")

    config_path = args.config or find_config(workdir)
    if args.config and not os.path.isfile(args.config):
        raise ConfigurationError(f"Config file not found: {args.config}")
    config = apply_overrides(load_config(config_path), args)

    scope = resolve_scope(args.scope, config, workdir)
    steps = build_steps(preset_specs(args.mode, config), scope, args.test_filter, config.env)
    mode = RUN_MODES[args.mode]
    if args.continue_on_failure:
        mode = RunMode.CONTINUE_ON_FAILURE
    elif args.fail_fast:
        mode = RunMode.FAIL_FAST

    classifier = PatternClassifier(list(config.classifiers)) if config.classifiers else None
    setup_steps = [] if args.no_setup else build_steps(config.setup, scope, env=config.env)

    validate_steps(steps)
    if setup_steps:
        validate_steps(setup_steps)
    baseline_path = _baseline_path(config, workdir)
    baseline = load_baseline(baseline_path)

    runner = make_runner(config, workdir)
    pipeline = Pipeline(steps, runner=runner, workers=config.workers)
    setup = Pipeline(setup_steps, runner=runner) if setup_steps else None

    logger.info("Mode %s (%s), %d steps, scope %s", args.mode, mode.value, len(steps), ", ".join(scope.paths))

    try:
        runner.setup()
        if setup is not None:
            setup_run = setup.execute(RunMode.FAIL_FAST, workdir, **_callbacks(args))
            if not setup_run.succeeded:
                print("Setup failed; quality gate not started.", file=sys.stderr)
                _print_report(setup_run, config, classifier, args)
                if setup_run.cancelled:
                    return EXIT_INTERRUPTED
                return EXIT_INVOCATION_ERROR

        if args.mode == "debug":
            run = _run_interactive(pipeline, workdir, scope, mode)
        else:
            run = pipeline.execute(mode, workdir, **_callbacks(args))
    finally:
        runner.cleanup()

    report = summarize(run, excerpt_lines=config.excerpt_lines, classifier=classifier)
    check = compare(baseline, report.coverage, config.coverage.tolerance)
    code = exit_code(run, regressed=check.regressed and config.coverage.fail_on_decrease)

    if args.json:
        payload = report_to_dict(report)
        payload["coverage_baseline"] = check.baseline
        payload["coverage_regressed"] = check.regressed
        payload["exit_code"] = code
        print(json.dumps(payload, indent=2))
    else:
        print(render_text(report))
        if report.coverage is not None:
            print(check.describe())

    if run.succeeded and report.coverage is not None and not check.regressed:
        save_baseline(baseline_path, report.coverage)
    return code


def apply_overrides(config: GateConfig, args: argparse.Namespace) -> GateConfig:
    changes = {}
    if args.excerpt_lines is not None:
        if args.excerpt_lines < 0:
            raise ConfigurationError("--excerpt-lines must not be negative")
        changes["excerpt_lines"] = args.excerpt_lines
    if args.workers is not None:
        if args.workers < 1:
            raise ConfigurationError("--workers must be at least 1")
        changes["workers"] = args.workers
    if args.docker_image:
        changes["runner"] = "docker"
        changes["image"] = args.docker_image
    return dataclasses.replace(config, **changes) if changes else config


def make_runner(config: GateConfig, workdir: str) -> Runner:
    if config.runner == "docker":
        return DockerRunner(image=config.image, workdir=workdir, env=dict(config.env))
    return LocalRunner()


def exit_code(run: PipelineRun, regressed: bool = False) -> int:
    if run.cancelled:
        return EXIT_INTERRUPTED
    if not run.succeeded:
        for result in run.results:
            if result.required and result.is_invocation_error:
                return EXIT_INVOCATION_ERROR
        return EXIT_CHECK_FAILED
    if regressed:
        return EXIT_CHECK_FAILED
    return EXIT_OK


def _callbacks(args: argparse.Namespace) -> dict:
    if not args.stream or args.json:
        return {}

    def on_line(step: Step, line: str) -> None:
        print(f"[{step.name}] {line}", flush=True)

    def on_result(result: StepResult) -> None:
        print(f"{GLYPHS[result.status]} {result.step_name}", flush=True)

    return {"on_line": on_line, "on_result": on_result}


def _run_interactive(pipeline: Pipeline, workdir: str, scope: Scope,
                     mode: RunMode = RunMode.FAIL_FAST) -> PipelineRun:
    from qualitygate.tui import GateApp

    app = GateApp(pipeline=pipeline, workdir=workdir, title=", ".join(scope.paths), mode=mode)
    run = app.run()
    if run is None:
        run = app.pipeline_run()
    return run


def _print_report(run: PipelineRun, config: GateConfig, classifier, args: argparse.Namespace) -> None:
    report = summarize(run, excerpt_lines=config.excerpt_lines, classifier=classifier)
    if args.json:
        print(json.dumps(report_to_dict(report), indent=2))
    else:
        print(render_text(report))


def _baseline_path(config: GateConfig, workdir: str) -> str:
    path = config.coverage.baseline_path
    return path if os.path.isabs(path) else os.path.join(workdir, path)


if __name__ == "__main__":
    main()
