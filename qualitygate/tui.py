from datetime import datetime, timezone

from textual import work
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, ListItem, ListView, RichLog, Static

from qualitygate.engine import Pipeline, run_step
from qualitygate.models import CANCELLED, PipelineRun, RunMode, Step, StepResult, StepStatus
from qualitygate.report import GLYPHS

PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"


class StepListItem(ListItem):
    """A single step in the step list sidebar."""

    def __init__(self, step: Step, index: int) -> None:
        super().__init__()
        self.step = step
        self.step_index = index
        self.state = PENDING
        self.breakpoint = False

    def compose(self) -> ComposeResult:
        yield Label(self._render_label())

    def _render_label(self) -> str:
        icon = self._status_icon()
        bp = " [magenta][B][/magenta]" if self.breakpoint else ""
        tag = "" if self.step.required else " [dim](optional)[/dim]"
        return f"{icon} {self.step_index + 1}. {self.step.name}{tag}{bp}"

    def _status_icon(self) -> str:
        icons = {
            PENDING: "  ",
            RUNNING: "[yellow]~[/yellow]",
            PAUSED: "[cyan]●[/cyan]",
            StepStatus.SUCCEEDED: f"[green]{GLYPHS[StepStatus.SUCCEEDED]}[/green]",
            StepStatus.FAILED: f"[red]{GLYPHS[StepStatus.FAILED]}[/red]",
            StepStatus.SKIPPED: f"[dim]{GLYPHS[StepStatus.SKIPPED]}[/dim]",
        }
        return icons.get(self.state, " ")

    def refresh_label(self) -> None:
        self.query_one(Label).update(self._render_label())


class StepDetailPanel(Static):
    """Shows details about the currently selected step."""

    def update_step(self, item: StepListItem, workdir: str) -> None:
        step = item.step
        env_str = ", ".join(f"{k}={v}" for k, v in step.command.env[:5])
        if len(step.command.env) > 5:
            env_str += f", ... (+{len(step.command.env) - 5} more)"
        flags = [
            "required" if step.required else "optional",
            "rewrites files" if step.mutates else "read-only",
        ]
        if step.if_available:
            flags.append("skipped when not installed")
        state = item.state.value if isinstance(item.state, StepStatus) else item.state

        text = (
            f"[bold]{step.name}[/bold]\n"
            f"Command: {step.command.display()}\n"
            f"Env: {env_str or '-'}\n"
            f"Working dir: {step.command.cwd or workdir}\n"
            f"Flags: {', '.join(flags)}\n"
            f"Status: {state}"
        )
        self.update(text)


class GateApp(App):
    """Interactive quality gate: run checks one at a time and inspect their output."""

    CSS = """
    #step-list {
        width: 44;
        border: solid $primary;
        padding: 0 1;
    }
    #right-pane {
        width: 1fr;
    }
    #step-detail {
        height: 10;
        border: solid $accent;
        padding: 1;
    }
    #output-log {
        height: 1fr;
        border: solid $success;
    }
    #help-bar {
        height: 3;
        padding: 0 1;
        background: $surface;
        color: $text-muted;
    }
    """

    BINDINGS = [
        ("r", "run_step", "Run"),
        ("s", "skip_step", "Skip"),
        ("b", "toggle_breakpoint", "Breakpoint"),
        ("n", "run_to_breakpoint", "Next BP"),
        ("c", "run_all", "Continue"),
        ("q", "quit_app", "Quit"),
    ]

    current_step_index = reactive(0)
    running = reactive(False)

    def __init__(self, pipeline: Pipeline, workdir: str = ".", title: str = "debug",
                 mode: RunMode = RunMode.FAIL_FAST):
        super().__init__()
        self.pipeline = pipeline
        self.steps = list(pipeline.steps)
        self.workdir = workdir
        self.mode = mode
        self.title = f"qualitygate: {title}"
        self.results: dict[int, StepResult] = {}
        self.started_at = datetime.now(timezone.utc)
        self._auto_running = False
        self._stop_at_breakpoints = True
        self._interrupted = False

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield ListView(
                *[StepListItem(step, i) for i, step in enumerate(self.steps)],
                id="step-list",
            )
            with Vertical(id="right-pane"):
                yield StepDetailPanel(id="step-detail")
                yield RichLog(highlight=True, markup=False, auto_scroll=True, id="output-log")
                yield Static(
                    "[R]un  [S]kip  [B]reakpoint  [N]ext BP  [C]ontinue  [Q]uit",
                    id="help-bar",
                )
        yield Footer()

    def on_mount(self) -> None:
        self._log(f"Working directory: {self.workdir}")
        self._log(f"Steps: {len(self.steps)}")
        self._log("")
        self._setup_runner()

    @work(thread=True)
    def _setup_runner(self) -> None:
        try:
            self.pipeline.runner.setup()
            self.call_from_thread(self._log, "Runner ready.\n")
            self.call_from_thread(self._pause_at, 0)
        except Exception as e:
            self.call_from_thread(self._log, f"Setup failed: {e}")

    # --- State helpers ---

    def _items(self) -> list[StepListItem]:
        try:
            return list(self.query_one("#step-list", ListView).children)
        except Exception:
            return []

    def _item(self, index: int) -> StepListItem | None:
        items = self._items()
        if 0 <= index < len(items):
            return items[index]
        return None

    def _set_state(self, index: int, state) -> None:
        item = self._item(index)
        if item is not None:
            item.state = state
            item.refresh_label()

    def _current_step(self) -> Step | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def _halting_failure(self, index: int | None = None) -> StepResult | None:
        """In fail-fast mode, the required failure that blocks running step `index`.

        The failed step itself may still be retried.
        """
        if self.mode != RunMode.FAIL_FAST:
            return None
        for i, result in sorted(self.results.items()):
            if i != index and result.required and result.status == StepStatus.FAILED:
                return result
        return None

    def watch_current_step_index(self, index: int) -> None:
        self._update_detail_panel()

    def _update_detail_panel(self) -> None:
        item = self._item(self.current_step_index)
        if item is not None:
            try:
                self.query_one(StepDetailPanel).update_step(item, self.workdir)
            except Exception:
                pass

    def _log(self, message: str) -> None:
        try:
            self.query_one("#output-log", RichLog).write(message)
        except Exception:
            pass

    def _select_step(self, index: int) -> None:
        try:
            self.query_one("#step-list", ListView).index = index
        except Exception:
            pass

    def on_list_view_highlighted(self, event: ListView.Highlighted) -> None:
        if event.item and isinstance(event.item, StepListItem):
            self.query_one(StepDetailPanel).update_step(event.item, self.workdir)

    def _pause_at(self, index: int) -> None:
        if index >= len(self.steps):
            self.current_step_index = len(self.steps)
            self._auto_running = False
            run = self.pipeline_run()
            verdict = "PASSED" if run.succeeded else "FAILED"
            self._log(f"\n━━━ All steps done: {verdict} ━━━")
            self._log("Press Q to quit and print the report.")
            return
        self.current_step_index = index
        self._set_state(index, PAUSED)
        self._select_step(index)
        self._update_detail_panel()
        if not self._auto_running:
            self._log(f"● Paused at: {self.steps[index].name}")

    # --- Actions ---

    def action_run_step(self) -> None:
        if self.running:
            return
        step = self._current_step()
        if step is None:
            return
        blocker = self._halting_failure(self.current_step_index)
        if blocker is not None:
            self._auto_running = False
            self._log(f"  Fail-fast: '{blocker.step_name}' failed; later steps won't run. [S]kip or [Q]uit")
            return
        self.running = True
        self._set_state(self.current_step_index, RUNNING)
        self._update_detail_panel()
        self._log(f"\n> Running: {step.name}  ({step.command.display()})")
        self._execute_step(step, self.current_step_index)

    @work(thread=True)
    def _execute_step(self, step: Step, index: int) -> None:
        try:
            result = run_step(
                step,
                self.workdir,
                runner=self.pipeline.runner,
                on_line=lambda line: self.call_from_thread(self._log, f"  {line}"),
            )
        except Exception as e:
            result = StepResult(
                step_name=step.name,
                status=StepStatus.FAILED,
                output=(str(e),),
                error_summary=str(e),
                required=step.required,
            )
        self.call_from_thread(self._on_step_complete, index, result)

    def _on_step_complete(self, index: int, result: StepResult) -> None:
        self.results[index] = result
        self._set_state(index, result.status)
        self.running = False

        if result.status == StepStatus.SUCCEEDED:
            self._log(f"  ✓ Step passed in {result.duration:.2f}s")
        elif result.status == StepStatus.SKIPPED:
            self._log(f"  ⊘ Skipped: {result.error_summary}")
        else:
            self._log(f"  ✗ Step failed: {result.error_summary}")
            self._log("  [R]etry  [S]kip  [Q]uit")
            self._auto_running = False
            self._update_detail_panel()
            return

        self._pause_at(index + 1)
        next_step = self._current_step()
        if next_step is None or not self._auto_running:
            return
        next_item = self._item(self.current_step_index)
        if self._stop_at_breakpoints and next_item is not None and next_item.breakpoint:
            self._auto_running = False
            self._log(f"\n● Breakpoint hit: {next_step.name}")
        else:
            self.action_run_step()

    def action_skip_step(self) -> None:
        if self.running:
            return
        step = self._current_step()
        if step is None:
            return
        index = self.current_step_index
        previous = self.results.get(index)
        if previous is not None and previous.status == StepStatus.FAILED:
            self._log(f"  Moving on; {step.name} stays failed")
        else:
            self.results[index] = StepResult(
                step_name=step.name, status=StepStatus.SKIPPED, required=step.required
            )
            self._set_state(index, StepStatus.SKIPPED)
            self._log(f"  ⊘ Skipped: {step.name}")
        self._pause_at(index + 1)

    def action_toggle_breakpoint(self) -> None:
        list_view = self.query_one("#step-list", ListView)
        item = self._item(list_view.index) if list_view.index is not None else None
        if item is None:
            return
        item.breakpoint = not item.breakpoint
        tag = "set" if item.breakpoint else "removed"
        self._log(f"  Breakpoint {tag}: {item.step.name}")
        item.refresh_label()

    def action_run_to_breakpoint(self) -> None:
        self._start_auto(stop_at_breakpoints=True)

    def action_run_all(self) -> None:
        self._start_auto(stop_at_breakpoints=False)

    def _start_auto(self, stop_at_breakpoints: bool) -> None:
        if self.running or self._current_step() is None:
            return
        self._auto_running = True
        self._stop_at_breakpoints = stop_at_breakpoints
        self.action_run_step()

    def action_quit_app(self) -> None:
        if self.running:
            self._interrupted = True
            self._log("\nCancelling running step...")
            self.pipeline.runner.terminate()
        self._log("Cleaning up...")
        self.pipeline.runner.cleanup()
        self.exit(self.pipeline_run())

    def pipeline_run(self) -> PipelineRun:
        """The session so far as a run; steps never executed count as skipped.

        Leaving with steps still pending abandons the gate, so the run is
        marked cancelled unless a fail-fast failure had already stopped it.
        """
        pending = any(i not in self.results for i in range(len(self.steps)))
        abandoned = pending and self._halting_failure() is None
        run = PipelineRun(
            mode=self.mode,
            started_at=self.started_at,
            cancelled=self._interrupted or abandoned,
        )
        for i, step in enumerate(self.steps):
            result = self.results.get(i)
            if result is None and self._interrupted and i == self.current_step_index:
                result = StepResult(
                    step_name=step.name,
                    status=StepStatus.FAILED,
                    error_summary=CANCELLED,
                    required=step.required,
                )
            if result is None:
                result = StepResult(step_name=step.name, status=StepStatus.SKIPPED, required=step.required)
            run.results.append(result)
        run.finished_at = datetime.now(timezone.utc)
        return run
