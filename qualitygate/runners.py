import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from qualitygate.exceptions import ConfigurationError, InvocationError
from qualitygate.models import Command

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

CONTAINER_WORKSPACE = "/workspace"


@dataclass
class Execution:
    exit_code: int
    lines: list[str]


class Runner:
    """Runs a single command and captures its combined output."""

    def setup(self) -> None:
        pass

    def run(self, command: Command, working_directory: str,
            on_line: LineCallback | None = None) -> Execution:
        raise NotImplementedError

    def terminate(self) -> None:
        pass

    def cleanup(self) -> None:
        pass


class LocalRunner(Runner):
    """Runs commands as subprocesses of this process."""

    def __init__(self, kill_timeout: float = 5.0):
        self.kill_timeout = kill_timeout
        self._active: set[subprocess.Popen] = set()
        self._lock = threading.Lock()

    def run(self, command: Command, working_directory: str,
            on_line: LineCallback | None = None) -> Execution:
        cwd = working_directory
        if command.cwd:
            cwd = os.path.join(working_directory, command.cwd)
        if not os.path.isdir(cwd):
            raise InvocationError(command.program, f"working directory not found: {cwd}")

        env = {**os.environ, **dict(command.env)}
        try:
            proc = subprocess.Popen(
                command.argv,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError:
            raise InvocationError(command.program, "command not found", missing=True)
        except OSError as e:
            raise InvocationError(command.program, str(e))

        with self._lock:
            self._active.add(proc)
        lines = []
        try:
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                lines.append(line)
                if on_line is not None:
                    on_line(line)
            exit_code = proc.wait()
        except BaseException:
            self._kill(proc)
            raise
        finally:
            proc.stdout.close()
            with self._lock:
                self._active.discard(proc)
        return Execution(exit_code=exit_code, lines=lines)

    def terminate(self) -> None:
        with self._lock:
            procs = list(self._active)
        for proc in procs:
            self._kill(proc)

    def _kill(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.debug("Terminating pid %d", proc.pid)
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
            proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
            proc.wait()
        except ProcessLookupError:
            pass


class DockerRunner(Runner):
    """Runs every step inside one long-lived container with the project mounted."""

    def __init__(self, image: str, workdir: str, env: dict | None = None):
        self.image = image
        self.workdir = os.path.abspath(workdir)
        self.env = env or {}
        try:
            self.client = docker.from_env()
            self.client.ping()
        except DockerException:
            raise ConfigurationError("Can't connect to Docker. Is the Docker daemon running?")
        self.container = None
        self._container_name = f"qualitygate-{os.getpid()}"

    @property
    def container_id(self) -> str:
        if self.container is None:
            return ""
        return self.container.id

    def setup(self) -> None:
        try:
            self.client.images.get(self.image)
        except ImageNotFound:
            logger.info("Pulling image %s", self.image)
            self.client.images.pull(self.image)

        # Remove stale container with same name
        try:
            old = self.client.containers.get(self._container_name)
            old.remove(force=True)
        except NotFound:
            pass

        self.container = self.client.containers.run(
            image=self.image,
            command="sleep infinity",
            volumes={
                self.workdir: {"bind": CONTAINER_WORKSPACE, "mode": "rw"},
            },
            working_dir=CONTAINER_WORKSPACE,
            environment={"CI": "true", **self.env},
            name=self._container_name,
            detach=True,
        )
        logger.info("Started container %s from %s", self.container.short_id, self.image)

    def container_path(self, working_directory: str, cwd: str | None = None) -> str:
        rel = os.path.relpath(os.path.abspath(working_directory), self.workdir)
        if rel.startswith(".."):
            raise InvocationError("docker", f"{working_directory} is outside the mounted workdir")
        path = CONTAINER_WORKSPACE if rel == "." else f"{CONTAINER_WORKSPACE}/{rel}"
        if cwd:
            path = cwd if cwd.startswith("/") else f"{path}/{cwd}"
        return path

    def run(self, command: Command, working_directory: str,
            on_line: LineCallback | None = None) -> Execution:
        container = self.container
        if container is None:
            raise RuntimeError("Runner not set up. Call setup() first.")

        workdir = self.container_path(working_directory, command.cwd)
        try:
            exit_code, lines = self._exec(container.id, command, workdir, on_line)
        except DockerException as e:
            # Also raised when terminate() removes the container mid-step.
            raise InvocationError(command.program, f"Docker failed: {e}")

        if exit_code is None:
            exit_code = 1
        # The container runtime reports exec failures through these codes
        if exit_code == 127 and _looks_like_exec_failure(lines):
            raise InvocationError(command.program, "command not found", missing=True)
        if exit_code == 126 and _looks_like_exec_failure(lines):
            raise InvocationError(command.program, "\n".join(lines) or "cannot execute")
        return Execution(exit_code=exit_code, lines=lines)

    def _exec(self, container_id: str, command: Command, workdir: str,
              on_line: LineCallback | None) -> tuple[int | None, list[str]]:
        api = self.client.api
        exec_id = api.exec_create(
            container_id,
            command.argv,
            environment={**self.env, **dict(command.env)},
            workdir=workdir,
        )["Id"]

        lines = []
        pending = ""
        for chunk in api.exec_start(exec_id, stream=True):
            pending += chunk.decode("utf-8", errors="replace")
            *complete, pending = pending.split("\n")
            for line in complete:
                line = line.rstrip("\r")
                lines.append(line)
                if on_line is not None:
                    on_line(line)
        if pending:
            lines.append(pending)
            if on_line is not None:
                on_line(pending)

        return api.exec_inspect(exec_id)["ExitCode"], lines

    def terminate(self) -> None:
        # Exec'd processes die with the container.
        self.cleanup()

    def cleanup(self) -> None:
        if self.container is not None:
            try:
                self.container.stop(timeout=3)
            except DockerException:
                logger.debug("Container stop failed", exc_info=True)
            try:
                self.container.remove(force=True)
            except DockerException:
                logger.debug("Container remove failed", exc_info=True)
            self.container = None


def _looks_like_exec_failure(lines: list[str]) -> bool:
    text = "\n".join(lines).lower()
    return not lines or "exec failed" in text or "executable file not found" in text
