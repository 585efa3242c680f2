from __future__ import annotations

import itertools
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence

from speedrun.common.time_utils import format_duration

logger = logging.getLogger(__name__)

# Exit status a shell reports when the command itself cannot be started.
COMMAND_NOT_FOUND = 127


class JobMode(str, Enum):
    BLOCKING = "blocking"
    BACKGROUND = "background"


class ExternalJobError(RuntimeError):
    """An external job (or fetch) finished unsuccessfully."""

    def __init__(
        self,
        stage: str,
        exit_code: int | None,
        hint: str | None = None,
        *,
        job: str | None = None,
    ) -> None:
        self.stage = stage
        self.exit_code = exit_code
        self.hint = hint
        self.job = job
        where = f"{stage}/{job}" if job else stage
        if exit_code is None:
            msg = f"{where} failed"
        else:
            msg = f"{where} exited with status {exit_code}"
        if hint:
            msg = f"{msg}: {hint}"
        super().__init__(msg)


class InvalidHandleError(RuntimeError):
    pass


@dataclass(eq=False)
class BackgroundTask:
    """Handle for a job started with JobMode.BACKGROUND.

    Valid until passed to JobRunner.join exactly once.
    """

    stage: str
    argv: tuple[str, ...]
    pid: int
    process: subprocess.Popen | None = field(default=None, repr=False)
    # Set when the job could not be started; join reports it instead of waiting.
    spawn_returncode: int | None = None
    consumed: bool = False


class JobRunner:
    """Runs external jobs; subclasses decide how a process is created.

    This base class owns the logging and the background-handle bookkeeping
    so every runner enforces the same join-once contract.
    """

    def __init__(self) -> None:
        self._live: list[BackgroundTask] = []

    def run(
        self,
        stage: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        mode: JobMode = JobMode.BLOCKING,
    ) -> int | BackgroundTask:
        argv = (command, *args)
        if mode is JobMode.BACKGROUND:
            logger.info("[%s] & %s", stage, shlex.join(argv))
            task = self._spawn_background(stage, argv, env)
            self._live.append(task)
            return task

        logger.info("[%s] $ %s", stage, shlex.join(argv))
        started = time.monotonic()
        code = self._run_blocking(stage, argv, env)
        logger.info(
            "[%s] %s exited with status %d after %s",
            stage,
            argv[0],
            code,
            format_duration(time.monotonic() - started),
        )
        return code

    def join(self, task: BackgroundTask) -> int:
        if task.consumed:
            raise InvalidHandleError(f"Background task for {task.stage} (pid {task.pid}) was already joined")
        if not any(live is task for live in self._live):
            raise InvalidHandleError(f"Background task for {task.stage} was not issued by this runner")

        logger.info("[%s] waiting for background pid %d", task.stage, task.pid)
        started = time.monotonic()
        try:
            code = task.spawn_returncode if task.spawn_returncode is not None else self._wait_background(task)
        finally:
            task.consumed = True
            self._live = [live for live in self._live if live is not task]
        logger.info(
            "[%s] background pid %d exited with status %d after %s",
            task.stage,
            task.pid,
            code,
            format_duration(time.monotonic() - started),
        )
        return code

    def pending(self) -> list[BackgroundTask]:
        """Background tasks that were started but never joined."""
        return list(self._live)

    def _run_blocking(self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None) -> int:
        raise NotImplementedError

    def _spawn_background(
        self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None
    ) -> BackgroundTask:
        raise NotImplementedError

    def _wait_background(self, task: BackgroundTask) -> int:
        raise NotImplementedError


class SubprocessJobRunner(JobRunner):
    """Spawn real OS processes with stdout/stderr passed straight through."""

    def __init__(self, base_env: Mapping[str, str] | None = None, cwd: Path | None = None) -> None:
        super().__init__()
        self.base_env = dict(base_env or {})
        self.cwd = cwd

    def _child_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.base_env)
        if env:
            merged.update(env)
        return merged

    def _popen(self, argv: tuple[str, ...], env: Mapping[str, str] | None) -> subprocess.Popen:
        return subprocess.Popen(list(argv), env=self._child_env(env), cwd=self.cwd)

    def _run_blocking(self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None) -> int:
        try:
            proc = self._popen(argv, env)
        except OSError as exc:
            logger.error("[%s] could not start %s: %s", stage, argv[0], exc)
            return COMMAND_NOT_FOUND
        return _wait(proc)

    def _spawn_background(
        self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None
    ) -> BackgroundTask:
        try:
            proc = self._popen(argv, env)
        except OSError as exc:
            logger.error("[%s] could not start %s: %s", stage, argv[0], exc)
            return BackgroundTask(stage=stage, argv=argv, pid=-1, spawn_returncode=COMMAND_NOT_FOUND)
        logger.info("[%s] background pid %d", stage, proc.pid)
        return BackgroundTask(stage=stage, argv=argv, pid=proc.pid, process=proc)

    def _wait_background(self, task: BackgroundTask) -> int:
        if task.process is None:
            raise InvalidHandleError(f"Background task for {task.stage} has no process")
        return _wait(task.process)


def _wait(proc: subprocess.Popen) -> int:
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait()
        raise


class DryRunJobRunner(JobRunner):
    """Log every command without executing anything; all jobs succeed."""

    def __init__(self) -> None:
        super().__init__()
        self._pids = itertools.count(1)
        self.commands: list[tuple[str, tuple[str, ...], JobMode]] = []

    def _run_blocking(self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None) -> int:
        self.commands.append((stage, argv, JobMode.BLOCKING))
        return 0

    def _spawn_background(
        self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None
    ) -> BackgroundTask:
        self.commands.append((stage, argv, JobMode.BACKGROUND))
        return BackgroundTask(stage=stage, argv=argv, pid=next(self._pids))

    def _wait_background(self, task: BackgroundTask) -> int:
        return 0
