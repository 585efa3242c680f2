from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from speedrun.adapters.http.fetch import download_file
from speedrun.adapters.process.jobs import ExternalJobError, JobRunner
from speedrun.common.time_utils import format_duration
from speedrun.pipeline import commands
from speedrun.pipeline.config import RunConfig
from speedrun.pipeline.resume import ResumePlan, plan_resume
from speedrun.pipeline.stages import (
    PIPELINE,
    FailurePolicy,
    Fetcher,
    Region,
    Stage,
    StageContext,
    StageSkipped,
)

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED_SOFT = "failed-soft"
    FAILED_FATAL = "failed-fatal"


class ControlState(str, Enum):
    NORMAL = "normal"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class StageRecord:
    name: str
    outcome: StageOutcome
    detail: str | None = None
    exit_code: int | None = None
    duration_s: float = 0.0


@dataclass
class RunResult:
    """Per-stage outcomes and produced files of one run."""

    records: list[StageRecord] = field(default_factory=list)
    artifacts: dict[str, Path] = field(default_factory=dict)

    def add(self, record: StageRecord) -> StageRecord:
        self.records.append(record)
        return record

    def outcome(self, stage: str) -> StageOutcome | None:
        for record in self.records:
            if record.name == stage:
                return record.outcome
        return None

    @property
    def fatal(self) -> StageRecord | None:
        for record in self.records:
            if record.outcome is StageOutcome.FAILED_FATAL:
                return record
        return None

    @property
    def succeeded(self) -> bool:
        return self.fatal is None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


@dataclass
class PipelineRunner:
    """Drive the speedrun stages in order under the fault policy.

    NORMAL stages run until the first fatal failure; the remaining NORMAL
    stages are then recorded as skipped. FINALIZING stages (report
    generation and copy) always run afterwards, and any failure in them is
    logged as soft.
    """

    config: RunConfig
    runner: JobRunner
    stages: Sequence[Stage] = PIPELINE
    output_dir: Path = field(default_factory=Path.cwd)
    fetch: Fetcher = download_file
    sleep: Callable[[float], None] = time.sleep
    now: Callable[[], datetime] = datetime.now

    def run(self) -> RunResult:
        plan = plan_resume(self.config)
        logger.info("Starting speedrun %s (%s)", self.config.wandb_run, plan.describe())
        for warning in plan.preflight_warnings(self.config):
            logger.warning(warning)

        ctx = StageContext(
            config=self.config,
            plan=plan,
            runner=self.runner,
            output_dir=self.output_dir,
            fetch=self.fetch,
            sleep=self.sleep,
            now=self.now,
        )
        result = RunResult()
        state = ControlState.NORMAL
        aborted_by: str | None = None
        crash: Exception | None = None

        for stage in self.stages:
            if stage.region is Region.FINALIZING:
                if state is ControlState.NORMAL:
                    state = ControlState.FINALIZING
                    logger.info("Entering finalizing stages")
                result.add(self._run_finalizing(stage, ctx))
                continue

            if aborted_by is not None:
                result.add(StageRecord(stage.name, StageOutcome.SKIPPED, detail=f"aborted after {aborted_by}"))
                continue

            try:
                record = result.add(self._run_stage(stage, ctx))
            except Exception as exc:
                logger.exception("Stage %s crashed", stage.name)
                record = result.add(StageRecord(stage.name, StageOutcome.FAILED_FATAL, detail=repr(exc)))
                crash = exc
            if record.outcome is StageOutcome.FAILED_FATAL:
                aborted_by = stage.name

        result.artifacts.update(ctx.artifacts)
        self._warn_unjoined()
        self._log_summary(result)
        if crash is not None:
            raise crash
        return result

    def serve(self) -> int:
        """Start the chat web UI; its exit status is reported, not judged."""
        job = commands.chat_web(self.config)
        try:
            code = self.runner.run("chat-web", job.command, job.args)
        except KeyboardInterrupt:
            logger.info("chat_web stopped")
            return 130
        if code != 0:
            logger.warning("chat_web exited with status %s", code)
        return int(code)

    def _skip_record(self, stage: Stage, plan: ResumePlan) -> StageRecord:
        reason = plan.skip_reason(stage.name) or "disabled"
        logger.info("Skipping %s (%s)", stage.name, reason)
        return StageRecord(stage.name, StageOutcome.SKIPPED, detail=reason)

    def _run_stage(self, stage: Stage, ctx: StageContext) -> StageRecord:
        if not stage.is_active(ctx.config, ctx.plan):
            return self._skip_record(stage, ctx.plan)

        logger.info(">>> [%s] %s ...", stage.name, stage.title)
        started = time.monotonic()
        try:
            stage.action(ctx, stage)
        except StageSkipped as exc:
            logger.warning("%s: %s; skipped.", stage.name, exc)
            return StageRecord(stage.name, StageOutcome.SKIPPED, detail=str(exc))
        except ExternalJobError as exc:
            elapsed = time.monotonic() - started
            if stage.failure is FailurePolicy.SOFT:
                logger.warning("WARNING: %s. Continuing.", exc)
                return StageRecord(stage.name, StageOutcome.FAILED_SOFT, str(exc), exc.exit_code, elapsed)
            logger.error("%s. Aborting remaining stages.", exc)
            return StageRecord(stage.name, StageOutcome.FAILED_FATAL, str(exc), exc.exit_code, elapsed)

        elapsed = time.monotonic() - started
        logger.info("<<< [%s] done in %s", stage.name, format_duration(elapsed))
        return StageRecord(stage.name, StageOutcome.SUCCEEDED, duration_s=elapsed)

    def _run_finalizing(self, stage: Stage, ctx: StageContext) -> StageRecord:
        try:
            record = self._run_stage(stage, ctx)
        except Exception as exc:
            logger.warning("%s failed: %s. Continuing.", stage.name, exc, exc_info=True)
            return StageRecord(stage.name, StageOutcome.FAILED_SOFT, detail=repr(exc))
        if record.outcome is StageOutcome.FAILED_FATAL:
            logger.warning("%s failed in finalizing stages; treated as soft.", stage.name)
            return StageRecord(
                record.name, StageOutcome.FAILED_SOFT, record.detail, record.exit_code, record.duration_s
            )
        return record

    def _warn_unjoined(self) -> None:
        for task in self.runner.pending():
            logger.warning(
                "Background job for %s (pid %d) was never joined and may still be running",
                task.stage,
                task.pid,
            )

    def _log_summary(self, result: RunResult) -> None:
        for record in result.records:
            logger.info("  %-16s %s", record.name, record.outcome.value)
        for name, path in result.artifacts.items():
            logger.info("  %s -> %s", name, path)
        fatal = result.fatal
        if fatal is not None:
            logger.error("Speedrun failed at %s", fatal.name)
        else:
            logger.info("Speedrun complete")
