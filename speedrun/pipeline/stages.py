from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Final, Sequence

from speedrun.adapters.http.fetch import download_file
from speedrun.adapters.process.jobs import BackgroundTask, ExternalJobError, JobMode, JobRunner
from speedrun.pipeline import commands
from speedrun.pipeline.commands import JobInvocation
from speedrun.pipeline.config import RunConfig
from speedrun.pipeline.report import finalize_report, report_output_name
from speedrun.pipeline.resume import (
    BULK_DOWNLOAD,
    JOIN_DOWNLOAD,
    REPORT_RESET,
    SEED_DOWNLOAD,
    TOKENIZER,
    ResumePlan,
)

logger = logging.getLogger(__name__)

IDENTITY_FETCH: Final[str] = "identity-fetch"
BASE_TRAIN: Final[str] = "base-train"
BASE_EVAL: Final[str] = "base-eval"
MIDTRAIN: Final[str] = "midtrain"
SFT: Final[str] = "sft"
RL: Final[str] = "rl"
REPORT: Final[str] = "report"
FINALIZE_REPORT: Final[str] = "finalize-report"

# Give the trainer's processes time to release accelerator memory before evals start.
POST_PRETRAIN_SETTLE_SECONDS: Final[float] = 10.0


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    SOFT = "soft"


class Region(str, Enum):
    NORMAL = "normal"
    FINALIZING = "finalizing"


class StageSkipped(Exception):
    """Raised by a stage action that found nothing to do at run time."""


Fetcher = Callable[..., Path]


@dataclass
class StageContext:
    config: RunConfig
    plan: ResumePlan
    runner: JobRunner
    output_dir: Path = field(default_factory=Path.cwd)
    fetch: Fetcher = download_file
    sleep: Callable[[float], None] = time.sleep
    now: Callable[[], datetime] = datetime.now
    background: dict[str, BackgroundTask] = field(default_factory=dict)
    artifacts: dict[str, Path] = field(default_factory=dict)


Predicate = Callable[[RunConfig, ResumePlan], bool]
Action = Callable[[StageContext, "Stage"], None]


@dataclass(frozen=True)
class Stage:
    name: str
    title: str
    failure: FailurePolicy
    when: Predicate
    action: Action
    region: Region = Region.NORMAL
    hint: str | None = None

    def is_active(self, config: RunConfig, plan: ResumePlan) -> bool:
        return self.when(config, plan)


def run_jobs(
    ctx: StageContext,
    stage: Stage,
    jobs: Sequence[JobInvocation],
) -> None:
    """Run jobs one after another; the first non-zero exit ends the stage."""
    for job in jobs:
        code = ctx.runner.run(stage.name, job.command, job.args)
        if code != 0:
            raise ExternalJobError(stage.name, int(code), stage.hint, job=job.label)


def _jobs(*builders: Callable[[RunConfig], JobInvocation]) -> Action:
    def action(ctx: StageContext, stage: Stage) -> None:
        run_jobs(ctx, stage, [build(ctx.config) for build in builders])

    return action


# --- predicates --------------------------------------------------------------


def data_prep_active(config: RunConfig, plan: ResumePlan) -> bool:
    return plan.runs_data_prep(config)


def pretraining_active(config: RunConfig, plan: ResumePlan) -> bool:
    return config.do_pretraining


def midtraining_active(config: RunConfig, plan: ResumePlan) -> bool:
    return config.do_midtraining


def rl_active(config: RunConfig, plan: ResumePlan) -> bool:
    return config.do_rl


def always(config: RunConfig, plan: ResumePlan) -> bool:
    return True


# --- actions that are more than a job list -----------------------------------


def _launch_bulk_download(ctx: StageContext, stage: Stage) -> None:
    job = commands.dataset_download(ctx.config.num_pretrain_shards)
    task = ctx.runner.run(stage.name, job.command, job.args, mode=JobMode.BACKGROUND)
    assert isinstance(task, BackgroundTask)
    ctx.background[BULK_DOWNLOAD] = task


def _join_bulk_download(ctx: StageContext, stage: Stage) -> None:
    task = ctx.background.pop(BULK_DOWNLOAD, None)
    if task is None:
        raise StageSkipped("no background download was started")
    code = ctx.runner.join(task)
    if code != 0:
        raise ExternalJobError(stage.name, code, stage.hint, job="dataset")


def _fetch_identity(ctx: StageContext, stage: Stage) -> None:
    ctx.fetch(commands.IDENTITY_CONVERSATIONS_URL, ctx.config.identity_path, stage=stage.name)


def _base_train(ctx: StageContext, stage: Stage) -> None:
    run_jobs(ctx, stage, [commands.base_train(ctx.config)])
    ctx.sleep(POST_PRETRAIN_SETTLE_SECONDS)


def _finalize_report(ctx: StageContext, stage: Stage) -> None:
    name = report_output_name(ctx.config, ctx.now())
    dest = finalize_report(ctx.config.report_path, ctx.output_dir, name)
    if dest is None:
        raise StageSkipped(f"report.md not found in {ctx.config.report_dir}")
    ctx.artifacts[REPORT] = dest


def build_stages() -> tuple[Stage, ...]:
    """The fixed speedrun stage graph, in execution order."""
    return (
        Stage(
            name=REPORT_RESET,
            title="Reset report",
            failure=FailurePolicy.FATAL,
            when=data_prep_active,
            action=_jobs(lambda cfg: commands.report_reset()),
        ),
        Stage(
            name=SEED_DOWNLOAD,
            title=f"Download {commands.SEED_SHARDS} shards for the tokenizer",
            failure=FailurePolicy.FATAL,
            when=data_prep_active,
            action=_jobs(lambda cfg: commands.dataset_download(commands.SEED_SHARDS)),
        ),
        Stage(
            name=BULK_DOWNLOAD,
            title="Start background download of pretraining shards",
            failure=FailurePolicy.SOFT,
            when=data_prep_active,
            action=_launch_bulk_download,
        ),
        Stage(
            name=TOKENIZER,
            title="Train tokenizer, then evaluate it",
            failure=FailurePolicy.FATAL,
            when=data_prep_active,
            action=_jobs(lambda cfg: commands.tokenizer_train(), lambda cfg: commands.tokenizer_eval()),
        ),
        Stage(
            name=JOIN_DOWNLOAD,
            title="Wait for background dataset download",
            failure=FailurePolicy.SOFT,
            when=data_prep_active,
            action=_join_bulk_download,
            hint="training will still run but may loop over fewer shards",
        ),
        Stage(
            name=IDENTITY_FETCH,
            title="Fetch identity conversations",
            failure=FailurePolicy.FATAL,
            when=midtraining_active,
            action=_fetch_identity,
        ),
        Stage(
            name=BASE_TRAIN,
            title="Base pretraining",
            failure=FailurePolicy.FATAL,
            when=pretraining_active,
            action=_base_train,
        ),
        Stage(
            name=BASE_EVAL,
            title="Base evals: base_loss, base_eval",
            failure=FailurePolicy.FATAL,
            when=pretraining_active,
            action=_jobs(commands.base_loss, commands.base_eval),
        ),
        Stage(
            name=MIDTRAIN,
            title="Midtraining, then chat eval",
            failure=FailurePolicy.FATAL,
            when=midtraining_active,
            action=_jobs(commands.mid_train, lambda cfg: commands.chat_eval(cfg, "mid")),
        ),
        Stage(
            name=SFT,
            title="Supervised fine-tuning, then chat eval",
            failure=FailurePolicy.FATAL,
            when=always,
            action=_jobs(commands.chat_sft, lambda cfg: commands.chat_eval(cfg, "sft")),
        ),
        Stage(
            name=RL,
            title=f"RL on {commands.RL_EVAL_TASK}, then eval",
            failure=FailurePolicy.FATAL,
            when=rl_active,
            action=_jobs(
                commands.chat_rl,
                lambda cfg: commands.chat_eval(cfg, "rl", task=commands.RL_EVAL_TASK),
            ),
        ),
        Stage(
            name=REPORT,
            title="Generate final report.md",
            failure=FailurePolicy.SOFT,
            when=always,
            action=_jobs(lambda cfg: commands.report_generate()),
            region=Region.FINALIZING,
            hint="check logs",
        ),
        Stage(
            name=FINALIZE_REPORT,
            title="Copy report to the working directory",
            failure=FailurePolicy.SOFT,
            when=always,
            action=_finalize_report,
            region=Region.FINALIZING,
        ),
    )


PIPELINE: Final[tuple[Stage, ...]] = build_stages()


def fault_policy_table(stages: Sequence[Stage] = PIPELINE) -> dict[str, FailurePolicy]:
    return {stage.name: stage.failure for stage in stages}
