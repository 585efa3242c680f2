from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from speedrun.pipeline.config import ENV_OVERRIDES, RunConfig
from speedrun.pipeline.resume import ResumePlan
from speedrun.pipeline.runner import RunResult, StageOutcome
from speedrun.pipeline.stages import Stage

_OUTCOME_STYLE = {
    StageOutcome.SUCCEEDED: "green",
    StageOutcome.SKIPPED: "dim",
    StageOutcome.FAILED_SOFT: "yellow",
    StageOutcome.FAILED_FATAL: "bold red",
}


@dataclass(frozen=True)
class Ui:
    console: Console = field(default_factory=Console)

    def log(self, message: str) -> None:
        self.console.print(message)


def config_table(config: RunConfig, plan: ResumePlan) -> Table:
    table = Table(title="nanochat speedrun", show_header=True, header_style="bold")
    table.add_column("setting")
    table.add_column("env var", style="dim")
    table.add_column("value")

    values = config.model_dump()
    for override in ENV_OVERRIDES:
        value = values[override.field]
        if override.field == "run_name":
            value = config.wandb_run
        elif override.field == "resume_from_step":
            value = "none" if value is None else value
        elif isinstance(value, bool):
            value = int(value)
        table.add_row(override.field, override.env_var, str(value))

    table.add_section()
    table.add_row("split_tokens", "", str(config.split_tokens))
    table.add_row("eval_device_batch_size", "", str(config.eval_device_batch_size))
    table.add_row("plan", "", plan.describe())
    return table


def stage_plan_table(stages: Sequence[Stage], config: RunConfig, plan: ResumePlan) -> Table:
    table = Table(title="stages", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("stage")
    table.add_column("on failure")
    table.add_column("region")
    table.add_column("runs")
    for i, stage in enumerate(stages, start=1):
        active = stage.is_active(config, plan)
        runs = "[green]yes[/green]" if active else f"[dim]no ({plan.skip_reason(stage.name) or 'disabled'})[/dim]"
        table.add_row(str(i), stage.name, stage.failure.value, stage.region.value, runs)
    return table


def summary_table(result: RunResult) -> Table:
    table = Table(title="outcome", show_header=True, header_style="bold")
    table.add_column("stage")
    table.add_column("outcome")
    table.add_column("exit code", justify="right")
    table.add_column("detail", overflow="fold")
    for record in result.records:
        style = _OUTCOME_STYLE[record.outcome]
        code = "" if record.exit_code is None else str(record.exit_code)
        table.add_row(
            record.name,
            f"[{style}]{record.outcome.value}[/{style}]",
            code,
            Text(record.detail or ""),
        )
    return table
