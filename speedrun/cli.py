from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer

from speedrun.adapters.http.fetch import describe_download, download_file
from speedrun.adapters.process.jobs import DryRunJobRunner, JobRunner, SubprocessJobRunner
from speedrun.common.logging_config import configure_logging, parse_log_level
from speedrun.pipeline.config import ConfigError, RunConfig, load_config_file, resolve_run_config
from speedrun.pipeline.console_ui import Ui, config_table, stage_plan_table, summary_table
from speedrun.pipeline.resume import plan_resume
from speedrun.pipeline.runner import PipelineRunner
from speedrun.pipeline.stages import PIPELINE, REPORT


app = typer.Typer(add_completion=False, help="Run the nanochat speedrun end to end.")

EXAMPLE_CONFIG_NAME = "speedrun_config.example.toml"


def _load_config(config: Optional[str]) -> RunConfig:
    file_values = load_config_file(Path(config).expanduser()) if config else None
    return resolve_run_config(os.environ, file_values=file_values)


def _load_or_exit(config: Optional[str]) -> RunConfig:
    try:
        return _load_config(config)
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2)


@app.command()
def run(
    config: Optional[str] = typer.Option(None, help="Optional TOML file with a [run] table"),
    dry_run: bool = typer.Option(False, help="Log every command instead of running it"),
    serve: bool = typer.Option(True, help="Start the chat web UI after a successful run"),
    log_level: str = typer.Option("INFO", help="DEBUG | INFO | WARNING | ERROR"),
) -> None:
    """Run every enabled stage, then generate and copy the report."""
    cfg = _load_or_exit(config)
    try:
        level = parse_log_level(log_level)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    configure_logging(level, log_dir=None if dry_run else str(cfg.log_dir))

    ui = Ui()
    ui.console.print(config_table(cfg, plan_resume(cfg)))

    job_runner: JobRunner
    if dry_run:
        job_runner = DryRunJobRunner()
        pipeline = PipelineRunner(
            config=cfg,
            runner=job_runner,
            fetch=describe_download,
            sleep=lambda seconds: None,
        )
    else:
        job_runner = SubprocessJobRunner(base_env=cfg.job_environment())
        pipeline = PipelineRunner(config=cfg, runner=job_runner, fetch=download_file)

    result = pipeline.run()
    ui.console.print(summary_table(result))
    report = result.artifacts.get(REPORT)
    if report is not None:
        ui.console.print(f"Report copied to {report}", markup=False)

    if result.succeeded and serve:
        ui.log("[bold]Done.[/bold] Starting chat web UI (Ctrl-C to stop) ...")
        pipeline.serve()
    elif result.succeeded:
        ui.log("[bold]Done.[/bold] You can now run: python -m scripts.chat_cli or python -m scripts.chat_web")

    raise typer.Exit(code=result.exit_code)


@app.command()
def show_config(
    config: Optional[str] = typer.Option(None, help="Optional TOML file with a [run] table"),
) -> None:
    """Print the resolved configuration and which stages would run."""
    cfg = _load_or_exit(config)
    plan = plan_resume(cfg)
    ui = Ui()
    ui.console.print(config_table(cfg, plan))
    ui.console.print(stage_plan_table(PIPELINE, cfg, plan))
    for warning in plan.preflight_warnings(cfg):
        ui.log(f"[yellow]{warning}[/yellow]")


@app.command()
def init_config(
    path: str = typer.Argument(
        "speedrun_config.toml",
        help="Where to write the speedrun configuration TOML",
    ),
) -> None:
    """Write an example speedrun_config.toml."""
    project_root = Path(__file__).resolve().parents[1]
    template = project_root / EXAMPLE_CONFIG_NAME
    if not template.exists():
        raise RuntimeError(f"Missing template file: {template}")

    out = Path(path).expanduser()
    if out.exists():
        raise typer.BadParameter(f"Refusing to overwrite existing file: {out}")

    out.write_text(template.read_text())
    typer.echo(f"Wrote {out} (edit it, then run: speedrun run --config {out})")
