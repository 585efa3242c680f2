from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Mapping

import pytest
from typer.testing import CliRunner

from speedrun import cli
from speedrun.adapters.process.jobs import DryRunJobRunner
from speedrun.cli import app

_ENV_VARS = (
    "NPROC_PER_NODE",
    "MODEL_DEPTH",
    "DEVICE_BATCH_SIZE",
    "TOTAL_BATCH_SIZE",
    "CONTEXT_SIZE",
    "DEVICE_BATCH_SIZE_SFT",
    "TOTAL_BATCH_SIZE_SFT",
    "NUM_PRETRAIN_SHARDS",
    "MODEL_TAG",
    "DO_TOKENIZER",
    "DO_PRETRAINING",
    "DO_PRETREINING",
    "DO_MIDTRAINING",
    "DO_RL",
    "RESUME_FROM_STEP",
    "WANDB_RUN",
    "OMP_NUM_THREADS",
)


@pytest.fixture(autouse=True)
def drop_cli_log_handlers() -> Iterator[None]:
    """Remove the handlers `speedrun run` installs on the root logger.

    They are bound to CliRunner's stderr, which is closed once the command
    returns.
    """
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture()
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    base = tmp_path / "base"
    monkeypatch.setenv("NANOCHAT_BASE_DIR", str(base))
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.chdir(tmp_path)
    return base


def test_dry_run_completes(clean_env: Path) -> None:
    result = CliRunner().invoke(app, ["run", "--dry-run", "--no-serve"])

    assert result.exit_code == 0, result.output
    assert "report-reset" in result.output
    assert "succeeded" in result.output


def test_bad_override_exits_with_config_error(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MODEL_DEPTH", "deep")

    result = CliRunner().invoke(app, ["run", "--dry-run", "--no-serve"])

    assert result.exit_code == 2
    assert "MODEL_DEPTH" in result.output


def test_show_config_lists_stage_plan(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RESUME_FROM_STEP", "3000")

    result = CliRunner().invoke(app, ["show-config"])

    assert result.exit_code == 0, result.output
    assert "resuming from step 3000" in result.output
    assert "base-train" in result.output


def test_config_file_is_applied(clean_env: Path, tmp_path: Path) -> None:
    cfg = tmp_path / "speedrun.toml"
    cfg.write_text('[run]\nmodel_tag = "d8"\nmodel_depth = 8\n')

    result = CliRunner().invoke(app, ["show-config", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "nanochat-d8" in result.output


def test_init_config_writes_once(clean_env: Path, tmp_path: Path) -> None:
    out = tmp_path / "speedrun_config.toml"

    first = CliRunner().invoke(app, ["init-config", str(out)])
    assert first.exit_code == 0, first.output
    assert "[run]" in out.read_text()

    second = CliRunner().invoke(app, ["init-config", str(out)])
    assert second.exit_code != 0


class _FailingTokenizerRunner(DryRunJobRunner):
    def _run_blocking(self, stage: str, argv: tuple[str, ...], env: Mapping[str, str] | None) -> int:
        super()._run_blocking(stage, argv, env)
        return 1 if stage == "tokenizer" else 0


def test_fatal_stage_exits_1(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "DryRunJobRunner", _FailingTokenizerRunner)

    result = CliRunner().invoke(app, ["run", "--dry-run", "--no-serve"])

    assert result.exit_code == 1, result.output
    assert "failed-fatal" in result.output
    assert "Done." not in result.output
