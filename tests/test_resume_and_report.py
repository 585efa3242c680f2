from __future__ import annotations

from datetime import datetime
from pathlib import Path

from speedrun.pipeline.config import RunConfig
from speedrun.pipeline.report import finalize_report, report_output_name
from speedrun.pipeline.resume import DATA_PREP_STAGES, plan_resume


def test_fresh_plan_skips_nothing(tmp_path: Path) -> None:
    plan = plan_resume(RunConfig(base_dir=tmp_path))
    assert plan.fresh_start
    assert plan.skipped == frozenset()
    assert plan.preflight_warnings(RunConfig(base_dir=tmp_path)) == []
    assert plan.describe() == "fresh run"


def test_resume_plan_skips_data_prep(tmp_path: Path) -> None:
    cfg = RunConfig(base_dir=tmp_path, resume_from_step=3000)
    plan = plan_resume(cfg)

    assert not plan.fresh_start
    assert plan.skipped == frozenset(DATA_PREP_STAGES)
    assert plan.skip_reason("tokenizer") == "resuming from step 3000"
    assert plan.skip_reason("sft") is None
    assert not plan.runs_data_prep(cfg)


def test_preflight_warns_about_missing_artifacts(tmp_path: Path) -> None:
    cfg = RunConfig(base_dir=tmp_path, resume_from_step=3000)
    plan = plan_resume(cfg)

    warnings = plan.preflight_warnings(cfg)
    assert len(warnings) == 2

    (tmp_path / "tokenizer").mkdir()
    (tmp_path / "base_data").mkdir()
    (tmp_path / "base_data" / "shard_00000.parquet").write_bytes(b"")
    assert plan.preflight_warnings(cfg) == []


def test_report_output_name() -> None:
    cfg = RunConfig(model_depth=12, model_tag="d12")
    assert report_output_name(cfg, datetime(2026, 1, 2, 3, 4, 5)) == "report_d12d12_20260102_030405.md"


def test_finalize_report_copies(tmp_path: Path) -> None:
    src = tmp_path / "report" / "report.md"
    src.parent.mkdir()
    src.write_text("hello")

    dest = finalize_report(src, tmp_path / "runs", "report_x.md")

    assert dest == tmp_path / "runs" / "report_x.md"
    assert dest.read_text() == "hello"
    assert src.exists()


def test_finalize_report_missing(tmp_path: Path) -> None:
    assert finalize_report(tmp_path / "report" / "report.md", tmp_path, "x.md") is None
    assert not (tmp_path / "x.md").exists()
