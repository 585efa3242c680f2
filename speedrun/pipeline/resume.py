from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

from speedrun.pipeline.config import RunConfig

logger = logging.getLogger(__name__)

REPORT_RESET: Final[str] = "report-reset"
SEED_DOWNLOAD: Final[str] = "seed-download"
BULK_DOWNLOAD: Final[str] = "bulk-download"
TOKENIZER: Final[str] = "tokenizer"
JOIN_DOWNLOAD: Final[str] = "join-download"

# Stages that build what a resumed run trusts to be on disk already.
DATA_PREP_STAGES: Final[tuple[str, ...]] = (
    REPORT_RESET,
    SEED_DOWNLOAD,
    BULK_DOWNLOAD,
    TOKENIZER,
    JOIN_DOWNLOAD,
)


@dataclass(frozen=True)
class ResumePlan:
    resume_step: int | None

    @property
    def fresh_start(self) -> bool:
        return self.resume_step is None

    @property
    def skipped(self) -> frozenset[str]:
        if self.fresh_start:
            return frozenset()
        return frozenset(DATA_PREP_STAGES)

    def runs_data_prep(self, config: RunConfig) -> bool:
        return self.fresh_start and config.do_tokenizer and config.do_pretraining

    def skip_reason(self, stage: str) -> str | None:
        if stage in self.skipped:
            return f"resuming from step {self.resume_step}"
        return None

    def describe(self) -> str:
        if self.fresh_start:
            return "fresh run"
        return f"resume from step {self.resume_step}; skipping {', '.join(DATA_PREP_STAGES)}"

    def preflight_warnings(self, config: RunConfig) -> list[str]:
        """Existence checks for what a resumed run expects from earlier runs.

        Only paths are inspected; checkpoint contents are the trainer's concern.
        """
        if self.fresh_start:
            return []
        warnings: list[str] = []
        if not config.tokenizer_dir.is_dir():
            warnings.append(f"Resuming but no tokenizer found at {config.tokenizer_dir}")
        if not config.dataset_dir.is_dir() or not any(config.dataset_dir.glob("*.parquet")):
            warnings.append(f"Resuming but no dataset shards found in {config.dataset_dir}")
        return warnings


def plan_resume(config: RunConfig) -> ResumePlan:
    plan = ResumePlan(resume_step=config.resume_from_step)
    logger.debug("Resume plan: %s", plan.describe())
    return plan
