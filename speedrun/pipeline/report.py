from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path

from speedrun.common.time_utils import timestamp_slug
from speedrun.pipeline.config import RunConfig

logger = logging.getLogger(__name__)


def report_output_name(config: RunConfig, when: datetime) -> str:
    # Depth, tag and time in the name so repeated runs accumulate side by side.
    return f"report_d{config.model_depth}{config.model_tag}_{timestamp_slug(when)}.md"


def finalize_report(report_path: Path, output_dir: Path, name: str) -> Path | None:
    """Copy the generated report to `output_dir/name`.

    Returns the copy's path, or None when no report was generated.
    """
    if not report_path.is_file():
        logger.warning("report.md not found in %s; skip copy.", report_path.parent)
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    dest = output_dir / name
    shutil.copy2(report_path, dest)
    logger.info("Report copied to %s", dest)
    return dest
