from __future__ import annotations

import logging
import os
from pathlib import Path

import requests

from speedrun.adapters.process.jobs import ExternalJobError

logger = logging.getLogger(__name__)

USER_AGENT = "nanochat-speedrun"


def download_file(
    url: str,
    dest: Path,
    *,
    stage: str,
    timeout: float = 60.0,
    chunk_size: int = 1 << 20,
) -> Path:
    """Stream `url` into `dest`, replacing it atomically on success.

    Raises ExternalJobError with the HTTP status as exit code, or with no
    code when the request never produced a response or the file could not
    be written; a partial `.part` file is removed either way.
    """
    tmp = dest.with_suffix(dest.suffix + ".part")
    logger.info("[%s] GET %s -> %s", stage, url, dest)
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with requests.get(
            url,
            stream=True,
            timeout=timeout,
            allow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as resp:
            if resp.status_code >= 400:
                raise ExternalJobError(stage, resp.status_code, hint=f"GET {url} failed")
            size = 0
            with tmp.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=chunk_size):
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
        os.replace(tmp, dest)
    except (requests.RequestException, OSError) as exc:
        tmp.unlink(missing_ok=True)
        raise ExternalJobError(stage, None, hint=str(exc)) from exc

    logger.info("[%s] wrote %d bytes to %s", stage, size, dest)
    return dest


def describe_download(url: str, dest: Path, *, stage: str) -> Path:
    """Dry-run stand-in for download_file: log the transfer only."""
    logger.info("[%s] would GET %s -> %s", stage, url, dest)
    return dest
