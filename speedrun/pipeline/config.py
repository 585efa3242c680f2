from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError


DEFAULT_BASE_DIR: Final[str] = "~/.cache/nanochat"
RESUME_NONE: Final[int] = -1


class ConfigError(ValueError):
    pass


def _expand(path: str | Path) -> Path:
    return Path(os.path.expanduser(str(path))).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    """Read TOML into a dict, supporting Python 3.10+.

    Uses tomllib when available, falls back to tomli.
    """
    data = path.read_bytes()
    try:
        import tomllib  # type: ignore[attr-defined]

        return tomllib.loads(data.decode("utf-8"))
    except ModuleNotFoundError:
        import tomli  # type: ignore[import-not-found]

        return tomli.loads(data)


class RunConfig(BaseModel):
    """Tunables for one speedrun, fixed before the first stage starts.

    Derived values (split tokens, eval batch size, artifact paths) are
    properties so they can never drift from the fields they come from.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    nproc_per_node: int = Field(default=2, gt=0, description="Accelerators used by torchrun.")
    model_depth: int = Field(default=12, gt=0)
    device_batch_size: int = Field(default=16, gt=0, description="Per-device batch size for pretraining.")
    total_batch_size: int = Field(default=524288, gt=0, description="Tokens per optimizer step.")
    context_size: int = Field(default=2048, gt=0)
    device_batch_size_sft: int = Field(default=4, gt=0)
    total_batch_size_sft: int = Field(default=32, gt=0, description="Target examples per SFT step.")
    num_pretrain_shards: int = Field(default=75, gt=0)
    model_tag: str = Field(default="d12", min_length=1)
    do_tokenizer: bool = Field(default=True)
    do_pretraining: bool = Field(default=True)
    do_midtraining: bool = Field(default=True)
    do_rl: bool = Field(default=False, description="Optional GSM8K RL stage.")
    resume_from_step: int | None = Field(default=None, ge=0)
    run_name: str | None = Field(default=None, description="Weights & Biases run name.")
    omp_num_threads: int = Field(default=8, gt=0)
    base_dir: Path = Field(default_factory=lambda: _expand(DEFAULT_BASE_DIR))

    @property
    def wandb_run(self) -> str:
        return self.run_name or f"nanochat-{self.model_tag}"

    @property
    def fresh_start(self) -> bool:
        return self.resume_from_step is None

    @property
    def split_tokens(self) -> int:
        return 20 * self.total_batch_size

    @property
    def eval_device_batch_size(self) -> int:
        # Truncating division: evals run at half the training batch to fit VRAM.
        return self.device_batch_size // 2

    @property
    def resume_arg(self) -> int:
        """Resume step in the form the base trainer expects (-1 = none)."""
        return RESUME_NONE if self.resume_from_step is None else self.resume_from_step

    @property
    def report_dir(self) -> Path:
        return self.base_dir / "report"

    @property
    def report_path(self) -> Path:
        return self.report_dir / "report.md"

    @property
    def identity_path(self) -> Path:
        return self.base_dir / "identity_conversations.jsonl"

    @property
    def tokenizer_dir(self) -> Path:
        return self.base_dir / "tokenizer"

    @property
    def dataset_dir(self) -> Path:
        return self.base_dir / "base_data"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "speedrun_logs"

    def job_environment(self) -> dict[str, str]:
        """Variables the external jobs read from their environment."""
        return {
            "NPROC_PER_NODE": str(self.nproc_per_node),
            "OMP_NUM_THREADS": str(self.omp_num_threads),
            "WANDB_RUN": self.wandb_run,
            "NANOCHAT_BASE_DIR": str(self.base_dir),
        }


@dataclass(frozen=True)
class EnvOverride:
    env_var: str
    field: str
    kind: str  # int | toggle | step | str | path
    aliases: tuple[str, ...] = ()


ENV_OVERRIDES: Final[tuple[EnvOverride, ...]] = (
    EnvOverride("NPROC_PER_NODE", "nproc_per_node", "int"),
    EnvOverride("MODEL_DEPTH", "model_depth", "int"),
    EnvOverride("DEVICE_BATCH_SIZE", "device_batch_size", "int"),
    EnvOverride("TOTAL_BATCH_SIZE", "total_batch_size", "int"),
    EnvOverride("CONTEXT_SIZE", "context_size", "int"),
    EnvOverride("DEVICE_BATCH_SIZE_SFT", "device_batch_size_sft", "int"),
    EnvOverride("TOTAL_BATCH_SIZE_SFT", "total_batch_size_sft", "int"),
    EnvOverride("NUM_PRETRAIN_SHARDS", "num_pretrain_shards", "int"),
    EnvOverride("MODEL_TAG", "model_tag", "str"),
    EnvOverride("DO_TOKENIZER", "do_tokenizer", "toggle"),
    # DO_PRETREINING is the spelling older launch scripts export.
    EnvOverride("DO_PRETRAINING", "do_pretraining", "toggle", aliases=("DO_PRETREINING",)),
    EnvOverride("DO_MIDTRAINING", "do_midtraining", "toggle"),
    EnvOverride("DO_RL", "do_rl", "toggle"),
    EnvOverride("RESUME_FROM_STEP", "resume_from_step", "step"),
    EnvOverride("WANDB_RUN", "run_name", "str"),
    EnvOverride("OMP_NUM_THREADS", "omp_num_threads", "int"),
    EnvOverride("NANOCHAT_BASE_DIR", "base_dir", "path"),
)

_OVERRIDES_BY_FIELD: Final[dict[str, EnvOverride]] = {o.field: o for o in ENV_OVERRIDES}


def _lookup(env: Mapping[str, str], override: EnvOverride) -> str | None:
    for name in (override.env_var, *override.aliases):
        raw = env.get(name)
        if raw is not None and raw.strip() != "":
            return raw.strip()
    return None


def _to_int(source: str, value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{source}={value!r} is not an integer") from None


def _normalize(override: EnvOverride, source: str, value: Any) -> Any:
    if override.kind == "int":
        return _to_int(source, value)
    if override.kind == "toggle":
        flag = _to_int(source, value)
        if flag not in (0, 1):
            raise ConfigError(f"{source}={value!r} must be 0 or 1")
        return flag == 1
    if override.kind == "step":
        step = _to_int(source, value)
        if step == RESUME_NONE:
            return None
        if step < 0:
            raise ConfigError(f"{source}={value!r} must be {RESUME_NONE} (no resume) or a non-negative step")
        return step
    if override.kind == "path":
        return _expand(str(value))
    return str(value)


def load_config_file(path: Path) -> dict[str, Any]:
    """Read the `[run]` table of a TOML file as raw field values."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw = _read_toml(path)
    except ValueError as exc:
        # tomllib.TOMLDecodeError subclasses ValueError
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    table = raw.get("run", {})
    if not isinstance(table, dict):
        raise ConfigError(f"[run] in {path} must be a table")
    return dict(table)


def _check_preconditions(config: RunConfig) -> None:
    if config.do_pretraining and config.fresh_start and not config.do_tokenizer:
        raise ConfigError(
            "DO_TOKENIZER=0 with DO_PRETRAINING=1 needs RESUME_FROM_STEP: "
            "a fresh pretraining run has no tokenizer to train with"
        )


def resolve_run_config(
    env: Mapping[str, str] | None = None,
    *,
    file_values: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Merge defaults, optional file values and environment overrides.

    Precedence is defaults < file < environment. Empty environment values
    count as unset. Raises ConfigError for unparseable or invalid values.
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    for key, value in (file_values or {}).items():
        override = _OVERRIDES_BY_FIELD.get(key)
        if override is None:
            raise ConfigError(f"Unknown config key: {key}")
        values[key] = _normalize(override, key, value)

    for override in ENV_OVERRIDES:
        raw = _lookup(env, override)
        if raw is None:
            continue
        values[override.field] = _normalize(override, override.env_var, raw)

    try:
        config = RunConfig.model_validate(values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid run configuration: {problems}") from exc

    _check_preconditions(config)
    return config
