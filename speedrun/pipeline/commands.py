"""Command lines for the nanochat jobs the speedrun drives.

Each builder returns a JobInvocation: a stable label plus the argv the
runner executes. Distributed jobs go through `torchrun --standalone`;
everything else runs as `python -m <module>` with the orchestrator's own
interpreter, so both share one virtualenv.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Final

from speedrun.pipeline.config import RunConfig

IDENTITY_CONVERSATIONS_URL: Final[str] = (
    "https://karpathy-public.s3.us-west-2.amazonaws.com/identity_conversations.jsonl"
)
SEED_SHARDS: Final[int] = 8
TOKENIZER_MAX_CHARS: Final[int] = 2_000_000_000

BASE_SAVE_EVERY: Final[int] = 4500
BASE_EVAL_EVERY: Final[int] = 500
BASE_CORE_METRIC_EVERY: Final[int] = 500
BASE_SAMPLE_EVERY: Final[int] = 500
TARGET_PARAM_DATA_RATIO: Final[int] = 20
SFT_EVAL_EVERY: Final[int] = 50
RL_EVAL_TASK: Final[str] = "GSM8K"


@dataclass(frozen=True)
class JobInvocation:
    label: str
    command: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.command, *self.args)


def python_module(label: str, module: str, *args: str) -> JobInvocation:
    return JobInvocation(label=label, command=sys.executable, args=("-m", module, *args))


def torchrun(
    label: str,
    config: RunConfig,
    module: str,
    *args: str,
    separator: bool = True,
) -> JobInvocation:
    launcher = ("--standalone", f"--nproc_per_node={config.nproc_per_node}", "-m", module)
    tail = ("--", *args) if separator else args
    return JobInvocation(label=label, command="torchrun", args=(*launcher, *tail))


def report_reset() -> JobInvocation:
    return python_module("report_reset", "nanochat.report", "reset")


def report_generate() -> JobInvocation:
    return python_module("report_generate", "nanochat.report", "generate")


def dataset_download(count: int) -> JobInvocation:
    return python_module("dataset", "nanochat.dataset", "-n", str(count))


def tokenizer_train() -> JobInvocation:
    return python_module("tok_train", "scripts.tok_train", f"--max_chars={TOKENIZER_MAX_CHARS}")


def tokenizer_eval() -> JobInvocation:
    return python_module("tok_eval", "scripts.tok_eval")


def base_train(config: RunConfig) -> JobInvocation:
    return torchrun(
        "base_train",
        config,
        "scripts.base_train",
        f"--depth={config.model_depth}",
        f"--device_batch_size={config.device_batch_size}",
        f"--total_batch_size={config.total_batch_size}",
        f"--max_seq_len={config.context_size}",
        f"--save_every={BASE_SAVE_EVERY}",
        f"--core_metric_every={BASE_CORE_METRIC_EVERY}",
        f"--target_param_data_ratio={TARGET_PARAM_DATA_RATIO}",
        f"--eval_every={BASE_EVAL_EVERY}",
        f"--model_tag={config.model_tag}",
        f"--resume_from_step={config.resume_arg}",
        f"--sample_every={BASE_SAMPLE_EVERY}",
        f"--run={config.wandb_run}",
    )


def base_loss(config: RunConfig) -> JobInvocation:
    return torchrun(
        "base_loss",
        config,
        "scripts.base_loss",
        f"--device_batch_size={config.eval_device_batch_size}",
        f"--split_tokens={config.split_tokens}",
        f"--model_tag={config.model_tag}",
    )


def base_eval(config: RunConfig) -> JobInvocation:
    # base_eval takes its flags directly, without the `--` separator.
    return torchrun(
        "base_eval",
        config,
        "scripts.base_eval",
        f"--model-tag={config.model_tag}",
        separator=False,
    )


def mid_train(config: RunConfig) -> JobInvocation:
    return torchrun(
        "mid_train",
        config,
        "scripts.mid_train",
        f"--device_batch_size={config.device_batch_size}",
        f"--total_batch_size={config.total_batch_size}",
        f"--max_seq_len={config.context_size}",
        f"--model_tag={config.model_tag}",
        f"--run={config.wandb_run}",
    )


def chat_eval(config: RunConfig, source: str, task: str | None = None) -> JobInvocation:
    args = ["-i", source]
    if task is not None:
        args += ["-a", task]
    else:
        args.append(f"--model-tag={config.model_tag}")
    return torchrun(f"chat_eval_{source}", config, "scripts.chat_eval", *args)


def chat_sft(config: RunConfig) -> JobInvocation:
    return torchrun(
        "chat_sft",
        config,
        "scripts.chat_sft",
        f"--eval_every={SFT_EVAL_EVERY}",
        f"--device_batch_size={config.device_batch_size_sft}",
        f"--target_examples_per_step={config.total_batch_size_sft}",
        f"--run={config.wandb_run}",
        f"--model_tag={config.model_tag}",
    )


def chat_rl(config: RunConfig) -> JobInvocation:
    return torchrun(
        "chat_rl",
        config,
        "scripts.chat_rl",
        f"--device_batch_size={config.device_batch_size}",
        f"--run={config.wandb_run}",
    )


def chat_web(config: RunConfig) -> JobInvocation:
    return python_module("chat_web", "scripts.chat_web", f"--model-tag={config.model_tag}")
