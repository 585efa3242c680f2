"""Staged controller for the nanochat speedrun.

This package provides:
- Run configuration resolved from defaults, an optional TOML file and
  environment variables
- The fixed stage graph with its fault policy
- A driver that runs the stages, resumes from a checkpoint step, and
  always attempts the final report

Training, evaluation, tokenization and report rendering are external
jobs; this package only decides what runs, in what order, and what a
failure means.
"""
