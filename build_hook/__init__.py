"""Webhook-triggered container image builds with rollout restarts."""

from build_hook.config import HookConfig, ProjectConfig, load_config
from build_hook.pipeline import BuildPipeline, PipelineResult, PipelineState

__all__ = [
    "BuildPipeline",
    "HookConfig",
    "PipelineResult",
    "PipelineState",
    "ProjectConfig",
    "load_config",
]

__version__ = "0.1.0"
