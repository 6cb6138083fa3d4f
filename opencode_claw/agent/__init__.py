"""Agent turn execution."""

from opencode_claw.agent.prompt import (
    ProgressOptions,
    PromptAborted,
    PromptError,
    PromptFailure,
    PromptTimeout,
    prompt_streaming,
)

__all__ = [
    "ProgressOptions",
    "PromptAborted",
    "PromptError",
    "PromptFailure",
    "PromptTimeout",
    "prompt_streaming",
]
