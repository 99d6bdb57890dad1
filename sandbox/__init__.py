"""Sandbox lifecycle management for Docker-based code execution.

This module provides the SandboxManager class, which creates, resumes,
pauses and sweeps the isolated containers the code agent works in.
"""

from sandbox.docker_sandbox import (
    CommandResult,
    SandboxCreationError,
    SandboxError,
    SandboxInfo,
    SandboxManager,
    SandboxResumeError,
    TemplateNotFoundError,
)
from sandbox.security import validate_command, validate_path

__all__ = [
    "CommandResult",
    "SandboxCreationError",
    "SandboxError",
    "SandboxInfo",
    "SandboxManager",
    "SandboxResumeError",
    "TemplateNotFoundError",
    "validate_command",
    "validate_path",
]
