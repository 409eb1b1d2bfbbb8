"""Sandbox management module for Docker-based agent execution.

This module provides the SandboxManager runtime, the hardened sandbox
profile and the registry of sandboxes owned by the current process.
"""

from sandbox.docker_sandbox import (
    CommandResult,
    SandboxError,
    SandboxHandle,
    SandboxManager,
    SandboxSpec,
    VolumeBind,
    build_sandbox_spec,
)
from sandbox.registry import ActiveSandboxRegistry
from sandbox.security import sanitize_output, validate_volume_bind

__all__ = [
    "ActiveSandboxRegistry",
    "CommandResult",
    "SandboxError",
    "SandboxHandle",
    "SandboxManager",
    "SandboxSpec",
    "VolumeBind",
    "build_sandbox_spec",
    "sanitize_output",
    "validate_volume_bind",
]
