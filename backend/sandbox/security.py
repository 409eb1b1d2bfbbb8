"""Security profile and validation for agent sandboxes.

This module holds the hardened container profile applied to every sandbox
and the checks that keep host paths holding engine state or system
configuration out of sandbox volume binds.
"""

from pathlib import Path

# Linux capabilities dropped from every sandbox. The agent only edits files
# in its bind-mounted workspace and runs build/test tooling.
DROPPED_CAPABILITIES: list[str] = [
    "AUDIT_WRITE",
    "MKNOD",
    "NET_ADMIN",
    "NET_BIND_SERVICE",
    "NET_RAW",
    "SETFCAP",
    "SETPCAP",
    "SYS_ADMIN",
    "SYS_BOOT",
    "SYS_CHROOT",
    "SYS_MODULE",
    "SYS_PTRACE",
    "SYS_RAWIO",
    "SYS_TIME",
]

SECURITY_OPTIONS: list[str] = ["no-new-privileges"]

# The root filesystem is read-only; /tmp is the only scratch space.
TMPFS_MOUNTS: dict[str, str] = {"/tmp": "rw,noexec,nosuid,size=512m"}

# Host paths that may never be bind-mounted, nor anything below them.
BLOCKED_HOST_TREES: list[str] = [
    "/etc",
    "/proc",
    "/sys",
    "/boot",
    "/dev",
    "/var/run/docker.sock",
    "/run/docker.sock",
]

# Host paths that may not be mounted as a whole (mounting below them is fine).
BLOCKED_HOST_ROOTS: list[str] = ["/", "/root", "/home"]


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
    except ValueError:
        return False
    return True


def validate_volume_bind(
    host_path: str,
    protected_paths: list[str] | None = None,
) -> tuple[bool, str]:
    """Validate a host path before it is bind-mounted into a sandbox.

    Args:
        host_path: Absolute host path to mount.
        protected_paths: Engine-owned paths (task state directory, env
            files) that must be neither mounted nor exposed through a
            mounted parent directory.

    Returns:
        A tuple of (is_valid, error_message). error_message is empty when valid.

    Examples:
        >>> validate_volume_bind("/home/dev/.agent-dispatch/worktrees/t1/unit1")
        (True, "")
        >>> validate_volume_bind("/etc/ssh")
        (False, "Blocked host path: /etc")
        >>> validate_volume_bind("/root")
        (False, "Refusing to mount entire directory: /root")
    """
    if not host_path:
        return False, "Host path cannot be empty"
    if "\x00" in host_path:
        return False, "Host path contains null byte"
    if not host_path.startswith("/"):
        return False, f"Host path must be absolute: {host_path}"

    try:
        resolved = Path(host_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid host path: {e}"

    for root in BLOCKED_HOST_ROOTS:
        if resolved == Path(root):
            return False, f"Refusing to mount entire directory: {root}"

    for tree in BLOCKED_HOST_TREES:
        if _is_within(resolved, Path(tree)):
            return False, f"Blocked host path: {tree}"

    for protected in protected_paths or []:
        protected_path = Path(protected).expanduser().resolve()
        if _is_within(resolved, protected_path) or _is_within(protected_path, resolved):
            return False, f"Mount would expose protected path: {protected_path}"

    return True, ""


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Truncate command output before it is logged or persisted.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = output.replace("\x00", "")
    if len(output) > max_length:
        omitted = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {omitted} chars omitted]"

    return output
