"""Path and command checks for sandbox operations.

Agents address files relative to the sandbox workspace. Every path that
reaches the sandbox, and every file collected back from it, passes through
these checks first.
"""

import re
from pathlib import PurePosixPath

MAX_PATH_LENGTH = 4096

# Destructive or host-affecting commands the terminal tool refuses to run.
BLOCKED_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"\brm\s+-rf\s+/\*"),
    re.compile(r"\b(?:shutdown|reboot|halt|poweroff)\b", re.IGNORECASE),
    re.compile(r"\bmkfs\.", re.IGNORECASE),
    re.compile(r"\bdd\s+if=.*\s+of=/dev/", re.IGNORECASE),
    re.compile(r":\(\)\{:\|:&\};:"),
)


def validate_command(command: str) -> tuple[bool, str]:
    """Validate a shell command before execution in the sandbox.

    Args:
        command: The shell command string to validate.

    Returns:
        A tuple of (is_valid, error_message). The message is empty when valid.

    Examples:
        >>> validate_command("npm install zod")
        (True, "")
        >>> validate_command("rm -rf /")
        (False, "Command blocked by safety policy")
    """
    if not command or not command.strip():
        return False, "Command cannot be empty"

    if "\x00" in command:
        return False, "Command contains null byte"

    for pattern in BLOCKED_COMMAND_PATTERNS:
        if pattern.search(command):
            return False, "Command blocked by safety policy"

    return True, ""


def validate_path(sandbox_root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a file path to prevent directory traversal.

    Relative paths are resolved against ``sandbox_root``. Absolute paths are
    accepted only when they already point inside ``sandbox_root``.

    Args:
        sandbox_root: Absolute workspace directory inside the container.
        relative_path: Path requested by the agent or collected from the sandbox.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        On failure the resolved path is empty.

    Examples:
        >>> validate_path("/home/user", "app/page.tsx")
        (True, "", "/home/user/app/page.tsx")
        >>> validate_path("/home/user", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if len(relative_path) > MAX_PATH_LENGTH:
        return False, "Path too long", ""

    if any(ch in relative_path for ch in ("\x00", "\n", "\r")):
        return False, "Path contains control characters", ""

    normalized = relative_path.replace("\\", "/")
    components = [part for part in normalized.split("/") if part not in ("", ".")]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    root = PurePosixPath(sandbox_root)
    candidate = PurePosixPath(normalized)
    resolved = candidate if candidate.is_absolute() else root.joinpath(*components)

    if resolved != root and root not in resolved.parents:
        return False, f"Path outside workspace: {relative_path}", ""

    return True, "", str(resolved)


def is_valid_file_path(path: str, sandbox_root: str) -> bool:
    """Return True if ``path`` names a file inside the sandbox workspace."""
    is_valid, _, resolved = validate_path(sandbox_root, path)
    return is_valid and resolved != sandbox_root.rstrip("/")


def to_workspace_relative(path: str, sandbox_root: str) -> str:
    """Strip the workspace prefix from an absolute sandbox path.

    Args:
        path: Absolute or relative path.
        sandbox_root: Workspace directory inside the container.

    Returns:
        The path relative to the workspace, without a leading "./".
    """
    root = sandbox_root.rstrip("/") + "/"
    if path.startswith(root):
        path = path[len(root):]
    while path.startswith("./"):
        path = path[2:]
    return path


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Truncate excessively long command output.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
