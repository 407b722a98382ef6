"""
External tool invocation (rclone, 7z, psql).

Calls are synchronous and blocking. A timeout is applied only when one is
configured; otherwise the tool's own behavior decides how long a call runs.
"""
from __future__ import annotations

import shutil
import subprocess
from typing import Callable, Dict, Iterable, Optional, Sequence

from yamisskey_doctor.exceptions import OperationalError, ToolMissingError, ToolTimeoutError
from yamisskey_doctor.monitoring.logger import get_logger

logger = get_logger(__name__)

RCLONE = "rclone"
SEVEN_ZIP = "7z"
PSQL = "psql"

# Runner signature shared by every component that shells out; tests substitute fakes.
ToolRunner = Callable[..., subprocess.CompletedProcess]


def require_tools(tools: Iterable[str], which: Callable[[str], Optional[str]] = shutil.which) -> None:
    """Fail fast if any tool is missing from PATH."""
    for tool in tools:
        if which(tool) is None:
            logger.error("TOOL_MISSING", tool=tool)
            raise ToolMissingError(tool)


def run_tool(
    args: Sequence[str],
    *,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external tool and capture its output.

    Never raises on a non-zero exit status; callers inspect ``returncode``.

    Raises:
        ToolMissingError: The executable was not found
        OperationalError: The executable exists but could not be started
        ToolTimeoutError: ``timeout`` elapsed before the tool exited
    """
    tool = args[0]
    logger.debug("Running external tool", tool=tool, argc=len(args))
    try:
        completed = subprocess.run(
            list(args),
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise ToolMissingError(tool) from e
    except OSError as e:
        logger.error("TOOL_START_FAILED", tool=tool, error=str(e))
        raise OperationalError(f"could not start '{tool}': {e}") from e
    except subprocess.TimeoutExpired as e:
        logger.error("TOOL_TIMEOUT", tool=tool, timeout=timeout)
        raise ToolTimeoutError(tool, timeout or 0.0) from e

    if completed.returncode != 0:
        logger.warning(
            "External tool exited with error",
            tool=tool,
            returncode=completed.returncode,
            stderr=tail(completed.stderr),
        )
    return completed


def tail(output: Optional[str], lines: int = 5) -> str:
    """Last few lines of tool output, for error messages."""
    if not output:
        return ""
    return "\n".join(output.strip().splitlines()[-lines:])
