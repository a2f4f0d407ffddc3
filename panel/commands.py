"""
External command runner.

Every docker/systemctl invocation made by the panel goes through
run_command(), which never raises: failures come back as a result dict

  {"ok": bool, "code": int, "stdout": str, "stderr": str, "message": str}

Callers that need to be tested inject their own coroutine with the same
signature (run_cmd=...).
"""

import asyncio
import subprocess
from typing import Awaitable, Callable

CommandResult = dict
RunCommand = Callable[..., Awaitable[CommandResult]]

MAX_OUTPUT = 10 * 1024 * 1024


def _run_sync(command: str, args: list[str], timeout: float) -> CommandResult:
    cmd = [command] + [str(a) for a in args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return {
            "ok": False,
            "code": -1,
            "stdout": "",
            "stderr": f"Timeout after {timeout}s",
            "message": f"Command timed out after {timeout}s: {command}",
        }
    except OSError as e:
        return {
            "ok": False,
            "code": -1,
            "stdout": "",
            "stderr": str(e),
            "message": str(e),
        }

    ok = result.returncode == 0
    return {
        "ok": ok,
        "code": result.returncode,
        "stdout": result.stdout[:MAX_OUTPUT].strip(),
        "stderr": result.stderr[:MAX_OUTPUT].strip(),
        "message": "" if ok else f"Command failed with exit code {result.returncode}: {command} {' '.join(args[:2])}",
    }


async def run_command(command: str, args: list[str], timeout: float = 30) -> CommandResult:
    """Run a command off the event loop and return its result dict."""
    return await asyncio.to_thread(_run_sync, command, list(args), timeout)
