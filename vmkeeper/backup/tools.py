"""
External command runner shared by the tool adapters (PowerShell, 7-Zip, rclone).
"""

import shlex
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence


logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when an external tool cannot be started."""
    pass


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def summary(self, limit: int = 500) -> str:
        """Last part of the tool's diagnostic output, for error messages."""
        output = (self.stderr or self.stdout or '').strip()
        return output[-limit:]


def run_command(
    cmd: Sequence[str],
    redact: Sequence[str] = (),
    on_line: Optional[Callable[[str], None]] = None
) -> CommandResult:
    """
    Run a command (list) and wait for it to finish.

    Args:
        cmd: Command and arguments
        redact: Argument values (e.g. passwords) to mask in logged command lines
        on_line: Optional callback receiving each output line as it is produced

    Returns:
        CommandResult with exit code and captured output

    Raises:
        ToolError: If the executable cannot be found or started
    """
    logger.debug("Running: %s", _display(cmd, redact))

    try:
        if on_line is None:
            cp = subprocess.run(
                list(cmd), shell=False, check=False,
                stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
            result = CommandResult(cp.returncode, cp.stdout, cp.stderr)
        else:
            result = _stream(list(cmd), on_line)
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {cmd[0]}") from e
    except OSError as e:
        raise ToolError(f"Failed to start {cmd[0]}: {e}") from e

    logger.debug("Exit code %s: %s", result.returncode, _display(cmd[:2], redact))
    return result


def _stream(cmd: List[str], on_line: Callable[[str], None]) -> CommandResult:
    """Run a command, forwarding merged stdout/stderr line-by-line."""
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1
    )

    lines = []
    for line in process.stdout:
        line = line.rstrip()
        if line:
            lines.append(line)
            on_line(line)
    process.wait()

    return CommandResult(process.returncode, '\n'.join(lines), '')


def _display(cmd: Sequence[str], redact: Sequence[str]) -> str:
    masked = []
    for arg in cmd:
        for secret in redact:
            if secret:
                arg = arg.replace(secret, '****')
        masked.append(arg)
    return shlex.join(masked)
