# nxdeploy/core/command.py

import shlex
import subprocess

from nxdeploy.core.logger import LoggerProxy

log = LoggerProxy(__name__)


class CommandResult:
    """Holds the result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        success: bool,
        io_error: str | None = None,
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.success = success
        # Set when the process could not be started at all.
        self.io_error = io_error

    def __bool__(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        return f"CommandResult(returncode={self.returncode}, success={self.success})"


def run_command(
    cmd_list: list[str],
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    stream_stderr: bool = False,
) -> CommandResult:
    """
    Runs an external command using subprocess, never through a shell.

    Args:
        cmd_list: Command and arguments as a list of strings.
        check: If True, non-zero exit codes are logged as failures.
        capture: If True, capture stdout and stderr.
        text: If True, decode stdout/stderr as UTF-8, replacing invalid bytes.
        cwd: Directory to run the command in.
        env: Environment variables dictionary for the subprocess.
        stream_stderr: Let stderr go to the terminal while stdout is captured
            (build progress output).

    Returns:
        CommandResult with success status, return code, stdout, stderr.
    """
    cmd_str = shlex.join(cmd_list)
    log.info(f"Running: {cmd_str}" + (f" in {cwd}" if cwd else ""))

    try:
        process = subprocess.run(
            cmd_list,
            check=False,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture and not stream_stderr else None,
            text=text,
            encoding="utf-8" if text else None,
            errors="replace" if text else None,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        log.error(f"Could not start {cmd_list[0]}: {e}")
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=str(e),
            success=False,
            io_error=str(e),
        )
    except Exception as e:
        log.error(f"An unexpected error occurred running command: {cmd_str}", exc_info=True)
        return CommandResult(returncode=-1, stdout="", stderr=str(e), success=False)

    stdout = process.stdout.strip() if process.stdout else ""
    stderr = process.stderr.strip() if process.stderr else ""

    if stdout:
        log.debug(f"STDOUT: {stdout}")
    if stderr:
        if process.returncode == 0:
            log.warning(f"STDERR (RC=0): {stderr}")
        else:
            log.error(f"STDERR (RC={process.returncode}): {stderr}")

    success = process.returncode == 0
    if check and not success:
        log.error(f"Command failed with exit code {process.returncode}: {cmd_str}")
    else:
        log.debug(f"Command finished with exit code {process.returncode}.")
    return CommandResult(process.returncode, stdout, stderr, success=success)
