"""Subprocess execution service for LXCUpgrader."""

import shlex
import shutil
import subprocess
import time
from typing import Callable, List, Optional

from lxcupgrader.errors import UpgraderError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    @staticmethod
    def which(name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = shlex.join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
                input=input,
            )
        except FileNotFoundError as exc:
            raise UpgraderError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise UpgraderError(
                f"Command timed out after {effective_timeout}s: {cmd_str}"
            ) from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise UpgraderError(message)

        self.logger.debug(message)
        return result

    def stream(
        self,
        cmd: List[str],
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
    ) -> int:
        """Run a long command, feeding each output line to ``on_line``.

        stderr is merged into stdout. Returns the exit code; a timeout
        terminates the process and returns 124, like coreutils ``timeout``.
        """
        cmd_str = shlex.join(cmd)
        self.logger.debug("Streaming: %s", cmd_str)
        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise UpgraderError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if not process.stdout:
            raise UpgraderError(f"Command did not expose output: {cmd_str}")

        start = time.monotonic()
        for line in process.stdout:
            if effective_timeout and (time.monotonic() - start) > effective_timeout:
                process.terminate()
                try:
                    process.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    process.kill()
                self.logger.error("Command exceeded timeout of %.1fs: %s", effective_timeout, cmd_str)
                return 124

            cleaned = line.rstrip()
            if cleaned:
                on_line(cleaned)

        return process.wait()
