"""
Process runner for the external database tools.

Runs one command per call as an argument list (never through a shell),
streams stdout/stderr line by line to an observer, keeps a capped copy of
each stream, and makes sure the child is gone before returning.
"""

import os
import subprocess
import threading
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# 500MB, same ceiling the restore tool gets by default
DEFAULT_MAX_OUTPUT_BYTES = 500 * 1024 * 1024

POLL_INTERVAL = 0.1


class ProcessError(Exception):
    """Raised when a command fails to launch or exits non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class TimeoutExceeded(ProcessError):
    """Raised when a command runs past its timeout and is killed."""

    def __init__(self, message: str, timeout: float, stderr: str = ''):
        super().__init__(message, exit_code=None, stderr=stderr)
        self.timeout = timeout


class PipelineCancelled(Exception):
    """Raised when a cooperative cancellation interrupts a run."""
    pass


@dataclass
class ExecutionResult:
    """Outcome of a successful command."""

    exit_code: int
    stdout: str
    stderr: str
    truncated: bool = False


class _StreamCollector:
    """Drains one pipe on a background thread."""

    def __init__(self, name: str, pipe, max_bytes: int, on_output: Optional[Callable[[str, str], None]]):
        self.name = name
        self.pipe = pipe
        self.max_bytes = max_bytes
        self.on_output = on_output
        self.chunks: List[str] = []
        self.size = 0
        self.truncated = False
        self.thread = threading.Thread(target=self._drain, daemon=True)

    def start(self):
        self.thread.start()

    def join(self, timeout: Optional[float] = None):
        self.thread.join(timeout)

    def text(self) -> str:
        return ''.join(self.chunks)

    def _drain(self):
        try:
            for line in iter(self.pipe.readline, ''):
                if self.on_output:
                    try:
                        self.on_output(self.name, line.rstrip('\n'))
                    except Exception as e:
                        logger.debug(f"Output observer failed on {self.name}: {e}")
                self._keep(line)
        except ValueError:
            # pipe closed underneath us after a kill
            pass
        finally:
            try:
                self.pipe.close()
            except OSError:
                pass

    def _keep(self, line: str):
        remaining = self.max_bytes - self.size
        if remaining <= 0:
            self.truncated = True
            return
        encoded = line.encode('utf-8', errors='replace')
        if len(encoded) > remaining:
            line = encoded[:remaining].decode('utf-8', errors='ignore')
            self.truncated = True
            encoded = line.encode('utf-8')
        self.chunks.append(line)
        self.size += len(encoded)


class ProcessRunner:
    """
    Runs external commands with a custom environment and a timeout.

    Secrets such as the database password must be passed through ``env``;
    they are overlaid on the current process environment and never placed
    on the command line.
    """

    def __init__(self, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES, poll_interval: float = POLL_INTERVAL):
        self.max_output_bytes = max_output_bytes
        self.poll_interval = poll_interval

    def run(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_output_bytes: Optional[int] = None,
        on_output: Optional[Callable[[str, str], None]] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> ExecutionResult:
        """
        Run a command to completion.

        Args:
            command: Program and arguments
            env: Extra environment variables for the child
            timeout: Seconds before the child is killed (None = no limit)
            max_output_bytes: Cap for each captured stream
            on_output: Called with (stream_name, line) for every output line
            cancellation_check: Called while waiting; raises PipelineCancelled to abort

        Returns:
            ExecutionResult for a zero exit code

        Raises:
            ProcessError: If the command cannot be launched or exits non-zero
            TimeoutExceeded: If the command runs past ``timeout``
            PipelineCancelled: If ``cancellation_check`` aborts the wait
        """
        if not command:
            raise ValueError("Command must not be empty")

        cap = max_output_bytes if max_output_bytes is not None else self.max_output_bytes
        child_env = dict(os.environ)
        if env:
            child_env.update(env)

        program = command[0]

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                env=child_env,
                text=True,
                errors='replace'
            )
        except OSError as e:
            raise ProcessError(f"Failed to launch {program}: {e}", exit_code=None, stderr=str(e)) from e

        stdout = _StreamCollector('stdout', process.stdout, cap, on_output)
        stderr = _StreamCollector('stderr', process.stderr, cap, on_output)
        stdout.start()
        stderr.start()

        started = time.monotonic()

        try:
            while process.poll() is None:
                if cancellation_check:
                    cancellation_check()

                if timeout is not None and time.monotonic() - started > timeout:
                    self._kill(process)
                    stdout.join(1)
                    stderr.join(1)
                    raise TimeoutExceeded(
                        f"{program} timed out after {timeout}s",
                        timeout=timeout,
                        stderr=stderr.text()
                    )

                time.sleep(self.poll_interval)
        finally:
            if process.poll() is None:
                self._kill(process)

        stdout.join()
        stderr.join()

        exit_code = process.returncode
        if exit_code != 0:
            raise ProcessError(
                f"{program} exited with code {exit_code}",
                exit_code=exit_code,
                stderr=stderr.text()
            )

        return ExecutionResult(
            exit_code=exit_code,
            stdout=stdout.text(),
            stderr=stderr.text(),
            truncated=stdout.truncated or stderr.truncated
        )

    @staticmethod
    def _kill(process: subprocess.Popen):
        """Kill and reap a child process."""
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} did not exit after kill")
