"""Subprocess scraper for Slurm command-line tools.

Runs one fixed Slurm command (sinfo, squeue, sacct, ...) and returns its
raw stdout. No parsing happens here; fetchers decode the bytes.
"""

import subprocess
import threading
import time
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


class ScrapeError(Exception):
    """Raised when a Slurm command cannot be run or exits unsuccessfully."""


class SlurmByteScraper(Protocol):
    """Anything that produces the raw output of one Slurm command."""

    def fetch_raw_bytes(self) -> bytes: ...

    def duration(self) -> float: ...


class CliScraper:
    """Scraper bound to a single command-and-arguments vector.

    The command runs with a timeout and is never retried. Wall time of the
    most recent invocation is kept for self-instrumentation.
    """

    def __init__(self, *args: str, timeout: float = DEFAULT_TIMEOUT):
        """Initialize the scraper.

        Args:
            *args: Program name followed by its flags.
            timeout: Seconds before the command is killed.

        Raises:
            ValueError: If no command is given or timeout is not positive.
        """
        if not args:
            msg = "command cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.args = list(args)
        self._timeout = timeout
        self._lock = threading.Lock()
        self._duration = 0.0

    def __repr__(self) -> str:
        return f"CliScraper({' '.join(self.args)!r})"

    def fetch_raw_bytes(self) -> bytes:
        """Run the command and return its stdout.

        Returns:
            Raw bytes written to stdout.

        Raises:
            ScrapeError: If the executable is missing or cannot be run,
                exits non-zero or times out.
        """
        start = time.monotonic()
        try:
            result = subprocess.run(
                self.args,
                capture_output=True,
                timeout=self._timeout,
                check=True,
            )
        except FileNotFoundError as e:
            msg = f"could not find executable {self.args[0]!r}"
            raise ScrapeError(msg) from e
        except OSError as e:
            msg = f"could not run {self.args[0]!r}: {e.strerror or e}"
            raise ScrapeError(msg) from e
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
            msg = f"{self.args[0]} exited with status {e.returncode}: {stderr}"
            raise ScrapeError(msg) from e
        except subprocess.TimeoutExpired as e:
            msg = f"{self.args[0]} timed out after {self._timeout}s"
            raise ScrapeError(msg) from e
        finally:
            elapsed = time.monotonic() - start
            with self._lock:
                self._duration = elapsed
            logger.debug(
                "Command finished",
                command=" ".join(self.args),
                duration_seconds=round(elapsed, 3),
            )
        return result.stdout

    def duration(self) -> float:
        """Wall time in seconds of the most recent invocation."""
        with self._lock:
            return self._duration
