"""
Job queue boundary for proxy derivation requests.

The proxy cache only submits requests; running them is the queue's job.
SubprocessJobQueue runs ffmpeg/melt in worker threads and calls each
request's completion action exactly once when the process exits.
"""

import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Set

from .errors import ToolNotFoundError
from .models import DerivationRequest, JobOutcome

logger = logging.getLogger(__name__)

# stderr tail kept in a failed outcome's message
_MAX_MESSAGE_CHARS = 2000


class JobQueue(ABC):
    """Accepts derivation requests; submission never blocks."""

    @abstractmethod
    def add(self, request: DerivationRequest) -> None:
        """Queue a request. Its completion action runs once when it ends."""


def resolve_tool(name: str) -> Path:
    """Locate an external tool via ``MLTPROXY_<NAME>_PATH`` or PATH."""
    env_key = f"MLTPROXY_{name.upper()}_PATH"
    from_env = os.getenv(env_key)
    if from_env:
        p = Path(from_env)
        if p.exists():
            return p
    found = shutil.which(name)
    if found:
        return Path(found)
    raise ToolNotFoundError(name, env_key)


class SubprocessJobQueue(JobQueue):
    """
    Run requests as subprocesses on a thread pool.

    Usage:
        queue = SubprocessJobQueue(max_workers=2)
        queue.add(request)
        queue.shutdown()  # waits for running jobs
    """

    def __init__(self, max_workers: int = 1, timeout: Optional[float] = None):
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="mltproxy-job")
        # running or queued jobs only; finished ones drop out
        self.futures: Set[Future] = set()

    def add(self, request: DerivationRequest) -> Future:
        logger.info("Queued: %s", request.label)
        future = self._executor.submit(self._run, request)
        self.futures.add(future)
        future.add_done_callback(self.futures.discard)
        return future

    def _run(self, request: DerivationRequest) -> bool:
        try:
            outcome = self.execute(request)
        except Exception as e:
            logger.exception("Proxy job crashed: %s", request.label)
            outcome = JobOutcome(success=False, message=f"{type(e).__name__}: {e}")
        try:
            return request.completion_action.on_complete(outcome)
        except Exception:
            logger.exception("Completion action failed: %s", request.completion_action)
            return False

    def execute(self, request: DerivationRequest) -> JobOutcome:
        """Run one request and report how it ended."""
        try:
            program = resolve_tool(request.program)
        except ToolNotFoundError as e:
            return JobOutcome(success=False, message=str(e))
        logger.debug("Running %s %s", program, " ".join(request.args))
        try:
            process = subprocess.run(
                [str(program), *request.args],
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return JobOutcome(success=False, message=f"Timed out after {self.timeout}s")
        except OSError as e:
            return JobOutcome(success=False, message=str(e))
        if process.returncode != 0:
            message = (process.stderr or process.stdout or "job failed").strip()
            return JobOutcome(success=False, returncode=process.returncode,
                              message=message[-_MAX_MESSAGE_CHARS:])
        return JobOutcome(success=True, returncode=0)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
