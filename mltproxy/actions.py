"""
Post-Completion Resolver - what happens after a proxy job ends.

The job subsystem calls ``on_complete`` once per finished request.
FinalizeAction only promotes the pending file; ReplaceAction also retargets
the live clips to the new proxy. A missing pending file (failed or repeated
completion) is reported as failure and nothing is changed.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .locator import pending_to_ready
from .models import ORIGINAL_RESOURCE_PROPERTY, PROXY_PROPERTY, Clip, JobOutcome

logger = logging.getLogger(__name__)


def promote_pending(pending_path: Union[str, Path]) -> Optional[Path]:
    """Rename ``<id>.pending.<ext>`` to ``<id>.<ext>``.

    Returns the ready path, or None when the name is not a pending name,
    the pending file is gone or the rename fails.
    """
    pending = Path(pending_path)
    try:
        ready = pending_to_ready(pending)
    except ValueError as e:
        logger.warning("%s", e)
        return None
    if not pending.is_file():
        logger.warning("Pending proxy file missing: %s", pending)
        return None
    try:
        os.replace(pending, ready)
    except OSError as e:
        logger.warning("Cannot promote proxy %s: %s", pending, e)
        return None
    logger.info("Proxy ready: %s", ready)
    return ready


class CompletionAction(ABC):
    """Strategy invoked by the job subsystem when a proxy job ends."""

    def __init__(self, pending_path: Union[str, Path]):
        self.pending_path = Path(pending_path)
        self.ready_path: Optional[Path] = None

    @abstractmethod
    def on_complete(self, outcome: JobOutcome) -> bool:
        """Resolve the job; return True if the proxy is now ready."""

    def _promote(self, outcome: JobOutcome) -> Optional[Path]:
        if not outcome.success:
            logger.warning("Proxy job for %s failed (%s): %s",
                           self.pending_path, outcome.returncode, outcome.message)
            return None
        self.ready_path = promote_pending(self.pending_path)
        return self.ready_path


class FinalizeAction(CompletionAction):
    """Promote the pending file; no clip is touched."""

    def on_complete(self, outcome: JobOutcome) -> bool:
        return self._promote(outcome) is not None

    def __repr__(self) -> str:
        return f"FinalizeAction({str(self.pending_path)!r})"


class ReplaceAction(CompletionAction):
    """
    Promote the pending file, then switch the live clips to the proxy.

    Each clip is tagged as a proxy, its original resource is stashed under
    ``shotcut:resource`` and its ``resource`` points at the ready file.
    """

    def __init__(
        self,
        original_resource: str,
        pending_path: Union[str, Path],
        identity: str,
        clips: Sequence[Clip] = (),
    ):
        super().__init__(pending_path)
        self.original_resource = original_resource
        self.identity = identity
        self.clips: List[Clip] = list(clips)

    def on_complete(self, outcome: JobOutcome) -> bool:
        ready = self._promote(outcome)
        if ready is None:
            return False
        for clip in self.clips:
            clip.set(PROXY_PROPERTY, 1)
            clip.set(ORIGINAL_RESOURCE_PROPERTY, self.original_resource)
            clip.set('resource', str(ready))
        logger.info("Switched %d clip(s) of %s to proxy %s",
                    len(self.clips), self.identity, ready)
        return True

    def __repr__(self) -> str:
        return f"ReplaceAction({self.identity!r}, {str(self.pending_path)!r})"
