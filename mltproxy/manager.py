"""
Proxy Manager - decide, schedule and apply proxies for clips.

Ties the locator, the descriptor builder, the completion actions and the
scanner together for one project:

    manager = ProxyManager(ProxySettings.from_env(), SubprocessJobQueue(),
                           project_folder="/videos/my-project")
    graph = parse_mlt("/videos/my-project/edit.mlt")
    manager.generate_if_not_exists_all(graph.root)

Clip identities come from an injected `identify` callable; by default the
hash stored on the clip (``shotcut:hash``) is used.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .config import ProxySettings
from .descriptor import is_full_range, make_image_request, make_video_request
from .jobs import JobQueue
from .locator import (
    is_candidate,
    locate,
    media_kind,
    proxy_dir,
    resolution,
    size_threshold,
)
from .models import (
    HASH_PROPERTY,
    ORIGINAL_RESOURCE_PROPERTY,
    PROXY_PROPERTY,
    TIMEWARP_SERVICE,
    Clip,
    DerivationRequest,
    MediaKind,
    Node,
    ProxyRecord,
    ProxyState,
    ScanMode,
)
from .rewriter import rewrite_document
from .scanner import find_non_proxy_producers

logger = logging.getLogger(__name__)

Identify = Callable[[Clip], Optional[str]]


def stored_identity(clip: Clip) -> Optional[str]:
    """Read the identity hash already stored on a clip."""
    return clip.get(HASH_PROPERTY) or None


def original_resource(clip: Clip) -> str:
    """The media a clip really refers to, looking through proxies and timewarp."""
    resource = clip.get('resource', '') or ''
    if clip.is_proxy and clip.get(ORIGINAL_RESOURCE_PROPERTY):
        resource = clip.get(ORIGINAL_RESOURCE_PROPERTY)
    elif clip.service == TIMEWARP_SERVICE:
        resource = clip.get('warp_resource', '') or ''
    return resource


class ProxyManager:
    """Proxy operations for the clips of one project."""

    def __init__(
        self,
        settings: ProxySettings,
        queue: JobQueue,
        project_folder: Optional[Union[str, Path]] = None,
        identify: Identify = stored_identity,
    ):
        self.settings = settings
        self.queue = queue
        self.project_folder = project_folder
        self.identify = identify
        self.submitted: List[DerivationRequest] = []

    def dir(self) -> Path:
        """Folder new proxies are written to."""
        return proxy_dir(self.settings, self.project_folder)

    def resolution(self) -> int:
        return resolution(self.settings)

    resource = staticmethod(original_resource)

    def locate(self, clip: Clip) -> Optional[ProxyRecord]:
        """Cache state of a clip's proxy, or None if it cannot have one."""
        kind = media_kind(clip)
        identity = self.identify(clip)
        if kind is None or not identity:
            return None
        return locate(identity, kind, self.settings, self.project_folder)

    def file_exists(self, clip: Clip) -> bool:
        record = self.locate(clip)
        return record is not None and record.state == ProxyState.READY

    def file_pending(self, clip: Clip) -> bool:
        record = self.locate(clip)
        return record is not None and record.state == ProxyState.PENDING

    # ========================================================================
    # GENERATION
    # ========================================================================

    def _pending_path(self, identity: str, kind: MediaKind) -> Path:
        return self.dir() / (identity + kind.pending_suffix)

    def _submit(self, request: Optional[DerivationRequest]) -> Optional[DerivationRequest]:
        if request is None:
            return None
        self.queue.add(request)
        self.submitted.append(request)
        logger.info("Submitted %s -> %s", request.label, request.output_path)
        return request

    def generate_video_proxy(
        self,
        clip: Clip,
        full_range: bool,
        scan_mode: ScanMode = ScanMode.AUTOMATIC,
        aspect_ratio: Optional[Tuple[int, int]] = None,
        replace: bool = False,
    ) -> Optional[DerivationRequest]:
        """Start making a video proxy, whatever the cache state.

        Returns the submitted request, or None if the clip has no identity
        or the pending marker could not be created.
        """
        identity = self.identify(clip)
        if not identity:
            return None
        request = make_video_request(
            clip, self.resource(clip), identity,
            self._pending_path(identity, MediaKind.VIDEO), self.settings,
            full_range, scan_mode, aspect_ratio, replace)
        return self._submit(request)

    def generate_image_proxy(self, clip: Clip, replace: bool = False) -> Optional[DerivationRequest]:
        """Start making a still-image proxy, whatever the cache state."""
        identity = self.identify(clip)
        if not identity:
            return None
        request = make_image_request(
            clip, self.resource(clip), identity,
            self._pending_path(identity, MediaKind.IMAGE), self.settings, replace)
        return self._submit(request)

    def generate_if_not_exists(self, clip: Clip, replace: bool = True) -> bool:
        """
        Use an existing proxy, or schedule one for a large enough clip.

        Returns:
            True if the clip now points at a ready proxy. Pending, freshly
            scheduled, too small or ineligible clips return False.
        """
        if not is_candidate(clip, self.settings):
            return False
        record = self.locate(clip)
        if record is None:
            return False

        if record.state == ProxyState.READY:
            clip.set(PROXY_PROPERTY, 1)
            clip.set(ORIGINAL_RESOURCE_PROPERTY, clip.get('resource', ''))
            clip.set('resource', str(record.ready_path))
            return True

        if record.state == ProxyState.ABSENT:
            width = clip.get_int('meta.media.width')
            height = clip.get_int('meta.media.height')
            threshold = size_threshold(self.settings)
            logger.debug("%dx%d threshold %d", width, height, threshold)
            if width > threshold and height > threshold:
                if media_kind(clip) == MediaKind.VIDEO:
                    self.generate_video_proxy(clip, is_full_range(clip), ScanMode.AUTOMATIC,
                                              None, replace)
                else:
                    self.generate_image_proxy(clip, replace)
        return False

    def generate_if_not_exists_all(self, root: Node) -> List[Clip]:
        """Schedule proxies for every non-proxy producer under `root`.

        Each discovered producer is tagged as a proxy right away so later
        passes skip it. Returns the discovered producers.
        """
        clips = find_non_proxy_producers(root)
        for clip in clips:
            self.generate_if_not_exists(clip, replace=False)
            clip.set(PROXY_PROPERTY, 1)
        return clips

    # ========================================================================
    # DOCUMENTS
    # ========================================================================

    def filter_xml(self, filepath: Union[str, Path], root: str = "") -> Optional[str]:
        """Rewrite a saved project so it references originals, not proxies."""
        return rewrite_document(filepath, root)
