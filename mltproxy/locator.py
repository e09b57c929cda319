"""
Cache Locator - find proxy files for a clip identity.

Proxies live either in the project's ``proxies`` subfolder or in the global
proxy folder, named ``<identity><suffix>``. A zero-length ``.pending`` file
marks a proxy whose generation has started; it is the only cross-process
lock, since several editor sessions may share one proxy folder.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from .config import ProxySettings
from .models import (
    DISABLE_PROXY_PROPERTY,
    IMAGE_SERVICES,
    SEQUENCE_PROPERTY,
    Clip,
    MediaKind,
    ProxyRecord,
    ProxyState,
)

logger = logging.getLogger(__name__)

PROXY_SUBFOLDER = 'proxies'
FALLBACK_RESOLUTION = 540
RESOLUTION_RATIO = 1.3

PathLike = Union[str, Path]


def resolution(settings: ProxySettings) -> int:
    """Target proxy height: the preview scale, or 540 when unset."""
    return settings.preview_scale if settings.preview_scale else FALLBACK_RESOLUTION


def size_threshold(settings: ProxySettings) -> int:
    """Both source dimensions must exceed this for automatic generation."""
    return round_half_up(RESOLUTION_RATIO * resolution(settings))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if value < 0:
        return -int(-value + 0.5)
    return int(value + 0.5)


# ============================================================================
# ELIGIBILITY
# ============================================================================

def is_valid_image(clip: Clip) -> bool:
    """A still image decoded by an image service, not a generated sequence."""
    return clip.service in IMAGE_SERVICES and not clip.get_int(SEQUENCE_PROPERTY)


def media_kind(clip: Clip) -> Optional[MediaKind]:
    """Return the proxy media kind for a clip, or None if it cannot have one."""
    if clip.service.startswith('avformat'):
        return MediaKind.VIDEO
    if is_valid_image(clip):
        return MediaKind.IMAGE
    return None


def is_candidate(clip: Clip, settings: ProxySettings) -> bool:
    """Whether a clip may get a proxy at all.

    Proxies are never generated for clips that already are proxies or that
    were explicitly excluded, nor when the feature is switched off.
    """
    if not settings.enabled:
        return False
    if clip.is_proxy or clip.get_int(DISABLE_PROXY_PROPERTY):
        return False
    return media_kind(clip) is not None


# ============================================================================
# DIRECTORIES
# ============================================================================

def project_proxy_dir(project_folder: Optional[PathLike]) -> Optional[Path]:
    """The ``proxies`` folder of a project, or None without a project folder."""
    if not project_folder:
        return None
    return Path(project_folder) / PROXY_SUBFOLDER


def proxy_dir(settings: ProxySettings, project_folder: Optional[PathLike] = None) -> Path:
    """Folder new proxies are written to.

    Uses ``<project folder>/proxies`` (created on demand) when the project
    folder exists and the settings ask for it, otherwise the global folder.
    """
    project_dir = project_proxy_dir(project_folder)
    if project_dir is not None and settings.use_project_folder and project_dir.parent.is_dir():
        try:
            project_dir.mkdir(exist_ok=True)
            return project_dir
        except OSError as e:
            logger.warning("Cannot create project proxy folder %s: %s", project_dir, e)
    folder = settings.folder_path
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def _candidate_dirs(settings: ProxySettings, project_folder: Optional[PathLike]):
    project_dir = project_proxy_dir(project_folder)
    if project_dir is not None:
        yield project_dir
    yield settings.folder_path


# ============================================================================
# LOOKUP
# ============================================================================

def locate(
    identity: str,
    kind: MediaKind,
    settings: ProxySettings,
    project_folder: Optional[PathLike] = None,
) -> ProxyRecord:
    """
    Report whether a proxy is absent, pending or ready.

    Args:
        identity: Clip identity (content hash) used as the file stem
        kind: Media kind, selecting the file suffixes
        settings: Proxy settings snapshot
        project_folder: Folder of the open project, if any

    Returns:
        ProxyRecord. READY wins over PENDING, and the project folder wins
        over the global folder. For an ABSENT proxy both paths point into
        the folder new proxies are written to.
    """
    ready_name = identity + kind.ready_suffix
    pending_name = identity + kind.pending_suffix
    dirs = list(_candidate_dirs(settings, project_folder))

    for folder in dirs:
        ready = folder / ready_name
        if ready.is_file():
            return ProxyRecord(ProxyState.READY, ready, folder / pending_name)

    for folder in dirs:
        pending = folder / pending_name
        if pending.is_file():
            return ProxyRecord(ProxyState.PENDING, folder / ready_name, pending)

    target = proxy_dir(settings, project_folder)
    return ProxyRecord(ProxyState.ABSENT, target / ready_name, target / pending_name)


def pending_to_ready(pending_path: PathLike) -> Path:
    """Map ``<id>.pending.<ext>`` to ``<id>.<ext>`` in the same folder."""
    path = Path(pending_path)
    name = path.name
    for kind in MediaKind:
        if name.endswith(kind.pending_suffix):
            return path.with_name(name[:-len(kind.pending_suffix)] + kind.ready_suffix)
    raise ValueError(f"Not a pending proxy file name: {name}")


# ============================================================================
# PENDING MARKERS
# ============================================================================

def touch_pending(pending_path: PathLike) -> bool:
    """Create (or truncate) the zero-length marker that flips Absent to Pending.

    Returns False when the marker cannot be written.
    """
    path = Path(pending_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb'):
            pass
    except OSError as e:
        logger.error("Cannot create pending proxy marker %s: %s", path, e)
        return False
    return True


def clear_pending(record: ProxyRecord) -> bool:
    """Delete a stale pending marker so the proxy can be generated again.

    Stale markers are never removed automatically; this is the maintenance
    operation for a generation that failed or was abandoned.
    """
    if record.state != ProxyState.PENDING:
        return False
    try:
        record.pending_path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Cleared pending proxy marker %s", record.pending_path)
    return True
