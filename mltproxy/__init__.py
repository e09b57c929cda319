"""
MLTPROXY - Python library for proxy media of MLT (Shotcut, melt) projects.

This package provides tools to:
- Find existing or pending proxy files for a clip in a content-addressed cache
- Build the ffmpeg/melt commands that generate video and still-image proxies
- Promote finished proxies and switch live clips over to them
- Rewrite saved MLT projects so proxy resources point back at the originals
- Scan a project's media graph for clips that still need proxies
"""

from .actions import CompletionAction, FinalizeAction, ReplaceAction, promote_pending
from .config import ProxySettings
from .descriptor import (
    build_image_args,
    build_video_args,
    make_image_request,
    make_video_request,
)
from .errors import DocumentRewriteError, ProxyError, ToolNotFoundError
from .jobs import JobQueue, SubprocessJobQueue
from .locator import clear_pending, locate, media_kind, proxy_dir, resolution
from .manager import ProxyManager, original_resource, stored_identity
from .models import (
    Clip,
    DerivationRequest,
    JobOutcome,
    MediaGraph,
    # Enums
    MediaKind,
    Node,
    NodeKind,
    Properties,
    ProxyRecord,
    ProxyState,
    ScanMode,
)
from .parser import MLTParser, parse_mlt
from .rewriter import rewrite_document, rewrite_stream, rewrite_string
from .scanner import GraphVisitor, find_non_proxy_producers

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",

    # Enums
    "MediaKind",
    "ProxyState",
    "ScanMode",
    "NodeKind",

    # Models
    "Properties",
    "Node",
    "Clip",
    "MediaGraph",
    "ProxyRecord",
    "DerivationRequest",
    "JobOutcome",

    # Config & errors
    "ProxySettings",
    "ProxyError",
    "DocumentRewriteError",
    "ToolNotFoundError",

    # Cache
    "locate",
    "media_kind",
    "proxy_dir",
    "resolution",
    "clear_pending",

    # Descriptors
    "build_video_args",
    "build_image_args",
    "make_video_request",
    "make_image_request",

    # Completion
    "CompletionAction",
    "FinalizeAction",
    "ReplaceAction",
    "promote_pending",

    # Jobs
    "JobQueue",
    "SubprocessJobQueue",

    # Documents & graph
    "MLTParser",
    "parse_mlt",
    "rewrite_document",
    "rewrite_stream",
    "rewrite_string",
    "GraphVisitor",
    "find_non_proxy_producers",

    # Manager
    "ProxyManager",
    "original_resource",
    "stored_identity",
]
