"""
Data models for MLT proxy caching.

Provides a small Python interface for the parts of an MLT media graph the
proxy cache works with: key/value service metadata, producers, playlists,
tractors, and the records passed between the cache, the descriptor builder
and the job subsystem.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

# ============================================================================
# PROPERTY KEYS
# ============================================================================

PROXY_PROPERTY = 'shotcut:proxy'
ORIGINAL_RESOURCE_PROPERTY = 'shotcut:resource'
DISABLE_PROXY_PROPERTY = 'shotcut:disableProxy'
SEQUENCE_PROPERTY = 'shotcut:sequence'
HASH_PROPERTY = 'shotcut:hash'

TIMEWARP_SERVICE = 'timewarp'
IMAGE_SERVICES = ('qimage', 'pixbuf')


# ============================================================================
# ENUMS
# ============================================================================

class MediaKind(Enum):
    """Kinds of media a proxy can be generated for."""
    VIDEO = "video"
    IMAGE = "image"

    @property
    def ready_suffix(self) -> str:
        return '.mp4' if self == MediaKind.VIDEO else '.jpg'

    @property
    def pending_suffix(self) -> str:
        return '.pending' + self.ready_suffix

    @classmethod
    def from_string(cls, value: str) -> 'MediaKind':
        """Convert a string to MediaKind, accepting names and values."""
        if not isinstance(value, str):
            raise TypeError(f"Expected str, got {type(value).__name__}")
        lowered = value.strip().lower()
        try:
            return cls(lowered)
        except ValueError:
            raise ValueError(
                f"Invalid media kind: '{value}'. "
                f"Valid kinds: {', '.join(k.value for k in cls)}"
            )


class ProxyState(Enum):
    """Cache state of a proxy for one clip identity."""
    ABSENT = "absent"
    PENDING = "pending"
    READY = "ready"


class ScanMode(Enum):
    """Field order of the source video."""
    AUTOMATIC = "automatic"
    PROGRESSIVE = "progressive"
    INTERLACED_TOP_FIELD_FIRST = "tff"
    INTERLACED_BOTTOM_FIELD_FIRST = "bff"


class NodeKind(Enum):
    """Service kinds of an MLT media graph."""
    PRODUCER = "producer"
    PLAYLIST = "playlist"
    TRACTOR = "tractor"
    MULTITRACK = "multitrack"
    TRACK = "track"
    FILTER = "filter"
    TRANSITION = "transition"


# ============================================================================
# SERVICE METADATA
# ============================================================================

class Properties:
    """
    Ordered key/value metadata of an MLT service.

    Values are stored as text, like MLT does; the typed getters parse on read
    and fall back to zero for missing or malformed values.

    Examples:
        props = Properties({'mlt_service': 'avformat'})
        props.set('shotcut:proxy', 1)
        props.get_int('shotcut:proxy')  # -> 1
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, str] = {}
        for name, value in (values or {}).items():
            self.set(name, value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(name, default)

    def get_int(self, name: str) -> int:
        value = self._values.get(name)
        if not value:
            return 0
        try:
            return int(value)
        except ValueError:
            try:
                return int(float(value))
            except ValueError:
                return 0

    def get_double(self, name: str) -> float:
        value = self._values.get(name)
        if not value:
            return 0.0
        try:
            return float(value)
        except ValueError:
            return 0.0

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value if isinstance(value, str) else str(value)

    def has(self, name: str) -> bool:
        return name in self._values

    def items(self) -> List[Tuple[str, str]]:
        return list(self._values.items())

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Properties({self._values!r})"


# ============================================================================
# MEDIA GRAPH
# ============================================================================

@dataclass(eq=False)
class Node:
    """
    One service in an MLT media graph.

    A playlist entry is a PRODUCER node whose `parent` is the producer it
    cuts from; a top-level producer is its own parent.
    """
    kind: NodeKind
    id: str = ""
    properties: Properties = field(default_factory=Properties)
    children: List['Node'] = field(default_factory=list)
    filters: List['Node'] = field(default_factory=list)
    parent: Optional['Node'] = None

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.properties.get(name, default)

    def get_int(self, name: str) -> int:
        return self.properties.get_int(name)

    def get_double(self, name: str) -> float:
        return self.properties.get_double(name)

    def set(self, name: str, value: Any) -> None:
        self.properties.set(name, value)

    @property
    def service(self) -> str:
        return self.properties.get('mlt_service', '') or ''

    @property
    def is_proxy(self) -> bool:
        return bool(self.get_int(PROXY_PROPERTY))

    def parent_producer(self) -> 'Node':
        """Return the producer this node cuts from (itself if not a cut)."""
        return self.parent if self.parent is not None else self


# Producers are the only graph leaves carrying media
Clip = Node


def make_clip(properties: Optional[Dict[str, Any]] = None, clip_id: str = "") -> Clip:
    """Create a standalone producer node from a metadata dict."""
    return Node(kind=NodeKind.PRODUCER, id=clip_id, properties=Properties(properties))


@dataclass
class MediaGraph:
    """A parsed MLT document: all top-level services and the root service."""
    services: Dict[str, Node] = field(default_factory=dict)
    root: Optional[Node] = None
    profile: Dict[str, str] = field(default_factory=dict)
    document_root: str = ""

    def producers(self) -> Iterator[Node]:
        for node in self.services.values():
            if node.kind == NodeKind.PRODUCER:
                yield node


# ============================================================================
# CACHE RECORDS
# ============================================================================

@dataclass(frozen=True)
class ProxyRecord:
    """Derived view of the cache for one clip identity and media kind."""
    state: ProxyState
    ready_path: Path
    pending_path: Path

    @property
    def path(self) -> Path:
        """The file matching the current state (ready path when absent)."""
        return self.pending_path if self.state == ProxyState.PENDING else self.ready_path


@dataclass(frozen=True)
class JobOutcome:
    """Result reported by the job subsystem when a derivation job ends."""
    success: bool
    returncode: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class DerivationRequest:
    """
    An opaque unit of work describing how to produce one proxy.

    `program` names the tool that runs `args` (``ffmpeg`` for video,
    ``melt`` for still images). `completion_action` is invoked once by the
    job subsystem after the job ends.
    """
    resource: str
    args: Tuple[str, ...]
    output_path: Path
    label: str
    completion_action: Any
    program: str = "ffmpeg"

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]
