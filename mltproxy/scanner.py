"""
Graph Scanner - find every producer of a media graph that still needs a proxy.
"""

from typing import Callable, Dict, List, Set

from .models import Node, NodeKind


class GraphVisitor:
    """
    Depth-first walk over a media graph.

    Dispatch is a table keyed by NodeKind; subclasses override the ``visit_*``
    hooks they care about. Children and attached filters are always walked.
    """

    def __init__(self):
        self._handlers: Dict[NodeKind, Callable[[Node], None]] = {
            NodeKind.PRODUCER: self.visit_producer,
            NodeKind.PLAYLIST: self.visit_playlist,
            NodeKind.TRACTOR: self.visit_tractor,
            NodeKind.MULTITRACK: self.visit_multitrack,
            NodeKind.TRACK: self.visit_track,
            NodeKind.FILTER: self.visit_filter,
            NodeKind.TRANSITION: self.visit_transition,
        }

    def start(self, node: Node) -> None:
        self._visit(node, set())

    def _visit(self, node: Node, path: Set[int]) -> None:
        # a service referenced from two tracks is visited twice, but never
        # while it is already on the current path
        if id(node) in path:
            return
        path.add(id(node))
        self._handlers[node.kind](node)
        for child in node.children:
            self._visit(child, path)
        for attached in node.filters:
            self._visit(attached, path)
        path.discard(id(node))

    def visit_producer(self, node: Node) -> None:
        pass

    def visit_playlist(self, node: Node) -> None:
        pass

    def visit_tractor(self, node: Node) -> None:
        pass

    def visit_multitrack(self, node: Node) -> None:
        pass

    def visit_track(self, node: Node) -> None:
        pass

    def visit_filter(self, node: Node) -> None:
        pass

    def visit_transition(self, node: Node) -> None:
        pass


class NonProxyProducerFinder(GraphVisitor):
    """Collect producers whose underlying producer is not tagged as a proxy."""

    def __init__(self):
        super().__init__()
        self.producers: List[Node] = []
        self._seen: Set[int] = set()

    def visit_producer(self, node: Node) -> None:
        producer = node.parent_producer()
        if producer.is_proxy or id(producer) in self._seen:
            return
        self._seen.add(id(producer))
        self.producers.append(producer)


def find_non_proxy_producers(root: Node) -> List[Node]:
    """Return each distinct non-proxy producer reachable from `root`, in walk order."""
    finder = NonProxyProducerFinder()
    finder.start(root)
    return finder.producers
