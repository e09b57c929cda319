"""
MLT Parser - Reads MLT XML project files into a media graph.
"""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, Optional

from .models import MediaGraph, Node, NodeKind, Properties
from .safe_xml import safe_fromstring, safe_parse

# Maximum MLT file size (50 MB) against memory exhaustion from crafted files
_MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024

_PRODUCER_TAGS = ('producer', 'chain')
_SERVICE_TAGS = _PRODUCER_TAGS + ('playlist', 'tractor', 'multitrack')


class MLTParser:
    """Parser for MLT XML documents (Shotcut and melt project files)."""

    def __init__(self):
        self.services: Dict[str, Node] = {}

    def parse_file(self, filepath: str) -> MediaGraph:
        """Parse an MLT file and return its media graph.

        Enforces a file size limit to prevent memory exhaustion from
        maliciously large XML files.
        """
        path = Path(filepath)
        file_size = path.stat().st_size
        if file_size > _MAX_FILE_SIZE_BYTES:
            raise ValueError(
                f"MLT file exceeds maximum size "
                f"({file_size / 1024 / 1024:.1f} MB > "
                f"{_MAX_FILE_SIZE_BYTES / 1024 / 1024:.0f} MB limit)"
            )
        tree = safe_parse(str(path))
        return self._parse_mlt(tree.getroot())

    def parse_string(self, xml_string: str) -> MediaGraph:
        """Parse MLT XML from a string."""
        return self._parse_mlt(safe_fromstring(xml_string))

    def _parse_mlt(self, root: ET.Element) -> MediaGraph:
        """Parse the root mlt element."""
        if root.tag != 'mlt':
            raise ValueError(f"Not an MLT document: root element is <{root.tag}>")
        self.services = {}
        graph = MediaGraph(document_root=root.get('root', ''))

        profile = root.find('profile')
        if profile is not None:
            graph.profile = dict(profile.attrib)

        last: Optional[Node] = None
        for elem in root:
            if elem.tag in _SERVICE_TAGS:
                last = self._parse_service(elem)

        # MLT plays the last top-level service; Shotcut's mlt@producer names its bin
        graph.services = dict(self.services)
        graph.root = last
        return graph

    def _parse_service(self, elem: ET.Element) -> Optional[Node]:
        """Parse any service element and register it by id."""
        tag = elem.tag
        if tag in _PRODUCER_TAGS:
            node = self._parse_producer(elem)
        elif tag == 'playlist':
            node = self._parse_playlist(elem)
        elif tag == 'tractor':
            node = self._parse_tractor(elem)
        elif tag == 'multitrack':
            node = self._parse_multitrack(elem)
        else:
            return None
        if node.id:
            self.services[node.id] = node
        return node

    def _parse_properties(self, elem: ET.Element) -> Properties:
        """Collect the direct property children of an element."""
        props = Properties()
        for prop in elem.findall('property'):
            name = prop.get('name')
            if name:
                props.set(name, prop.text or '')
        return props

    def _parse_filters(self, elem: ET.Element, node: Node) -> None:
        for filter_elem in elem.findall('filter'):
            node.filters.append(Node(
                kind=NodeKind.FILTER, id=filter_elem.get('id', ''),
                properties=self._parse_properties(filter_elem)))

    def _parse_producer(self, elem: ET.Element) -> Node:
        """Parse a producer or chain element."""
        node = Node(kind=NodeKind.PRODUCER, id=elem.get('id', ''),
                    properties=self._parse_properties(elem))
        self._parse_filters(elem, node)
        return node

    def _resolve(self, elem: ET.Element) -> Optional[Node]:
        """Resolve a producer reference, or an inline service definition."""
        ref = elem.get('producer')
        if ref:
            return self.services.get(ref)
        for child in elem:
            if child.tag in _SERVICE_TAGS:
                return self._parse_service(child)
        return None

    def _parse_playlist(self, elem: ET.Element) -> Node:
        """Parse a playlist; each entry becomes a cut of its producer."""
        node = Node(kind=NodeKind.PLAYLIST, id=elem.get('id', ''),
                    properties=self._parse_properties(elem))
        for child in elem:
            if child.tag == 'entry':
                target = self._resolve(child)
                if target is None:
                    continue
                if target.kind != NodeKind.PRODUCER:
                    node.children.append(target)
                    continue
                cut = Node(kind=NodeKind.PRODUCER, properties=self._parse_properties(child),
                           parent=target.parent_producer())
                for attr in ('in', 'out'):
                    if child.get(attr) is not None:
                        cut.set(attr, child.get(attr))
                self._parse_filters(child, cut)
                node.children.append(cut)
            elif child.tag in _SERVICE_TAGS:
                nested = self._parse_service(child)
                if nested is not None:
                    node.children.append(nested)
        self._parse_filters(elem, node)
        return node

    def _parse_tracks(self, elem: ET.Element, node: Node) -> None:
        for child in elem:
            if child.tag == 'track':
                track = Node(kind=NodeKind.TRACK, properties=self._parse_properties(child))
                target = self._resolve(child)
                if target is not None:
                    track.children.append(target)
                node.children.append(track)
            elif child.tag == 'multitrack':
                multitrack = self._parse_service(child)
                if multitrack is not None:
                    node.children.append(multitrack)
            elif child.tag == 'transition':
                node.children.append(Node(
                    kind=NodeKind.TRANSITION, id=child.get('id', ''),
                    properties=self._parse_properties(child)))

    def _parse_tractor(self, elem: ET.Element) -> Node:
        """Parse a tractor: tracks (direct or in a multitrack), transitions, filters."""
        node = Node(kind=NodeKind.TRACTOR, id=elem.get('id', ''),
                    properties=self._parse_properties(elem))
        self._parse_tracks(elem, node)
        self._parse_filters(elem, node)
        return node

    def _parse_multitrack(self, elem: ET.Element) -> Node:
        node = Node(kind=NodeKind.MULTITRACK, id=elem.get('id', ''),
                    properties=self._parse_properties(elem))
        self._parse_tracks(elem, node)
        return node


def parse_mlt(filepath: str) -> MediaGraph:
    """Convenience function to parse an MLT file."""
    return MLTParser().parse_file(filepath)
