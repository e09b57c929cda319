"""
Document Rewriter - swap proxy resources back to originals in MLT XML.

A saved project must not reference proxy files. The rewriter streams the
document once: ``property`` elements are buffered per enclosing service,
because whether a ``resource`` is a proxy depends on sibling properties
that may come later. The buffer is flushed (and rewritten if the service
is a proxy) at the next non-property start or end tag. Everything else is
written through as it is read.

The event reader and writer are independent of the transform, so the
property filter can be driven from any event source.
"""

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, TextIO, Tuple, Union
from xml.sax import SAXParseException
from xml.sax.handler import ContentHandler, property_lexical_handler
from xml.sax.saxutils import escape

from .errors import DocumentRewriteError
from .models import ORIGINAL_RESOURCE_PROPERTY, PROXY_PROPERTY, TIMEWARP_SERVICE
from .safe_xml import DefusedXmlException, safe_make_parser

logger = logging.getLogger(__name__)

PROPERTY_ELEMENT = 'property'
TEMP_PREFIX = 'mltproxy-'
TEMP_SUFFIX = '.mlt'

_CHUNK_SIZE = 64 * 1024
_ATTR_ENTITIES = {'"': '&quot;', '\n': '&#10;', '\r': '&#13;', '\t': '&#9;'}


# ============================================================================
# EVENTS
# ============================================================================

class EventKind(Enum):
    """Kinds of document events."""
    START_DOCUMENT = "start_document"
    END_DOCUMENT = "end_document"
    DOCTYPE = "doctype"
    START_ELEMENT = "start_element"
    END_ELEMENT = "end_element"
    CHARACTERS = "characters"
    COMMENT = "comment"
    PROCESSING_INSTRUCTION = "processing_instruction"
    START_CDATA = "start_cdata"
    END_CDATA = "end_cdata"


@dataclass(frozen=True)
class Event:
    """
    One document event.

    `name` is the element name, PI target or DOCTYPE name; `text` carries
    character data, comment text or PI data; `attributes` keeps document
    order. DOCTYPE events carry (public id, system id) in `ids`.
    """
    kind: EventKind
    name: str = ""
    text: str = ""
    attributes: Tuple[Tuple[str, str], ...] = ()
    ids: Tuple[Optional[str], Optional[str]] = (None, None)


@dataclass(frozen=True)
class PropertyRecord:
    """A buffered ``<property name="...">value</property>`` element."""
    name: str
    value: str


class _EventCollector(ContentHandler):
    """SAX content and lexical handler that queues events for the reader."""

    def __init__(self):
        super().__init__()
        self.events: List[Event] = []

    def drain(self) -> List[Event]:
        events, self.events = self.events, []
        return events

    # ContentHandler
    def startDocument(self):
        self.events.append(Event(EventKind.START_DOCUMENT))

    def endDocument(self):
        self.events.append(Event(EventKind.END_DOCUMENT))

    def startElement(self, name, attrs):
        self.events.append(Event(EventKind.START_ELEMENT, name=name,
                                 attributes=tuple(attrs.items())))

    def endElement(self, name):
        self.events.append(Event(EventKind.END_ELEMENT, name=name))

    def characters(self, content):
        self.events.append(Event(EventKind.CHARACTERS, text=content))

    def ignorableWhitespace(self, whitespace):
        self.events.append(Event(EventKind.CHARACTERS, text=whitespace))

    def processingInstruction(self, target, data):
        self.events.append(Event(EventKind.PROCESSING_INSTRUCTION, name=target, text=data or ""))

    # LexicalHandler
    def comment(self, content):
        self.events.append(Event(EventKind.COMMENT, text=content))

    def startDTD(self, name, public_id, system_id):
        self.events.append(Event(EventKind.DOCTYPE, name=name, ids=(public_id, system_id)))

    def endDTD(self):
        pass

    def startCDATA(self):
        self.events.append(Event(EventKind.START_CDATA))

    def endCDATA(self):
        self.events.append(Event(EventKind.END_CDATA))


def read_events(source: BinaryIO, chunk_size: int = _CHUNK_SIZE) -> Iterator[Event]:
    """Pull events from a binary XML stream.

    Raises:
        SAXParseException: Malformed XML
        DefusedXmlException: Forbidden entity declarations or external references
    """
    parser = safe_make_parser()
    collector = _EventCollector()
    parser.setContentHandler(collector)
    parser.setProperty(property_lexical_handler, collector)
    fed = False
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        parser.feed(chunk)
        fed = True
        yield from collector.drain()
    if not fed:
        # an empty stream must still fail with "no element found"
        parser.feed(b'')
    parser.close()
    yield from collector.drain()


# ============================================================================
# WRITER
# ============================================================================

def _quote_attr(value: str) -> str:
    return '"' + escape(value, _ATTR_ENTITIES) + '"'


class XMLStreamWriter:
    """
    Push-style XML writer.

    A start tag stays open until content follows, so an element with no
    content is written as ``<name/>``. Top-level comments, PIs and the
    DOCTYPE each go on their own line.
    """

    def __init__(self, out: TextIO, encoding: str = 'utf-8'):
        self.out = out
        self.encoding = encoding
        self.depth = 0
        self._open_tag = False
        self._in_cdata = False

    def _close_start_tag(self) -> None:
        if self._open_tag:
            self.out.write('>')
            self._open_tag = False

    def _end_line_at_top_level(self) -> None:
        if self.depth == 0:
            self.out.write('\n')

    def write_start_document(self) -> None:
        self.out.write(f'<?xml version="1.0" encoding="{self.encoding}"?>\n')

    def write_end_document(self) -> None:
        self._close_start_tag()
        self.out.flush()

    def write_doctype(self, name: str, public_id: Optional[str], system_id: Optional[str]) -> None:
        doctype = f'<!DOCTYPE {name}'
        if public_id:
            doctype += f' PUBLIC "{public_id}"'
            if system_id:
                doctype += f' "{system_id}"'
        elif system_id:
            doctype += f' SYSTEM "{system_id}"'
        self.out.write(doctype + '>')
        self._end_line_at_top_level()

    def write_start_element(self, name: str, attributes=()) -> None:
        self._close_start_tag()
        self.out.write('<' + name)
        for attr_name, value in attributes:
            self.out.write(f' {attr_name}={_quote_attr(value)}')
        self._open_tag = True
        self.depth += 1

    def write_end_element(self, name: str) -> None:
        self.depth -= 1
        if self._open_tag:
            self.out.write('/>')
            self._open_tag = False
        else:
            self.out.write(f'</{name}>')
        self._end_line_at_top_level()

    def write_characters(self, text: str) -> None:
        if not text:
            return
        self._close_start_tag()
        self.out.write(text if self._in_cdata else escape(text))

    def write_comment(self, text: str) -> None:
        self._close_start_tag()
        self.out.write(f'<!--{text}-->')
        self._end_line_at_top_level()

    def write_processing_instruction(self, target: str, data: str = "") -> None:
        self._close_start_tag()
        self.out.write(f'<?{target} {data}?>' if data else f'<?{target}?>')
        self._end_line_at_top_level()

    def write_start_cdata(self) -> None:
        self._close_start_tag()
        self.out.write('<![CDATA[')
        self._in_cdata = True

    def write_end_cdata(self) -> None:
        self.out.write(']]>')
        self._in_cdata = False

    def write_property(self, name: str, value: str) -> None:
        self.write_start_element(PROPERTY_ELEMENT, (('name', name),))
        self.write_characters(value)
        self.write_end_element(PROPERTY_ELEMENT)


# ============================================================================
# PROPERTY REWRITE
# ============================================================================

def relativize(path: str, root: str) -> str:
    """Strip `root` from the front of `path` (with or without trailing slash)."""
    if not root or not path.startswith(root):
        return path
    if root.endswith('/'):
        return path[len(root):]
    return path[len(root) + 1:]


def process_properties(records: List[PropertyRecord], root: str = "") -> List[PropertyRecord]:
    """
    Rewrite the properties of one service if they describe a proxy.

    Proxy services lose the proxy marker and the stashed original, their
    ``resource`` becomes the original path (relative to `root` when it is
    under it) and, for timewarp, is written as ``speed:path``;
    ``warp_resource`` gets the same path. Other services are unchanged.
    """
    is_proxy = False
    original = None
    resource = None
    service = ""
    speed = "1"
    for record in records:
        if record.name == PROXY_PROPERTY:
            is_proxy = True
        elif record.name == ORIGINAL_RESOURCE_PROPERTY:
            original = record.value
        elif record.name == 'resource':
            resource = record.value
        elif record.name == 'mlt_service':
            service = record.value
        elif record.name == 'warp_speed':
            speed = record.value
    if not is_proxy:
        return list(records)

    new_resource = relativize(original if original else (resource or ""), root)
    rewritten = []
    for record in records:
        if record.name == 'resource':
            if service == TIMEWARP_SERVICE:
                rewritten.append(PropertyRecord('resource', f"{speed}:{new_resource}"))
            else:
                rewritten.append(PropertyRecord('resource', new_resource))
        elif record.name == 'warp_resource':
            rewritten.append(PropertyRecord('warp_resource', new_resource))
        elif record.name not in (PROXY_PROPERTY, ORIGINAL_RESOURCE_PROPERTY):
            rewritten.append(record)
    return rewritten


class _State(Enum):
    IDLE = "idle"
    IN_PROPERTY = "in_property"
    BUFFERING = "buffering"


class PropertyFilter:
    """
    Streaming state machine feeding events to an XMLStreamWriter.

    IDLE: events pass straight through.
    IN_PROPERTY: collecting the text of one property element.
    BUFFERING: properties collected, waiting for the service to be complete.

    Whitespace seen between buffered properties is kept and reused when the
    buffer is flushed, so the output keeps the input's indentation.
    """

    def __init__(self, writer: XMLStreamWriter, root: str = ""):
        self.writer = writer
        self.root = root
        self.state = _State.IDLE
        self._records: List[PropertyRecord] = []
        self._gaps: List[str] = []
        self._name = ""
        self._text: List[str] = []

    def feed(self, event: Event) -> None:
        kind = event.kind
        if self.state == _State.IN_PROPERTY:
            self._feed_property(event)
        elif kind == EventKind.START_ELEMENT:
            if event.name == PROPERTY_ELEMENT:
                self._name = dict(event.attributes).get('name', '')
                self._text = []
                self.state = _State.IN_PROPERTY
            else:
                self.flush()
                self.writer.write_start_element(event.name, event.attributes)
        elif kind == EventKind.END_ELEMENT:
            self.flush()
            self.writer.write_end_element(event.name)
        elif kind == EventKind.CHARACTERS:
            if self.state == _State.BUFFERING:
                self._gaps[-1] += event.text
            else:
                self.writer.write_characters(event.text)
        elif kind == EventKind.END_DOCUMENT:
            self.flush()
            self.writer.write_end_document()
        else:
            self._write_through(event)

    def _feed_property(self, event: Event) -> None:
        kind = event.kind
        if kind == EventKind.CHARACTERS:
            self._text.append(event.text)
        elif kind == EventKind.END_ELEMENT and event.name == PROPERTY_ELEMENT:
            self._records.append(PropertyRecord(self._name, ''.join(self._text)))
            self._gaps.append('')
            self.state = _State.BUFFERING
        elif kind == EventKind.START_ELEMENT:
            raise DocumentRewriteError(
                f"unexpected <{event.name}> inside property '{self._name}'")
        elif kind in (EventKind.START_CDATA, EventKind.END_CDATA, EventKind.COMMENT,
                      EventKind.PROCESSING_INSTRUCTION):
            pass
        else:
            raise DocumentRewriteError(f"unterminated property '{self._name}'")

    def _write_through(self, event: Event) -> None:
        kind = event.kind
        if kind == EventKind.START_DOCUMENT:
            self.writer.write_start_document()
        elif kind == EventKind.DOCTYPE:
            self.writer.write_doctype(event.name, *event.ids)
        elif kind == EventKind.COMMENT:
            self.writer.write_comment(event.text)
        elif kind == EventKind.PROCESSING_INSTRUCTION:
            self.writer.write_processing_instruction(event.name, event.text)
        elif kind == EventKind.START_CDATA:
            self.writer.write_start_cdata()
        elif kind == EventKind.END_CDATA:
            self.writer.write_end_cdata()

    def flush(self) -> None:
        """Write the buffered properties (rewritten if needed) and reset."""
        if self.state == _State.IDLE:
            return
        records = process_properties(self._records, self.root)
        separator = self._gaps[0] if len(self._gaps) > 1 else ''
        for i, record in enumerate(records):
            if i:
                self.writer.write_characters(separator)
            self.writer.write_property(record.name, record.value)
        self.writer.write_characters(self._gaps[-1])
        self._records = []
        self._gaps = []
        self.state = _State.IDLE


# ============================================================================
# ENTRY POINTS
# ============================================================================

def rewrite_stream(source: BinaryIO, out: TextIO, root: str = "") -> None:
    """Rewrite proxy resources from `source` into `out`.

    Raises:
        SAXParseException: Malformed XML
        DefusedXmlException: Forbidden DTD content
        DocumentRewriteError: Markup inside a property element
    """
    writer = XMLStreamWriter(out)
    transform = PropertyFilter(writer, root)
    for event in read_events(source):
        transform.feed(event)


def rewrite_string(xml_text: Union[str, bytes], root: str = "") -> str:
    """Rewrite an in-memory document and return the new text."""
    data = xml_text.encode('utf-8') if isinstance(xml_text, str) else xml_text
    out = io.StringIO()
    rewrite_stream(io.BytesIO(data), out, root)
    return out.getvalue()


def rewrite_document(filepath: Union[str, Path], root: str = "") -> Optional[str]:
    """
    Rewrite a project file into a sibling temporary file.

    Args:
        filepath: Project document to read (left unchanged)
        root: Project folder; original paths under it become relative

    Returns:
        Path of the rewritten ``mltproxy-*.mlt`` file, which the caller moves
        into place, or None if the document could not be parsed (the
        temporary file is then removed).

    Raises:
        OSError: The document or the temporary file cannot be opened
    """
    source_path = Path(filepath)
    with open(source_path, 'rb') as source:
        fd, temp_name = tempfile.mkstemp(
            prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=str(source_path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8', newline='') as out:
                rewrite_stream(source, out, root)
        except (SAXParseException, DefusedXmlException, DocumentRewriteError) as e:
            logger.warning("Cannot rewrite %s: %s", source_path, e)
            os.unlink(temp_name)
            return None
        except BaseException:
            os.unlink(temp_name)
            raise
    logger.debug("Rewrote %s to %s", source_path, temp_name)
    return temp_name
