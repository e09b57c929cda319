"""
Safe XML parsing, defused against XXE and entity expansion.

Every entry point that reads a project document (the graph parser and the
streaming document rewriter) goes through these functions.

Blocks:
- External entity injection (XXE): file:///etc/passwd, http:// callbacks
- Billion laughs / entity expansion: exponential DTD bombs
- DTD retrieval: remote DTD loading
"""

import xml.etree.ElementTree as ET
from xml.sax.xmlreader import IncrementalParser

import defusedxml.ElementTree as _safe_ET
import defusedxml.sax as _safe_sax
from defusedxml import DefusedXmlException

__all__ = ['DefusedXmlException', 'safe_fromstring', 'safe_make_parser', 'safe_parse']


def safe_parse(source: str) -> ET.ElementTree:
    """Parse an XML file with XXE and entity-expansion protection.

    Returns a standard ElementTree so downstream code is unchanged.
    """
    return _safe_ET.parse(source)


def safe_fromstring(text: str) -> ET.Element:
    """Parse an XML string with XXE and entity-expansion protection.

    Returns a standard Element so downstream code is unchanged.
    """
    return _safe_ET.fromstring(text)


def safe_make_parser() -> IncrementalParser:
    """Create an incremental SAX parser with the same protection.

    A DOCTYPE declaration itself is allowed (it is passed through by the
    rewriter); entity declarations and external references are not.
    """
    return _safe_sax.make_parser()
