# pardini_sync/xml_scan.py
"""
Tolerant tag scanning over raw HPWS responses.

HPWS is not consistent about tag case, namespace prefixes, attributes
(xsi:type=...) or how many times a field repeats, so responses are treated as
a flat text blob instead of going through a strict XML parser:

    <PDF>...</PDF>, <pdf xsi:type="xsd:string">...</pdf>, <ns1:PDF >...</ns1:PDF>
    <Grafico/>                  -> empty occurrence
    <PDF><![CDATA[...]]></PDF>  -> CDATA unwrapped

Every occurrence is returned in document order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterator, List, Optional
from xml.sax.saxutils import escape, unescape

_PREFIX = r"(?:[\w.\-]+:)?"
_CDATA_RE = re.compile(r"^<!\[CDATA\[(.*)\]\]>$", re.DOTALL)
_FAULT_RE = re.compile(r"<\s*" + _PREFIX + r"fault(?=[\s/>])", re.IGNORECASE)

_ENTITIES = {"&quot;": '"', "&apos;": "'"}
_ATTR_ENTITIES = {'"': "&quot;", "'": "&apos;"}


@dataclass(frozen=True)
class TagMatch:
    start: int      # offset of the opening "<"
    end: int        # offset just past the closing ">"
    content: str    # stripped inner text


@lru_cache(maxsize=64)
def _open_re(tag: str) -> re.Pattern:
    return re.compile(r"<\s*" + _PREFIX + re.escape(tag) + r"(?=[\s/>])([^>]*)>", re.IGNORECASE)


@lru_cache(maxsize=64)
def _close_re(tag: str) -> re.Pattern:
    return re.compile(r"<\s*/\s*" + _PREFIX + re.escape(tag) + r"\s*>", re.IGNORECASE)


def _unwrap_cdata(s: str) -> str:
    m = _CDATA_RE.match(s)
    return m.group(1).strip() if m else s


def iter_tag_matches(xml: Optional[str], tag: str) -> Iterator[TagMatch]:
    if not xml or not tag:
        return

    open_re = _open_re(tag)
    close_re = _close_re(tag)
    pos = 0

    while True:
        m = open_re.search(xml, pos)
        if not m:
            return

        # <Tag attr="x"/>
        if m.group(1).rstrip().endswith("/"):
            yield TagMatch(m.start(), m.end(), "")
            pos = m.end()
            continue

        c = close_re.search(xml, m.end())
        if not c:
            # unterminated: nothing sensible after this point
            return

        yield TagMatch(m.start(), c.end(), _unwrap_cdata(xml[m.end():c.start()].strip()))
        pos = c.end()


def extract_tag_contents(xml: Optional[str], tag: str) -> List[str]:
    return [m.content for m in iter_tag_matches(xml, tag)]


def extract_tag_content(xml: Optional[str], tag: str) -> Optional[str]:
    for m in iter_tag_matches(xml, tag):
        return m.content
    return None


def first_non_empty(xml: Optional[str], *tags: str) -> Optional[str]:
    for tag in tags:
        for value in extract_tag_contents(xml, tag):
            if value:
                return value
    return None


def is_fault(xml: Optional[str]) -> bool:
    if not xml:
        return False
    if _FAULT_RE.search(xml):
        return True
    return extract_tag_content(xml, "faultstring") is not None


def fault_message(xml: Optional[str]) -> str:
    fault_string = first_non_empty(xml, "faultstring")
    info = first_non_empty(xml, "info", "detail")
    code = first_non_empty(xml, "faultcode")

    parts = [unescape_xml(p) for p in (fault_string, info) if p]
    if not parts:
        return f"SOAP fault ({unescape_xml(code)})" if code else "SOAP fault without message"
    return " - ".join(parts)


def escape_xml(value) -> str:
    if value is None:
        return ""
    return escape(str(value), _ATTR_ENTITIES)


def unescape_xml(value: Optional[str]) -> str:
    if value is None:
        return ""
    return unescape(value, _ENTITIES).strip()
