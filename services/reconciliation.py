# pardini_sync/services/reconciliation.py

from collections import OrderedDict
from typing import Dict, List, NamedTuple, Optional

from db import get_mapping, upsert_mappings
from logger import get_logger
from models import RemoteMapping
from xml_scan import fault_message, is_fault, iter_tag_matches, unescape_xml

log = get_logger("reconciliation")

LOCAL_TAGS = ("CodPedLab", "CD_PED_LAB")
REMOTE_TAG = "CodPedApoio"
YEAR_TAG = "AnoCodPedApoio"

LOCAL, REMOTE, YEAR = "LOCAL", "REMOTE", "YEAR"


class _Token(NamedTuple):
    pos: int
    kind: str
    value: str


def _tokenize(xml: str) -> List[_Token]:
    tokens = []
    for tag in LOCAL_TAGS:
        tokens.extend(_Token(m.start, LOCAL, unescape_xml(m.content)) for m in iter_tag_matches(xml, tag))
    tokens.extend(_Token(m.start, REMOTE, unescape_xml(m.content)) for m in iter_tag_matches(xml, REMOTE_TAG))
    tokens.extend(_Token(m.start, YEAR, unescape_xml(m.content)) for m in iter_tag_matches(xml, YEAR_TAG))
    tokens.sort(key=lambda t: t.pos)
    return tokens


def _parse_year(raw: Optional[str]) -> Optional[int]:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _next_code(tokens: List[_Token], start: int) -> int:
    for j in range(start, len(tokens)):
        if tokens[j].kind != YEAR:
            return j
    return len(tokens)


def extract_mappings(xml: Optional[str]) -> List[RemoteMapping]:
    """
    Pull (CD_PED_LAB, CodPedApoio, AnoCodPedApoio) triples out of a getResultado
    response.

    HPWS does not guarantee field order inside a record, so both
    local-then-remote and remote-then-local are accepted. Codes are consumed
    once paired, which keeps a dangling code from being glued to the next
    record. The year is whichever AnoCodPedApoio sits between the first code of
    the pair and the next code tag.

    Result is deduplicated by local code, last occurrence wins.
    """
    if not xml or not xml.strip():
        return []

    tokens = _tokenize(xml)
    pairs: List[RemoteMapping] = []

    i = _next_code(tokens, 0)
    while i < len(tokens):
        j = _next_code(tokens, i + 1)
        if j >= len(tokens):
            break

        first, second = tokens[i], tokens[j]
        if first.kind == second.kind:
            i = j
            continue

        local, remote = (first, second) if first.kind == LOCAL else (second, first)
        k = _next_code(tokens, j + 1)
        year_tok = next((t for t in tokens[i + 1:k] if t.kind == YEAR), None)

        if local.value and remote.value:
            pairs.append(RemoteMapping(
                local_order_code=local.value,
                remote_order_code=remote.value,
                order_year=_parse_year(year_tok.value if year_tok else None),
            ))

        i = k

    dedup: Dict[str, RemoteMapping] = OrderedDict()
    for p in pairs:
        dedup.pop(p.local_order_code, None)
        dedup[p.local_order_code] = p

    return list(dedup.values())


class ReconciliationMapper:
    """CD_PED_LAB -> CodPedApoio mapping, kept in the local state DB."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def refresh(self, raw_xml: Optional[str]) -> int:
        if not raw_xml or not raw_xml.strip():
            log.info("Mapping refresh: empty getResultado response")
            return 0

        if is_fault(raw_xml):
            log.warning(f"Mapping refresh: getResultado returned a fault: {fault_message(raw_xml)}")
            return 0

        mappings = extract_mappings(raw_xml)
        if not mappings:
            log.info("Mapping refresh: no CD_PED_LAB/CodPedApoio pairs found")
            return 0

        affected = upsert_mappings(self.db_path, mappings)
        log.info(f"Mapping refresh: {len(mappings)} pair(s) extracted, {affected} row(s) upserted")
        return affected

    def lookup(self, local_order_code: Optional[str]) -> Optional[RemoteMapping]:
        code = (local_order_code or "").strip()
        if not code:
            return None
        return get_mapping(self.db_path, code)
