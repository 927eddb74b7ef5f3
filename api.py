#api.py
"""
HPWS (Hermes Pardini XMLServer) client.

Only the two operations the sync needs are supported:

    getResultadoPedido  one order (PDF report + electrophoresis graphics)
    getResultado        every result released in a date/time window; used to
                        learn CD_PED_LAB -> CodPedApoio

Envelopes are plain string templates and responses are read with the tolerant
scanner in xml_scan, not a SOAP stack. Login/password travel in the envelope
body, so request bodies are never logged.
"""
from datetime import datetime
from typing import Optional, Tuple

import requests

from codec import classify, decode_base64, sha256_hex, FileType
from config import Settings, build_session
from exceptions import ConfigError, DecodeError, ProtocolFault, TransportError
from logger import get_logger
from models import Artifact, RemoteResult
from services.artifact_store import ArtifactStore
from xml_scan import escape_xml, extract_tag_content, extract_tag_contents, fault_message, is_fault, unescape_xml

log = get_logger("api")

OP_GET_RESULTADO_PEDIDO = "getResultadoPedido"
OP_GET_RESULTADO = "getResultado"

HEADERS_BASE = {"Content-Type": "text/xml; charset=utf-8"}

ENVELOPE_OPEN = """<?xml version="1.0" encoding="utf-8"?>
<soapenv:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xmlns:xsd="http://www.w3.org/2001/XMLSchema" xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" xmlns:sch="http://hermespardini.com.br/b2b/apoio/schemas">
  <soapenv:Header/>
  <soapenv:Body>
"""

ENVELOPE_CLOSE = """  </soapenv:Body>
</soapenv:Envelope>"""

GET_RESULTADO_PEDIDO_BODY = """    <sch:getResultadoPedido soapenv:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
      <login xsi:type="xsd:string">{login}</login>
      <passwd xsi:type="xsd:string">{passwd}</passwd>
      <anoCodPedApoio xsi:type="xsd:long">{year}</anoCodPedApoio>
      <CodPedApoio xsi:type="xsd:string">{order_code}</CodPedApoio>
      <CodExmApoio xsi:type="xsd:string"></CodExmApoio>
      <PDF xsi:type="xsd:long">{include_pdf}</PDF>
      <versaoResultado xsi:type="xsd:long">1</versaoResultado>
      <papelTimbrado xsi:type="xsd:boolean">false</papelTimbrado>
      <valorReferencia xsi:type="xsd:long">0</valorReferencia>
      <UnidadeNoValor xsi:type="xsd:boolean">false</UnidadeNoValor>
    </sch:getResultadoPedido>
"""

GET_RESULTADO_BODY = """    <sch:getResultado soapenv:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
      <login xsi:type="xsd:string">{login}</login>
      <passwd xsi:type="xsd:string">{passwd}</passwd>
      <DataInicial xsi:type="xsd:string">{start_date}</DataInicial>
      <HoraInicial xsi:type="xsd:string">{start_time}</HoraInicial>
      <DataFinal xsi:type="xsd:string">{end_date}</DataFinal>
      <HoraFinal xsi:type="xsd:string">{end_time}</HoraFinal>
      <Grafico xsi:type="xsd:long">{include_graphics}</Grafico>
      <versaoResultado xsi:type="xsd:long">1</versaoResultado>
    </sch:getResultado>
"""

DATE_FMT = "%d/%m/%Y"
TIME_FMT = "%H:%M"


def build_result_request(login: str, passwd: str, year: int, order_code: str, include_pdf: bool = True) -> str:
    return ENVELOPE_OPEN + GET_RESULTADO_PEDIDO_BODY.format(
        login=escape_xml(login),
        passwd=escape_xml(passwd),
        year=int(year),
        order_code=escape_xml(order_code),
        include_pdf=1 if include_pdf else 0,
    ) + ENVELOPE_CLOSE


def build_period_request(login: str, passwd: str, start: datetime, end: datetime, include_graphics: int = 0) -> str:
    return ENVELOPE_OPEN + GET_RESULTADO_BODY.format(
        login=escape_xml(login),
        passwd=escape_xml(passwd),
        start_date=start.strftime(DATE_FMT),
        start_time=start.strftime(TIME_FMT),
        end_date=end.strftime(DATE_FMT),
        end_time=end.strftime(TIME_FMT),
        include_graphics=1 if include_graphics else 0,
    ) + ENVELOPE_CLOSE


def raise_for_fault(xml: str) -> None:
    if not is_fault(xml):
        return
    raise ProtocolFault(
        fault_message(xml),
        fault_code=unescape_xml(extract_tag_content(xml, "faultcode")) or None,
        fault_string=unescape_xml(extract_tag_content(xml, "faultstring")) or None,
        raw_response_text=xml,
    )


def _decode_occurrences(xml: str, tag: str, key: str):
    out = []
    for idx, content in enumerate(extract_tag_contents(xml, tag), start=1):
        if not content:
            continue
        try:
            data = decode_base64(content)
        except DecodeError as e:
            log.warning(f"{key}: skipping malformed <{tag}> occurrence #{idx}: {e}")
            continue
        if data:
            out.append(Artifact(content=data, sha256=sha256_hex(data), file_type=classify(data)))
    return out


def parse_order_response(xml: str, result: RemoteResult) -> RemoteResult:
    """
    Fill `result` from a getResultadoPedido response.

    A fault short-circuits everything else. Otherwise PDF and Grafico may repeat
    (one per report / per graphic); all of them are kept in document order.
    Success = at least one artifact, or no MensagemErro (an order with nothing
    released yet is not an error).
    """
    result.raw_response = xml or ""

    try:
        raise_for_fault(xml)
    except ProtocolFault as e:
        result.success = False
        result.fault = True
        result.error_message = str(e)
        return result

    result.pdf_artifacts = _decode_occurrences(xml, "PDF", result.key)
    result.graphic_artifacts = _decode_occurrences(xml, "Grafico", result.key)

    for art in result.pdf_artifacts:
        if art.file_type != FileType.PDF:
            log.warning(f"{result.key}: <PDF> content does not look like a PDF ({art.file_type.value})")

    result.return_code = unescape_xml(extract_tag_content(xml, "CodigoRetorno")) or None
    result.error_message = unescape_xml(extract_tag_content(xml, "MensagemErro")) or None
    result.success = result.has_artifacts or not result.error_message
    return result


class ProtocolClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 artifact_store: Optional[ArtifactStore] = None):
        self.settings = settings
        self.validate_config()
        self.session = session or build_session(settings)
        if artifact_store is None and settings.output_dir:
            artifact_store = ArtifactStore(settings.output_dir)
        self.artifact_store = artifact_store

    @property
    def endpoint(self) -> str:
        return self.settings.hpws_endpoint

    def validate_config(self) -> None:
        s = self.settings
        required = {
            "HPWS_ENDPOINT": s.hpws_endpoint,
            "HPWS_LOGIN": s.hpws_login,
            "HPWS_PASSWD": s.hpws_passwd,
            "HPWS_SOAP_ACTION_GET_RESULTADO_PEDIDO": s.action_get_resultado_pedido,
            "HPWS_SOAP_ACTION_GET_RESULTADO": s.action_get_resultado,
        }
        missing = [name for name, value in required.items() if not (value or "").strip()]
        if missing:
            raise ConfigError(f"HPWS client not configured; missing: {', '.join(missing)}", missing=missing)

    # ---------------- transport ----------------
    def _post(self, operation: str, action: str, body: str) -> Tuple[int, str]:
        headers = dict(HEADERS_BASE)
        headers["SOAPAction"] = action

        try:
            resp = self.session.post(
                self.endpoint,
                data=body.encode("utf-8"),
                headers=headers,
                timeout=(self.settings.connect_timeout, self.settings.read_timeout),
            )
        except requests.RequestException as e:
            raise TransportError(f"{operation} failed: {e}", endpoint=self.endpoint, operation=operation) from e

        # Fault bodies come back with 500; read the body whatever the status.
        text = resp.content.decode("utf-8", errors="replace")
        log.debug(f"{operation}: HTTP {resp.status_code}, {len(text)} chars")
        return resp.status_code, text

    # ---------------- operations ----------------
    def fetch_order(self, year: int, order_key: str, include_pdf: bool = True) -> RemoteResult:
        result = RemoteResult(remote_order_code=str(order_key), order_year=year)
        body = build_result_request(
            self.settings.hpws_login, self.settings.hpws_passwd, year, order_key, include_pdf
        )

        log.debug(f"{OP_GET_RESULTADO_PEDIDO} request for {result.key}")
        try:
            status, text = self._post(OP_GET_RESULTADO_PEDIDO, self.settings.action_get_resultado_pedido, body)
        except TransportError as e:
            log.error(f"Error fetching order {result.key}: {e}")
            result.success = False
            result.error_message = str(e)
            return result

        parse_order_response(text, result)

        if result.fault:
            log.warning(f"Order {result.key}: HPWS fault (HTTP {status}): {result.error_message}")
        elif result.success:
            log.info(
                f"Order {result.key} fetched. PDFs: {[a.size for a in result.pdf_artifacts]} bytes, "
                f"graphics: {[a.size for a in result.graphic_artifacts]} bytes"
            )
        else:
            log.info(f"Order {result.key}: no content (HTTP {status}, code={result.return_code}): "
                     f"{result.error_message}")

        if self.artifact_store:
            self.artifact_store.save(OP_GET_RESULTADO_PEDIDO, result.key, text, result)

        return result

    def fetch_period_results(self, start: datetime, end: datetime, include_graphics: int = 0) -> Optional[str]:
        body = build_period_request(
            self.settings.hpws_login, self.settings.hpws_passwd, start, end, include_graphics
        )
        window = f"{start:%Y%m%d%H%M}-{end:%Y%m%d%H%M}"

        try:
            status, text = self._post(OP_GET_RESULTADO, self.settings.action_get_resultado, body)
        except TransportError as e:
            log.error(f"{OP_GET_RESULTADO} for window {window} failed: {e}")
            return None

        log.info(f"{OP_GET_RESULTADO} window {window}: HTTP {status}, {len(text)} chars")
        if self.artifact_store:
            self.artifact_store.save(OP_GET_RESULTADO, window, text)
        return text

    def check_reachable(self) -> bool:
        sep = "&" if "?" in self.endpoint else "?"
        url = f"{self.endpoint}{sep}WSDL"
        try:
            resp = self.session.get(url, timeout=self.settings.probe_timeout)
            return 200 <= resp.status_code < 300
        except requests.RequestException as e:
            log.error(f"HPWS reachability check failed: {e}")
            return False
