"""
OAI-PMH 2.0 protocol client.

Issues exactly one HTTP request per ListRecords page and converts each
record's metadata into nested dicts keyed by prefixed element names
(``oai_dc:dc``, ``dc:title``, ``marc:datafield``). Attributes are kept
under ``@name`` keys and mixed text under ``#text``; repeated elements
become lists.

The client never retries. A retry after the resumption token has
advanced could skip or repeat a page, so the harvest controller retries
the same page itself before moving on.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from litharvest.net.http_client import HTTPClient, HTTPClientError, RetryConfig

logger = logging.getLogger(__name__)

OAI_NS = "http://www.openarchives.org/OAI/2.0/"

# Namespace URI -> prefix used in dict keys
NAMESPACE_PREFIXES = {
    "http://www.openarchives.org/OAI/2.0/oai_dc/": "oai_dc",
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://purl.org/dc/terms/": "dcterms",
    "http://www.loc.gov/MARC21/slim": "marc",
    "http://datacite.org/schema/kernel-4": "datacite",
    "http://www.w3.org/2001/XMLSchema-instance": "xsi",
    "http://www.w3.org/XML/1998/namespace": "xml",
}

# OAI error codes that mean "nothing to harvest" rather than failure
BENIGN_ERROR_CODES = frozenset({"noRecordsMatch"})


class ProtocolError(Exception):
    """
    Transport or envelope failure talking to an OAI-PMH endpoint.

    Attributes:
        code: OAI error code (e.g. badResumptionToken) when the repository
            answered with an <error>, else None
        status_code: HTTP status when the failure was an HTTP error
        transient: Whether re-fetching the same page may succeed
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.transient = transient


@dataclass
class ListPage:
    """One ListRecords response."""

    records: list[dict[str, Any]] = field(default_factory=list)
    resumption_token: str | None = None
    complete_list_size: int | None = None
    no_records_match: bool = False

    @property
    def is_last(self) -> bool:
        return not self.resumption_token


def _qualified_name(tag: str) -> str:
    """Turn '{uri}local' into 'prefix:local' (unknown namespaces keep the local name)."""
    if not tag.startswith("{"):
        return tag
    uri, local = tag[1:].split("}", 1)
    if uri == OAI_NS:
        return local
    prefix = NAMESPACE_PREFIXES.get(uri)
    return f"{prefix}:{local}" if prefix else local


def element_to_dict(elem: ET.Element) -> Any:
    """
    Convert an element tree to plain Python values.

    A leaf without attributes becomes its stripped text; everything else
    becomes a dict.
    """
    children = list(elem)
    text = (elem.text or "").strip()
    if not children and not elem.attrib:
        return text

    node: dict[str, Any] = {
        f"@{_qualified_name(k)}": v for k, v in elem.attrib.items()
    }
    for child in children:
        key = _qualified_name(child.tag)
        value = element_to_dict(child)
        if key not in node:
            node[key] = value
        elif isinstance(node[key], list):
            node[key].append(value)
        else:
            node[key] = [node[key], value]
    if text:
        node["#text"] = text
    return node


def _format_datestamp(value: date | datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _parse_header(header: ET.Element) -> dict[str, Any]:
    result: dict[str, Any] = {
        "identifier": (header.findtext(f"{{{OAI_NS}}}identifier") or "").strip(),
        "datestamp": (header.findtext(f"{{{OAI_NS}}}datestamp") or "").strip(),
    }
    set_specs = [
        s.text.strip() for s in header.findall(f"{{{OAI_NS}}}setSpec") if s.text
    ]
    if set_specs:
        result["setSpec"] = set_specs
    status = header.get("status")
    if status:
        result["status"] = status
    return result


class OAIPMHClient:
    """
    Async OAI-PMH client.

    Usage:
        async with OAIPMHClient() as client:
            page = await client.list_page(endpoint, "oai_dc", from_date=date(2024, 1, 1))
            while page.resumption_token:
                page = await client.list_page(
                    endpoint, "oai_dc", resumption_token=page.resumption_token
                )
    """

    def __init__(
        self,
        http_client: HTTPClient | None = None,
        timeout: float = 60.0,
        user_agent: str = "litharvest/0.1.0",
    ):
        self._owns_client = http_client is None
        self._http = http_client or HTTPClient(
            retry_config=RetryConfig(max_retries=0),
            timeout=timeout,
            headers={
                "Accept": "application/xml, text/xml",
                "User-Agent": user_agent,
            },
        )

    async def __aenter__(self) -> "OAIPMHClient":
        if not self._http.is_open:
            await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._owns_client:
            await self._http.close()

    async def list_page(
        self,
        endpoint: str,
        metadata_prefix: str,
        set_spec: str | None = None,
        from_date: date | datetime | str | None = None,
        until_date: date | datetime | str | None = None,
        resumption_token: str | None = None,
    ) -> ListPage:
        """
        Fetch one ListRecords page.

        When resumption_token is given every other selector is dropped,
        as OAI-PMH forbids combining them.

        Raises:
            ProtocolError: Non-2xx status, network failure, malformed XML,
                or an OAI error other than noRecordsMatch.
        """
        if resumption_token:
            params = {"verb": "ListRecords", "resumptionToken": resumption_token}
        else:
            params = {"verb": "ListRecords", "metadataPrefix": metadata_prefix}
            if set_spec:
                params["set"] = set_spec
            if from_value := _format_datestamp(from_date):
                params["from"] = from_value
            if until_value := _format_datestamp(until_date):
                params["until"] = until_value

        root = await self._request(endpoint, params)

        error = root.find(f"{{{OAI_NS}}}error")
        if error is not None:
            code = error.get("code", "unknown")
            if code in BENIGN_ERROR_CODES:
                logger.info(f"No records match at {endpoint} ({params})")
                return ListPage(no_records_match=True)
            raise ProtocolError(
                f"OAI-PMH error {code}: {(error.text or '').strip()}",
                code=code,
            )

        list_records = root.find(f"{{{OAI_NS}}}ListRecords")
        if list_records is None:
            raise ProtocolError(
                f"Malformed ListRecords response from {endpoint}",
                transient=True,
            )

        records = []
        for record in list_records.findall(f"{{{OAI_NS}}}record"):
            header = record.find(f"{{{OAI_NS}}}header")
            if header is None:
                logger.warning(f"Skipping record without header from {endpoint}")
                continue
            metadata_elem = record.find(f"{{{OAI_NS}}}metadata")
            metadata = (
                element_to_dict(metadata_elem) if metadata_elem is not None else {}
            )
            records.append({
                "header": _parse_header(header),
                "metadata": metadata if isinstance(metadata, dict) else {},
            })

        token_elem = list_records.find(f"{{{OAI_NS}}}resumptionToken")
        token = None
        size = None
        if token_elem is not None:
            token = (token_elem.text or "").strip() or None
            raw_size = token_elem.get("completeListSize")
            if raw_size and raw_size.isdigit():
                size = int(raw_size)

        return ListPage(records=records, resumption_token=token, complete_list_size=size)

    async def identify(self, endpoint: str) -> dict[str, Any]:
        """Issue verb=Identify and return the repository description."""
        root = await self._request(endpoint, {"verb": "Identify"})
        ident = root.find(f"{{{OAI_NS}}}Identify")
        if ident is None:
            raise ProtocolError(f"Malformed Identify response from {endpoint}")

        def text(tag: str) -> str | None:
            value = ident.findtext(f"{{{OAI_NS}}}{tag}")
            return value.strip() if value else None

        return {
            "repository_name": text("repositoryName"),
            "base_url": text("baseURL"),
            "protocol_version": text("protocolVersion"),
            "earliest_datestamp": text("earliestDatestamp"),
            "granularity": text("granularity"),
            "admin_emails": [
                e.text.strip() for e in ident.findall(f"{{{OAI_NS}}}adminEmail") if e.text
            ],
        }

    async def _request(self, endpoint: str, params: dict[str, str]) -> ET.Element:
        try:
            response = await self._http.get(endpoint, params=params)
        except HTTPClientError as e:
            status = e.status_code
            raise ProtocolError(
                str(e),
                status_code=status,
                transient=e.retryable or status is None or status >= 500,
            ) from e

        try:
            return ET.fromstring(response.content)
        except ET.ParseError as e:
            raise ProtocolError(
                f"Unparseable XML from {endpoint}: {e}",
                transient=True,
            ) from e
