"""
Schema parsers: raw OAI-PMH record -> NormalizedRecord.

Parsers are pure and selected by metadata schema id:

    oai_dc              -> DublinCoreParser
    marc21, marcxml     -> MarcParser
    anything else       -> GenericParser

The generic parser searches an explicit, ordered alias list per field at
the top level of the payload and then one level of nesting. It never
walks the structure recursively.

Missing optional fields become absent. A record only fails to parse
when it has neither a title nor any identifier, since it could then be
neither stored nor deduplicated.
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any
from urllib.parse import urlparse

from litharvest.harvest.schemas import UNKNOWN_PROVIDER, NormalizedRecord, RecordAuthor

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """The record has no extractable title and no identifier."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


# Host suffix -> provider. Checked in order; first match wins.
PROVIDER_HOSTS: tuple[tuple[str, str], ...] = (
    ("jstor.org", "jstor"),
    ("proquest.com", "proquest"),
    ("ebscohost.com", "ebsco"),
    ("sciencedirect.com", "elsevier"),
    ("elsevier.com", "elsevier"),
    ("springer.com", "springer"),
    ("wiley.com", "wiley"),
    ("tandfonline.com", "taylor_francis"),
    ("muse.jhu.edu", "muse"),
    ("arxiv.org", "arxiv"),
    ("ncbi.nlm.nih.gov", "pubmed"),
)

_DOI_RE = re.compile(r"\b(10\.\d{4,9}/\S+)", re.IGNORECASE)
_DOI_PREFIXES = (
    "https://doi.org/",
    "http://doi.org/",
    "https://dx.doi.org/",
    "http://dx.doi.org/",
    "doi:",
)
_YEAR_RE = re.compile(r"(1[5-9]\d{2}|20\d{2})")
_DATE_FORMATS = ("%Y-%m-%d", "%Y-%m", "%Y", "%Y/%m/%d", "%d %B %Y", "%B %Y")
_OPEN_ACCESS_MARKERS = ("open access", "openaccess", "creativecommons", "info:eu-repo/semantics/openaccess")


# -- value helpers ---------------------------------------------------------


def infer_provider(url: str | None) -> str:
    """Map a URL's host to a content provider, or 'unknown'."""
    if not url:
        return UNKNOWN_PROVIDER
    try:
        host = (urlparse(url.strip()).hostname or "").lower()
    except ValueError:
        return UNKNOWN_PROVIDER
    for suffix, provider in PROVIDER_HOSTS:
        if host == suffix or host.endswith("." + suffix):
            return provider
    return UNKNOWN_PROVIDER


def as_list(value: Any) -> list[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None and v != ""]
    return [value]


def text_of(value: Any) -> str | None:
    """First non-empty text in a str, an element dict or a list of either."""
    for item in as_list(value):
        if isinstance(item, dict):
            item = item.get("#text")
        if isinstance(item, (int, float)):
            item = str(item)
        if isinstance(item, str) and item.strip():
            return " ".join(item.split())
    return None


def texts_of(value: Any) -> list[str]:
    result = []
    for item in as_list(value):
        text = text_of(item)
        if text:
            result.append(text)
    return result


def extract_doi(value: str | None) -> str | None:
    """Pull a bare DOI out of 'doi:...', a doi.org URL or a string starting with 10."""
    if not value:
        return None
    candidate = value.strip()
    lowered = candidate.lower()
    for prefix in _DOI_PREFIXES:
        if lowered.startswith(prefix):
            candidate = candidate[len(prefix):].strip()
            break
    else:
        if not lowered.startswith("10."):
            return None
    match = _DOI_RE.match(candidate)
    if not match:
        return None
    return match.group(1).rstrip(".,;").lower()


def parse_date(value: Any) -> date | None:
    """Lenient date parsing; full date, year-month or a bare year."""
    raw = text_of(value)
    if not raw:
        return None
    raw = raw.strip().rstrip(".")
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    match = _YEAR_RE.search(raw)
    if match:
        return date(int(match.group(1)), 1, 1)
    return None


def is_open_access(values: Iterable[str]) -> bool:
    return any(
        marker in v.lower() for v in values for marker in _OPEN_ACCESS_MARKERS
    )


def _split_identifiers(values: Iterable[str]) -> tuple[str | None, str | None]:
    """Return (doi, url) from a list of identifier strings."""
    doi = None
    url = None
    for value in values:
        found = extract_doi(value)
        if found and doi is None:
            doi = found
            continue
        if url is None and value.lower().startswith(("http://", "https://")):
            url = value
    return doi, url


def _stable_id(*parts: str | None) -> str:
    payload = "|".join(p or "" for p in parts)
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


def _author_from(value: Any) -> RecordAuthor | None:
    """Build an author from a string or a dict with name/given/family keys."""
    if isinstance(value, dict) and "#text" not in value:
        name = text_of(value.get("name")) or " ".join(
            p for p in (text_of(value.get("given")), text_of(value.get("family"))) if p
        )
        if not name:
            return None
        return RecordAuthor(
            name=name,
            identifier=text_of(value.get("orcid") or value.get("identifier") or value.get("id")),
            affiliation=text_of(value.get("affiliation")),
        )
    name = text_of(value)
    return RecordAuthor(name=name) if name else None


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


# -- parsers ---------------------------------------------------------------


class SchemaParser(ABC):
    """Base class for metadata schema parsers."""

    schema_ids: tuple[str, ...] = ()

    def parse(self, raw: dict[str, Any], source_id: str | None = None) -> NormalizedRecord:
        header = raw.get("header") or {}
        metadata = raw.get("metadata") or {}
        fields = self.extract(metadata)
        return _build_record(fields, header, source_id)

    @abstractmethod
    def extract(self, metadata: dict[str, Any]) -> dict[str, Any]:
        """Return the logical fields found in the metadata payload."""


def _build_record(
    fields: dict[str, Any],
    header: dict[str, Any],
    source_id: str | None,
) -> NormalizedRecord:
    title = fields.get("title")
    doi = fields.get("doi")
    url = fields.get("url")
    header_id = (header.get("identifier") or "").strip() or None
    record_id = header_id or fields.get("record_id") or doi or url

    if not title and not record_id:
        raise ParseError("record has neither a title nor an identifier")
    if not record_id:
        first_author = fields["authors"][0].name if fields.get("authors") else None
        record_id = _stable_id(title, first_author)

    provider = fields.get("provider") or UNKNOWN_PROVIDER
    if provider == UNKNOWN_PROVIDER:
        provider = _infer_from_candidates(url, fields.get("identifiers", ()))

    extra = dict(fields.get("additional_metadata") or {})
    if header.get("datestamp"):
        extra.setdefault("datestamp", header["datestamp"])
    if header.get("setSpec"):
        extra.setdefault("set_spec", header["setSpec"])

    return NormalizedRecord(
        provider=provider,
        record_id=record_id,
        title=title or "",
        authors=fields.get("authors") or [],
        abstract=fields.get("abstract"),
        publication_date=fields.get("publication_date"),
        journal=fields.get("journal"),
        url=url,
        doi=doi,
        keywords=fields.get("keywords") or [],
        is_open_access=bool(fields.get("is_open_access")),
        additional_metadata=extra,
        source_id=source_id,
    )


def _infer_from_candidates(url: str | None, identifiers: Iterable[str]) -> str:
    for candidate in (url, *identifiers):
        provider = infer_provider(candidate)
        if provider != UNKNOWN_PROVIDER:
            return provider
    return UNKNOWN_PROVIDER


class DublinCoreParser(SchemaParser):
    """Simple Dublin Core (oai_dc) records."""

    schema_ids = ("oai_dc", "dc")

    CONTAINER_KEYS = ("oai_dc:dc", "dc")

    def extract(self, metadata: dict[str, Any]) -> dict[str, Any]:
        dc = metadata
        for key in self.CONTAINER_KEYS:
            if isinstance(metadata.get(key), dict):
                dc = metadata[key]
                break

        identifiers = texts_of(dc.get("dc:identifier"))
        doi, url = _split_identifiers(identifiers)
        # Some repositories put the DOI in dc:relation instead
        if doi is None:
            doi, _ = _split_identifiers(texts_of(dc.get("dc:relation")))

        authors = [
            RecordAuthor(name=name)
            for name in texts_of(dc.get("dc:creator")) + texts_of(dc.get("dc:contributor"))
        ]

        extra: dict[str, Any] = {}
        for key, target in (
            ("dc:publisher", "publisher"),
            ("dc:type", "type"),
            ("dc:language", "language"),
            ("dc:format", "format"),
        ):
            value = text_of(dc.get(key))
            if value:
                extra[target] = value

        return {
            "title": text_of(dc.get("dc:title")),
            "authors": authors,
            "abstract": text_of(dc.get("dc:description")),
            "publication_date": parse_date(dc.get("dc:date")),
            "journal": text_of(dc.get("dc:source")),
            "doi": doi,
            "url": url,
            "identifiers": identifiers,
            "keywords": _dedupe(texts_of(dc.get("dc:subject"))),
            "is_open_access": is_open_access(texts_of(dc.get("dc:rights"))),
            "additional_metadata": extra,
        }


class MarcParser(SchemaParser):
    """MARC21 slim XML records."""

    schema_ids = ("marc21", "marcxml", "marc")

    def extract(self, metadata: dict[str, Any]) -> dict[str, Any]:
        record = self._find_record(metadata)
        datafields = [
            f for f in as_list(_pick(record, "marc:datafield", "datafield"))
            if isinstance(f, dict)
        ]
        controlfields = [
            f for f in as_list(_pick(record, "marc:controlfield", "controlfield"))
            if isinstance(f, dict)
        ]

        def fields(tag: str) -> list[dict[str, Any]]:
            return [f for f in datafields if f.get("@tag") == tag]

        def first(tag: str, code: str) -> str | None:
            for f in fields(tag):
                values = _subfields(f, code)
                if values:
                    return values[0]
            return None

        title = None
        for f in fields("245"):
            parts = _subfields(f, "a") + _subfields(f, "b")
            if parts:
                title = ": ".join(p.rstrip(" /:;,.") for p in parts if p.rstrip(" /:;,."))
                break

        authors = []
        for tag in ("100", "700"):
            for f in fields(tag):
                names = _subfields(f, "a")
                if not names:
                    continue
                ids = _subfields(f, "0") + _subfields(f, "1")
                affiliations = _subfields(f, "u")
                authors.append(RecordAuthor(
                    name=names[0].rstrip(","),
                    identifier=ids[0] if ids else None,
                    affiliation=affiliations[0] if affiliations else None,
                ))

        doi = None
        for f in fields("024"):
            scheme = _subfields(f, "2")
            if f.get("@ind1") == "7" and (not scheme or scheme[0].lower() == "doi"):
                values = _subfields(f, "a")
                if values:
                    doi = extract_doi(values[0]) or extract_doi("doi:" + values[0])
                    if doi:
                        break

        urls = [u for f in fields("856") for u in _subfields(f, "u")]
        if doi is None:
            doi, _ = _split_identifiers(urls)
        url = next((u for u in urls if extract_doi(u) is None), urls[0] if urls else None)

        keywords = [k.rstrip(".") for tag in ("650", "651", "653") for f in fields(tag) for k in _subfields(f, "a")]

        control_001 = next(
            (text_of(f) for f in controlfields if f.get("@tag") == "001"),
            None,
        )

        extra = {}
        publisher = first("260", "b") or first("264", "b")
        if publisher:
            extra["publisher"] = publisher.rstrip(" ,:;")

        return {
            "title": title,
            "authors": authors,
            "abstract": first("520", "a"),
            "publication_date": parse_date(first("260", "c") or first("264", "c")),
            "journal": first("773", "t"),
            "doi": doi,
            "url": url,
            "identifiers": urls,
            "keywords": _dedupe(keywords),
            "is_open_access": is_open_access(
                [v for f in fields("506") + fields("540") for v in _subfields(f, "a")]
            ),
            "record_id": control_001,
            "additional_metadata": extra,
        }

    @staticmethod
    def _find_record(metadata: dict[str, Any]) -> dict[str, Any]:
        record = _pick(metadata, "marc:record", "record")
        if record is None:
            collection = _pick(metadata, "marc:collection", "collection")
            if isinstance(collection, dict):
                record = _pick(collection, "marc:record", "record")
        if isinstance(record, list):
            record = record[0] if record else None
        return record if isinstance(record, dict) else metadata


def _pick(node: Any, *keys: str) -> Any:
    if not isinstance(node, dict):
        return None
    for key in keys:
        if key in node:
            return node[key]
    return None


def _subfields(datafield: dict[str, Any], code: str) -> list[str]:
    values = []
    for sub in as_list(_pick(datafield, "marc:subfield", "subfield")):
        if isinstance(sub, dict) and sub.get("@code") == code:
            text = text_of(sub)
            if text:
                values.append(text)
    return values


# Ordered aliases per logical field for payloads we have no parser for
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "dc:title", "Title", "dcterms:title"),
    "authors": ("creator", "dc:creator", "author", "authors", "Author", "creators"),
    "abstract": ("description", "dc:description", "abstract", "Abstract", "dcterms:abstract"),
    "date": ("date", "dc:date", "publicationDate", "created", "dcterms:issued", "year"),
    "journal": ("source", "dc:source", "journal", "Journal", "container-title"),
    "identifiers": ("identifier", "dc:identifier", "url", "doi", "DOI"),
    "keywords": ("subject", "dc:subject", "keywords", "topics"),
    "provider": ("provider",),
    "rights": ("rights", "dc:rights", "license"),
}


def find_field(payload: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    """
    Look up the first alias present at the top level, then one level down.

    Aliases are tried in priority order at each level.
    """
    for alias in aliases:
        value = payload.get(alias)
        if value not in (None, "", []):
            return value
    for child in payload.values():
        for nested in as_list(child):
            if not isinstance(nested, dict):
                continue
            for alias in aliases:
                value = nested.get(alias)
                if value not in (None, "", []):
                    return value
    return None


class GenericParser(SchemaParser):
    """Best-effort extraction for unrecognized schemas."""

    def extract(self, metadata: dict[str, Any]) -> dict[str, Any]:
        # Embedded payloads we know how to read precisely
        if any(isinstance(metadata.get(k), dict) for k in DublinCoreParser.CONTAINER_KEYS):
            return PARSERS["oai_dc"].extract(metadata)
        if _pick(metadata, "marc:record", "marc:collection") is not None:
            return PARSERS["marc21"].extract(metadata)

        identifiers = []
        for alias in FIELD_ALIASES["identifiers"]:
            identifiers.extend(texts_of(find_field(metadata, (alias,))))
        identifiers = _dedupe(identifiers)
        doi, url = _split_identifiers(identifiers)

        authors = [
            a for a in (_author_from(v) for v in as_list(find_field(metadata, FIELD_ALIASES["authors"])))
            if a is not None
        ]

        keywords: list[str] = []
        for value in texts_of(find_field(metadata, FIELD_ALIASES["keywords"])):
            keywords.extend(k.strip() for k in re.split(r"[;,]", value) if k.strip())

        provider = text_of(find_field(metadata, FIELD_ALIASES["provider"]))

        return {
            "title": text_of(find_field(metadata, FIELD_ALIASES["title"])),
            "authors": authors,
            "abstract": text_of(find_field(metadata, FIELD_ALIASES["abstract"])),
            "publication_date": parse_date(find_field(metadata, FIELD_ALIASES["date"])),
            "journal": text_of(find_field(metadata, FIELD_ALIASES["journal"])),
            "doi": doi,
            "url": url,
            "identifiers": identifiers,
            "keywords": _dedupe(keywords),
            "provider": provider.lower() if provider else None,
            "is_open_access": is_open_access(texts_of(find_field(metadata, FIELD_ALIASES["rights"]))),
        }


PARSERS: dict[str, SchemaParser] = {}
for _parser in (DublinCoreParser(), MarcParser()):
    for _schema_id in _parser.schema_ids:
        PARSERS[_schema_id] = _parser

_GENERIC = GenericParser()


def get_parser(schema_id: str) -> SchemaParser:
    return PARSERS.get((schema_id or "").lower(), _GENERIC)


def parse_record(
    raw: dict[str, Any],
    schema_id: str,
    source_id: str | None = None,
) -> NormalizedRecord:
    """
    Parse one raw OAI-PMH record with the parser registered for schema_id.

    Raises:
        ParseError: The record has neither a title nor an identifier.
    """
    try:
        return get_parser(schema_id).parse(raw, source_id=source_id)
    except ParseError as e:
        e.record_id = (raw.get("header") or {}).get("identifier") or e.record_id
        raise
    except (TypeError, ValueError, AttributeError) as e:
        raise ParseError(
            f"unreadable {schema_id} record: {e}",
            record_id=(raw.get("header") or {}).get("identifier"),
        ) from e
