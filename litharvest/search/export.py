"""
CSV and BibTeX rendering of search results.

Usage:
    text = export_results(response.results, "bibtex")
"""

import csv
import io
import re

from litharvest.search.schemas import SearchResult

CSV_COLUMNS = [
    "id",
    "database",
    "title",
    "authors",
    "journal",
    "publication_date",
    "doi",
    "url",
    "keywords",
]

_BIBTEX_SPECIAL = re.compile(r"([&%$#_])")
_NON_ALNUM = re.compile(r"[^a-z0-9]")
# Identifiers, written as-is
_VERBATIM_FIELDS = frozenset({"doi", "url"})


def to_csv(results: list[SearchResult], include_abstract: bool = False) -> str:
    """One row per result. Lists are joined with '; '."""
    columns = CSV_COLUMNS + (["abstract"] if include_abstract else [])
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for result in results:
        row = {
            "id": result.id,
            "database": result.database_id,
            "title": result.title,
            "authors": "; ".join(result.authors),
            "journal": result.journal or "",
            "publication_date": (
                result.publication_date.isoformat() if result.publication_date else ""
            ),
            "doi": result.doi or "",
            "url": result.url or "",
            "keywords": "; ".join(result.keywords),
        }
        if include_abstract:
            row["abstract"] = result.abstract or ""
        writer.writerow(row)
    return buffer.getvalue()


def _bibtex_value(text: str) -> str:
    # Braces delimit values, so stray ones would unbalance the entry
    text = text.replace("{", "").replace("}", "")
    return _BIBTEX_SPECIAL.sub(r"\\\1", " ".join(text.split()))


def citation_key(result: SearchResult) -> str:
    """surname + year + first title word, e.g. doudna2021crispr."""
    surname = ""
    if result.authors:
        first = result.authors[0]
        # "Doe, Jane" and "Jane Doe" both give "doe"
        if "," in first:
            surname = first.split(",")[0]
        elif first.split():
            surname = first.split()[-1]
    year = str(result.publication_date.year) if result.publication_date else "nd"
    word = next(
        (w for w in (_NON_ALNUM.sub("", w.lower()) for w in result.title.split()) if w),
        "",
    )
    return _NON_ALNUM.sub("", surname.lower()) + year + word


def to_bibtex(results: list[SearchResult], include_abstract: bool = False) -> str:
    """
    One entry per result: @article when a journal is known, else @misc.

    Citation keys are made unique within the export by appending a, b, ...
    """
    seen: dict[str, int] = {}
    entries = []
    for result in results:
        key = citation_key(result)
        count = seen.get(key, 0)
        seen[key] = count + 1
        if count:
            key += chr(ord("a") + count - 1) if count <= 26 else str(count)

        fields = [("title", result.title)]
        if result.authors:
            fields.append(("author", " and ".join(result.authors)))
        if result.journal:
            fields.append(("journal", result.journal))
        if result.publication_date:
            fields.append(("year", str(result.publication_date.year)))
        if result.doi:
            fields.append(("doi", result.doi))
        if result.url:
            fields.append(("url", result.url))
        if result.keywords:
            fields.append(("keywords", ", ".join(result.keywords)))
        if include_abstract and result.abstract:
            fields.append(("abstract", result.abstract))

        entry_type = "article" if result.journal else "misc"
        body = ",\n".join(
            f"  {name} = {{{value if name in _VERBATIM_FIELDS else _bibtex_value(value)}}}"
            for name, value in fields
        )
        entries.append(f"@{entry_type}{{{key},\n{body}\n}}")
    return "\n\n".join(entries) + ("\n" if entries else "")


def export_results(
    results: list[SearchResult],
    fmt: str,
    include_abstract: bool = False,
) -> str:
    """
    Render results as "csv" or "bibtex".

    Raises:
        ValueError: Unknown format.
    """
    if fmt == "csv":
        return to_csv(results, include_abstract=include_abstract)
    if fmt == "bibtex":
        return to_bibtex(results, include_abstract=include_abstract)
    raise ValueError(f"Unsupported export format: {fmt}")
