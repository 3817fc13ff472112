"""
Write entry point: add, update and delete documents, and turn files on disk
into field texts.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from xml.parsers.expat import ExpatError

import html2text
import xmltodict

from fieldrank.errors import DocumentParseError
from fieldrank.index import InvertedIndex

logger = logging.getLogger(__name__)

PLAIN_TEXT_EXTENSIONS = frozenset({"txt", "md"})
HTML_EXTENSIONS = frozenset({"html", "htm", "xhtml"})
XML_EXTENSIONS = frozenset({"xml"})
SUPPORTED_EXTENSIONS = PLAIN_TEXT_EXTENSIONS | HTML_EXTENSIONS | XML_EXTENSIONS


@dataclass(frozen=True)
class IngestReport:
    """Outcome of one add_or_update call."""

    path: str
    created: bool
    indexed_fields: tuple[str, ...]
    rejected_fields: tuple[str, ...] = ()


@dataclass
class DirectoryReport:
    indexed: int = 0
    skipped: int = 0
    skipped_paths: list[str] = field(default_factory=list)


class Ingestor:
    """Coordinates tokenization and index updates for callers."""

    def __init__(self, index: InvertedIndex):
        self.index = index

    def add_or_update(self, path: str, fields: Mapping[str, object]) -> IngestReport:
        """
        Indexes ``fields`` under ``path``, fully replacing a previous version.

        Unknown field names are rejected one by one and reported; the remaining
        fields are still indexed.
        """
        created, indexed, rejected = self.index.upsert_texts(path, fields)
        return IngestReport(path, created, indexed, rejected)

    def delete(self, path: str) -> bool:
        return self.index.remove(path)


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------


def _read_text(file_path: Path) -> str:
    try:
        return file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentParseError(f"could not read {file_path}: {exc}") from exc


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = True
    converter.ignore_images = True
    converter.ignore_emphasis = True
    converter.body_width = 0
    return converter.handle(html)


def _xml_text_nodes(node: Any) -> list[str]:
    if node is None:
        return []
    if isinstance(node, str):
        return [node]
    if isinstance(node, list):
        return [text for item in node for text in _xml_text_nodes(item)]
    if isinstance(node, Mapping):
        # "@..." keys are attributes, not character data
        return [text for key, value in node.items() if not key.startswith("@") for text in _xml_text_nodes(value)]
    return [str(node)]


def xml_to_text(xml: str, source: object = "<string>") -> str:
    """All character data of an XML document, joined by spaces."""
    try:
        data = xmltodict.parse(xml)
    except ExpatError as exc:
        raise DocumentParseError(f"malformed XML in {source}: {exc}") from exc
    return " ".join(_xml_text_nodes(data))


def fields_from_file(file_path: str | os.PathLike, root: str | os.PathLike | None = None) -> dict[str, str]:
    """
    Derives indexable fields from a file.

    Returns ``name`` (file name), ``extension`` (without the dot), ``content``
    (extracted text) and, when ``root`` is given, ``metadata`` (the directory
    names between ``root`` and the file).

    Raises:
        DocumentParseError: unsupported extension, unreadable or malformed file.
    """
    file_path = Path(file_path)
    extension = file_path.suffix[1:].lower()
    if extension not in SUPPORTED_EXTENSIONS:
        reason = f"unsupported extension {extension!r}" if extension else "no extension"
        raise DocumentParseError(f"cannot index {file_path}: {reason}")

    text = _read_text(file_path)
    if extension in HTML_EXTENSIONS:
        content = html_to_text(text)
    elif extension in XML_EXTENSIONS:
        content = xml_to_text(text, file_path)
    else:
        content = text

    fields = {"name": file_path.name, "extension": extension, "content": content}
    if root is not None:
        try:
            parents = file_path.parent.relative_to(root).parts
        except ValueError:
            parents = ()
        if parents:
            fields["metadata"] = " ".join(parents)
    return fields


def index_directory(ingestor: Ingestor, root: str | os.PathLike) -> DirectoryReport:
    """
    Recursively indexes every supported file below ``root``, keyed by its
    POSIX path. Files that cannot be parsed are logged and skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(f"not a directory: {root}")

    report = DirectoryReport()
    for file_path in sorted(p for p in root.rglob("*") if p.is_file()):
        try:
            fields = fields_from_file(file_path, root)
        except DocumentParseError as exc:
            logger.warning("Skipping %s", exc)
            report.skipped += 1
            report.skipped_paths.append(file_path.as_posix())
            continue
        ingestor.add_or_update(file_path.as_posix(), fields)
        report.indexed += 1
        logger.debug("Indexed %s", file_path)

    logger.info("Indexed %d files under %s, skipped %d", report.indexed, root, report.skipped)
    return report
