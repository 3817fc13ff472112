"""
SearchEngine: the surface exposed to the HTTP layer and the CLI.

    engine = SearchEngine()
    engine.add_or_update("notes/a.txt", {"name": "a.txt", "content": "the quick fox"})
    engine.search("fox").to_json()   # '[["notes/a.txt", 0.28...]]'
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from fieldrank.errors import FieldRankError, SnapshotError
from fieldrank.index import InvertedIndex
from fieldrank.ingest import DirectoryReport, Ingestor, IngestReport, index_directory
from fieldrank.query import QueryEngine, SearchResults
from fieldrank.schema import FieldSchema
from fieldrank.scorer import BM25FScorer, ScoringParameters
from fieldrank.tokenizer import Tokenizer, get_tokenizer

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SearchEngine:
    """
    Wires tokenizer, schema, index, ingestion and query engine together.

    Args:
        schema: Field schema; defaults to FIELDRANK_SCHEMA or the built-in one.
        tokenizer: Shared by indexing and querying; defaults to the module one.
        params: Default BM25F parameters.
    """

    def __init__(
        self,
        schema: FieldSchema | None = None,
        tokenizer: Tokenizer | None = None,
        params: ScoringParameters | None = None,
    ):
        self.schema = schema or FieldSchema.configured()
        self.tokenizer = tokenizer or get_tokenizer()
        self.index = InvertedIndex(self.schema, self.tokenizer)
        self.ingestor = Ingestor(self.index)
        self.queries = QueryEngine(self.index, BM25FScorer(self.schema, params))

    # ----- External interface -----

    def search(
        self,
        query_text: object,
        top_k: int | None = None,
        k1: float | None = None,
        b: float | Mapping[str, float] | None = None,
    ) -> SearchResults:
        """Ranked ``(path, score)`` pairs; ``k1``/``b`` override the defaults for this query."""
        params = None
        if k1 is not None or b is not None:
            default = self.queries.scorer.params
            params = ScoringParameters(k1=default.k1 if k1 is None else k1, b=default.b if b is None else b)
        return self.queries.search(query_text, top_k=top_k, params=params)

    def add_or_update(self, path: str, fields: Mapping[str, object]) -> IngestReport:
        return self.ingestor.add_or_update(path, fields)

    def delete(self, path: str) -> bool:
        return self.ingestor.delete(path)

    def index_directory(self, root: str | os.PathLike) -> DirectoryReport:
        return index_directory(self.ingestor, root)

    def __len__(self) -> int:
        return len(self.index)

    def __repr__(self) -> str:
        return f"SearchEngine({self.index!r})"

    # ----- Snapshots -----

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "schema": self.schema.to_dict(),
            "tokenizer": {
                "stopwords": sorted(self.tokenizer.stopwords),
                "min_length": self.tokenizer.min_length,
            },
            "documents": self.index.export(),
        }

    def save(self, path: str | os.PathLike) -> None:
        """Writes a JSON snapshot atomically (temporary file, then rename)."""
        path = Path(path)
        data = self.to_dict()
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        except OSError as exc:
            raise SnapshotError(f"could not write snapshot {path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise SnapshotError(f"could not write snapshot {path}: {exc}") from exc
        logger.info("Saved %d documents to %s", len(data["documents"]), path)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], params: ScoringParameters | None = None) -> SearchEngine:
        if not isinstance(data, Mapping) or data.get("version") != SNAPSHOT_VERSION:
            raise SnapshotError("unsupported snapshot version")
        documents = data.get("documents")
        if not isinstance(documents, Mapping):
            raise SnapshotError("snapshot has no document table")
        try:
            schema = FieldSchema.from_mapping(data["schema"]) if "schema" in data else FieldSchema.default()
            options = data.get("tokenizer") or {}
            tokenizer = Tokenizer(options.get("stopwords"), options.get("min_length", 1))
            engine = cls(schema, tokenizer, params)
            for doc_path, field_counts in documents.items():
                engine.index.upsert_counts(doc_path, field_counts)
        except (FieldRankError, ValueError, TypeError, AttributeError) as exc:
            raise SnapshotError(f"malformed snapshot: {exc}") from exc
        return engine

    @classmethod
    def load(cls, path: str | os.PathLike, params: ScoringParameters | None = None) -> SearchEngine:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotError(f"could not read snapshot {path}: {exc}") from exc
        engine = cls.from_dict(data, params)
        logger.info("Loaded %d documents from %s", len(engine), path)
        return engine
