"""Inverted index lifecycle, corpus statistics invariants and concurrent access."""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from fieldrank.errors import DocumentNotFoundError, UnknownFieldError
from fieldrank.index import InvertedIndex
from fieldrank.query import QueryEngine
from fieldrank.schema import FieldSchema
from fieldrank.tokenizer import tokenize


def assert_invariants(index: InvertedIndex) -> None:
    """Field lengths match postings, df <= N, averages match totals."""
    n = index.document_count()
    assert n == len(index)
    exported = index.export()
    vocabulary = set()
    for path, fields in exported.items():
        for name in index.schema.names:
            counts = fields.get(name, {})
            assert index.field_length(path, name) == sum(counts.values())
            vocabulary.update(counts)
    for term in vocabulary:
        postings = index.postings_for(term)
        assert index.document_frequency(term) == len(postings) <= n
        assert postings.paths() == sorted(postings.paths())
    for name in index.schema.names:
        total = sum(index.field_length(p, name) for p in exported)
        expected = total / n if n else 0.0
        assert index.avg_field_length(name) == pytest.approx(expected)


@pytest.fixture
def index():
    return InvertedIndex(FieldSchema.default())


def test_round_trip_field_lengths(index):
    fields = {"name": "report-2024.final.md", "extension": "md", "content": "Quarterly report, final draft."}
    index.upsert("docs/report.md", fields)
    for name, text in fields.items():
        assert index.field_length("docs/report.md", name) == len(tokenize(text))
    assert index.field_length("docs/report.md", "metadata") == 0
    assert_invariants(index)


def test_corpus_statistics(index):
    index.upsert("a.txt", {"name": "a.txt", "content": "the quick fox"})
    index.upsert("b.txt", {"name": "b.txt", "content": "the quick quick fox fox fox"})
    assert index.document_count() == 2
    assert index.avg_field_length("content") == pytest.approx(4.5)
    assert index.avg_field_length("name") == pytest.approx(2.0)
    assert index.avg_field_length("metadata") == 0.0
    assert index.document_frequency("fox") == 2
    assert index.document_frequency("txt") == 2
    assert index.document_frequency("wolf") == 0
    assert index.statistics.field_document_count(index.schema.position("content")) == 2
    assert index.statistics.field_document_count(index.schema.position("metadata")) == 0

    posting = index.postings_for("fox").get("b.txt")
    assert posting.count(index.schema.position("content")) == 3
    assert posting.total == 3
    assert_invariants(index)


def test_term_in_several_fields_counts_once_for_df(index):
    index.upsert("fox.txt", {"name": "fox.txt", "content": "a fox"})
    assert index.document_frequency("fox") == 1
    posting = index.postings_for("fox")[0]
    assert posting.count(index.schema.position("name")) == 1
    assert posting.count(index.schema.position("content")) == 1


def test_upsert_replaces_previous_version(index):
    index.upsert("p", {"content": "alpha beta", "metadata": "draft"})
    index.upsert("q", {"content": "beta"})
    created = index.upsert_counts("p", {"content": {"gamma": 2}})
    assert created is False
    assert index.document_count() == 2
    assert index.field_length("p", "content") == 2
    assert index.field_length("p", "metadata") == 0
    assert "p" not in index.postings_for("alpha")
    assert "p" not in index.postings_for("draft")
    assert index.postings_for("beta").paths() == ["q"]
    assert index.document_frequency("alpha") == 0
    assert index.document_frequency("gamma") == 1
    assert index.avg_field_length("metadata") == 0.0
    assert_invariants(index)


def test_upsert_same_content_is_stable(index):
    index.upsert("p", {"content": "alpha beta"})
    before = index.export()
    index.upsert("p", {"content": "alpha beta"})
    assert index.export() == before
    assert index.document_frequency("alpha") == 1
    assert index.document_count() == 1


def test_remove(index):
    index.upsert("a", {"content": "fox dog"})
    index.upsert("b", {"content": "fox"})
    assert index.remove("a") is True
    assert index.document_count() == 1
    assert "a" not in index
    assert index.postings_for("fox").paths() == ["b"]
    assert len(index.postings_for("dog")) == 0
    assert index.document_frequency("dog") == 0
    assert index.avg_field_length("content") == pytest.approx(1.0)
    assert index.remove("a") is False
    assert index.document_count() == 1
    assert_invariants(index)


def test_remove_never_indexed_is_noop(index):
    assert index.remove("ghost") is False
    assert index.document_count() == 0


def test_remove_last_document_resets_statistics(index):
    index.upsert("a", {"content": "fox"})
    index.remove("a")
    assert index.document_count() == 0
    assert index.avg_field_length("content") == 0.0
    assert index.vocabulary_size == 0


def test_field_length_errors(index):
    index.upsert("a", {"content": "fox"})
    with pytest.raises(DocumentNotFoundError):
        index.field_length("missing", "content")
    with pytest.raises(UnknownFieldError):
        index.field_length("a", "colour")


def test_unknown_fields_rejected_individually(index):
    rejected = index.upsert("a", {"content": "fox", "colour": "red", "size": "large"})
    assert sorted(rejected) == ["colour", "size"]
    assert index.field_length("a", "content") == 1
    assert index.document_frequency("red") == 0
    assert len(index.postings_for("red")) == 0
    assert_invariants(index)


def test_upsert_texts_reports_and_logs_once(index, caplog):
    with caplog.at_level("WARNING", logger="fieldrank"):
        created, indexed, rejected = index.upsert_texts("a", {"content": "fox", "colour": "red"})
    assert (created, indexed, rejected) == (True, ("content",), ("colour",))
    assert len([r for r in caplog.records if "colour" in r.getMessage()]) == 1
    assert index.upsert_texts("a", {"name": "a"}) == (False, ("name",), ())


def test_upsert_counts_validation(index):
    with pytest.raises(UnknownFieldError):
        index.upsert_counts("a", {"colour": {"red": 1}})
    with pytest.raises(ValueError):
        index.upsert_counts("a", {"content": {"fox": -1}})
    with pytest.raises(ValueError):
        index.upsert_counts("", {"content": {"fox": 1}})
    assert index.document_count() == 0

    index.upsert_counts("a", {"content": {"fox": 2, "dog": 0}})
    assert index.field_length("a", "content") == 2
    assert index.document_frequency("dog") == 0


def test_document_without_fields(index):
    index.upsert("empty", {"content": "   "})
    assert index.document_count() == 1
    assert index.field_length("empty", "content") == 0
    assert index.avg_field_length("content") == 0.0


def test_posting_list_ordered_by_path(index):
    for path in ["m", "z", "a", "k"]:
        index.upsert(path, {"content": "shared"})
    postings = index.postings_for("shared")
    assert postings.paths() == ["a", "k", "m", "z"]
    assert [p.path for p in postings] == ["a", "k", "m", "z"]
    assert postings.get("nope") is None


def test_snapshot(index):
    index.upsert("a", {"name": "a.txt", "content": "fox"})
    index.upsert("b", {"content": "dog dog"})
    index.upsert("c", {"content": "cat"})
    snapshot = index.snapshot(["fox", "dog", "fox", "wolf"])
    assert snapshot.terms == ("fox", "dog", "wolf")
    assert snapshot.paths == ("a", "b")
    assert snapshot.document_count == 3
    assert snapshot.document_frequency("dog") == 1
    assert snapshot.document_frequency("wolf") == 0
    assert np.array_equal(snapshot.document_frequencies, [1.0, 1.0, 0.0])
    content = index.schema.position("content")
    assert snapshot.lengths[1, content] == 2
    tf = snapshot.term_frequencies("dog")
    assert tf.shape == (2, len(index.schema))
    assert tf[1, content] == 2 and tf[0].sum() == 0

    # Later writes do not leak into an existing snapshot.
    index.upsert("b", {"content": "fox"})
    assert snapshot.term_frequencies("dog")[1, content] == 2
    assert snapshot.document_count == 3


def test_document_frequency_never_exceeds_count(index):
    rng = np.random.default_rng(7)
    vocabulary = ["alpha", "beta", "gamma", "delta", "epsilon"]
    for i in range(40):
        words = rng.choice(vocabulary, size=rng.integers(0, 8))
        index.upsert(f"doc{i % 15}", {"content": " ".join(words), "name": f"doc{i}"})
        if i % 7 == 0:
            index.remove(f"doc{(i + 3) % 15}")
        assert_invariants(index)


# -----------------------------------------------------------------------------
# Concurrency
# -----------------------------------------------------------------------------

ROUNDS = 200


def test_reader_never_sees_partial_update():
    index = InvertedIndex(FieldSchema.default())
    index.upsert("shared", {"content": "alpha alpha"})
    for i in range(20):
        index.upsert(f"other-{i}", {"content": "alpha beta gamma"})
    stop = threading.Event()
    violations = []

    def writer():
        for i in range(ROUNDS):
            index.upsert("shared", {"content": "beta" if i % 2 else "alpha alpha"})
        stop.set()

    def reader():
        while not stop.is_set():
            snapshot = index.snapshot(["alpha", "beta"])
            holders = [t for t in ("alpha", "beta") if "shared" in snapshot.postings.get(t, {})]
            if len(holders) != 1:
                violations.append(holders)
                continue
            row = snapshot.rows["shared"]
            expected = 2 if holders == ["alpha"] else 1
            if snapshot.lengths[row].sum() != expected:
                violations.append(snapshot.lengths[row].tolist())

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert violations == []
    assert index.document_count() == 21
    assert_invariants(index)


def test_parallel_ingest_of_distinct_paths():
    index = InvertedIndex(FieldSchema.default())

    def ingest(i):
        index.upsert(f"doc-{i}.txt", {"name": f"doc-{i}.txt", "content": "common " * (i % 5 + 1)})

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(ingest, range(400)))

    assert index.document_count() == 400
    assert index.document_frequency("common") == 400
    assert index.document_frequency("txt") == 400
    assert_invariants(index)


def test_concurrent_updates_and_deletes_keep_statistics_consistent():
    index = InvertedIndex(FieldSchema.default())

    def churn(worker):
        for i in range(100):
            path = f"doc-{(worker * 7 + i) % 30}"
            if i % 3 == 2:
                index.remove(path)
            else:
                index.upsert(path, {"content": f"term{i % 4} shared", "metadata": f"w{worker}"})

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(churn, range(6)))

    assert_invariants(index)
    assert index.document_frequency("shared") == index.document_count()


def test_queries_during_ingest(fox_engine):
    queries = QueryEngine(fox_engine.index)
    errors = []

    def ingest():
        for i in range(200):
            fox_engine.add_or_update(f"n{i}.txt", {"content": "fox " * (i % 3 + 1)})

    def search():
        for _ in range(200):
            results = queries.search("fox", top_k=5).top(5)
            scores = [score for _, score in results]
            if scores != sorted(scores, reverse=True) or any(s < 0 for s in scores):
                errors.append(results)

    threads = [threading.Thread(target=ingest), threading.Thread(target=search), threading.Thread(target=search)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(fox_engine.search("fox")) == 202
