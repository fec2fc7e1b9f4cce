"""
Tests for the retrieval pipeline: BM25, fusion, grouping, context assembly and
the hybrid retriever.
"""

from __future__ import annotations

import json
import math

import pytest

from src.rag import (
    BM25Index,
    ChunkRecord,
    DocumentRecord,
    EmptyCorpusError,
    FusedResult,
    HybridRetriever,
    IndexNotBuiltError,
    LengthMismatch,
    ParentGroup,
    RAGConfig,
    SearchHit,
    assemble_context,
    build_chunked_context,
    build_context,
    chunk_document,
    dynamic_chunk,
    estimate_context_budget,
    estimate_tokens,
    fuse,
    group_by_parent,
    load_documents,
    rrf_merge,
    rrf_score,
)
from src.embeddings import ExecutorError
from src.rag.bm25 import PostingsBM25


@pytest.fixture
def bm25_docs() -> list[str]:
    return ["cat sat", "dog sat", "cat cat mat"]


# --- BM25 ------------------------------------------------------------------


def test_bm25_ranks_by_term_frequency(bm25_docs: list[str]):
    """Test BM25 index search."""
    index = BM25Index.from_documents(bm25_docs, ["d1", "d2", "d3"])
    hits = index.search("cat", top_k=10)

    assert [h.doc_id for h in hits] == ["d3", "d1"]
    assert all(h.score > 0 for h in hits)


def test_bm25_score_matches_formula(bm25_docs: list[str]):
    """Test BM25 scores against the formula."""
    index = BM25Index.from_documents(bm25_docs, ["d1", "d2", "d3"])
    hits = {h.doc_id: h.score for h in index.search("cat", top_k=0)}

    n, df, k1, b = 3, 2, 1.5, 0.75
    avgdl = 7 / 3
    idf = math.log((n - df + 0.5) / (df + 0.5) + 1)
    expected_d3 = idf * 2 * (k1 + 1) / (2 + k1 * (1 - b + b * 3 / avgdl))
    assert hits["d3"] == pytest.approx(expected_d3)


def test_bm25_skips_untouched_documents(bm25_docs: list[str]):
    """Documents sharing no terms are not returned."""
    index = BM25Index.from_documents(bm25_docs, ["d1", "d2", "d3"])
    assert [h.doc_id for h in index.search("dog", top_k=10)] == ["d2"]
    assert index.search("unicorn", top_k=10) == []
    assert index.search("!!!", top_k=10) == []


def test_bm25_repeated_query_terms_count_once(bm25_docs: list[str]):
    """Repeated query terms count once."""
    index = BM25Index.from_documents(bm25_docs, ["d1", "d2", "d3"])
    once = index.search("cat", top_k=0)
    twice = index.search("cat cat", top_k=0)
    assert [h.score for h in once] == pytest.approx([h.score for h in twice])


def test_bm25_scorer_is_a_rank_bm25_model(bm25_docs: list[str]):
    """Test the rank_bm25 scorer."""
    scorer = PostingsBM25([d.split() for d in bm25_docs])
    scores = scorer.get_scores(["cat"])
    assert scores[1] == 0.0
    assert scores[2] > scores[0] > 0
    assert scorer.get_batch_scores(["cat"], [2, 1]) == pytest.approx([scores[2], 0.0])


def test_bm25_build_validation():
    """Test BM25 build validation."""
    index = BM25Index()
    with pytest.raises(EmptyCorpusError):
        index.build([], [])
    with pytest.raises(LengthMismatch):
        index.build(["a"], ["1", "2"])
    with pytest.raises(IndexNotBuiltError):
        index.search("a")


def test_bm25_mapping_documents_carry_metadata():
    """Test BM25 over metadata records."""
    docs = [{"text": "tcp handshake", "parent_id": "net", "chunk_index": 0}]
    hit = BM25Index.from_documents(docs, ["net::chunk_0"]).search("handshake")[0]
    assert hit.parent_id == "net"
    assert hit.text == "tcp handshake"
    assert hit.position == 0


# --- fusion ----------------------------------------------------------------


def _hits(ids):
    return [SearchHit(doc_id=i, score=1.0 - n * 0.1) for n, i in enumerate(ids)]


def test_fuse_combines_ranks():
    """Test RRF fusion of two rankings."""
    fused = fuse(_hits(["A", "B"]), _hits(["B", "C"]), k=60, vector_weight=0.5, top_k=10)

    assert [f.doc_id for f in fused] == ["B", "A", "C"]
    b = fused[0]
    assert isinstance(b, FusedResult)
    assert b.score == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert (b.vector_rank, b.bm25_rank) == (1, 0)
    assert fused[1].score == pytest.approx(0.5 / 61)
    assert fused[2].score == pytest.approx(0.5 / 62)


def test_fuse_weight_extremes_short_circuit():
    """Extreme weights return one list as-is."""
    vector, bm25 = _hits(["A", "B"]), _hits(["C"])
    assert fuse(vector, bm25, vector_weight=1.0) == vector
    assert fuse(vector, bm25, vector_weight=0.0) == bm25
    # No BM25 hits: fall back to fusing whatever vector hits there are.
    assert [f.doc_id for f in fuse(vector, [], vector_weight=0.0)] == ["A", "B"]


def test_fuse_weight_is_monotone_for_vector_only_hits():
    """Test weight monotonicity."""
    vector, bm25 = _hits(["A", "X"]), _hits(["B", "X"])
    scores = []
    for w in (0.2, 0.4, 0.6, 0.8):
        fused = {f.doc_id: f.score for f in fuse(vector, bm25, vector_weight=w)}
        scores.append(fused["A"])
    assert scores == sorted(scores)


def test_fuse_skips_hits_without_id_and_truncates():
    """Hits without ids are skipped."""
    vector = [SearchHit(doc_id="", score=1.0), *_hits(["A", "B", "C"])]
    fused = fuse(vector, _hits(["C"]), vector_weight=0.5, top_k=2)
    assert len(fused) == 2
    assert all(f.doc_id for f in fused)


def test_rrf_merge_weights():
    """Test weighted RRF merge."""
    merged = rrf_merge([[("a", 1.0), ("b", 0.5)], [("b", 3.0)]], k=2, weights=[1.0, 2.0])
    assert merged[0][0] == "b"
    assert merged[0][1] == pytest.approx(1 / 62 + 2 / 61)
    with pytest.raises(ValueError):
        rrf_merge([[("a", 1.0)]], weights=[1.0, 1.0])


def test_fuse_agrees_with_weighted_rrf_merge():
    """fuse scores match rrf_merge on the same lists."""
    vector = _hits(["A", "B", "C"])
    bm25 = _hits(["C", "A"])
    fused = {f.doc_id: f.score for f in fuse(vector, bm25, vector_weight=0.7, top_k=0)}
    merged = rrf_merge(
        [[(h.doc_id, h.score) for h in vector], [(h.doc_id, h.score) for h in bm25]],
        k=10,
        weights=[0.7, 0.3],
    )
    assert fused == pytest.approx(dict(merged))
    assert rrf_score(0) == pytest.approx(1 / 61)


# --- grouping --------------------------------------------------------------


def _chunk(chunk_id, parent, score, position, text=""):
    return SearchHit(
        doc_id=chunk_id,
        score=score,
        text=text or chunk_id,
        metadata={"parent_id": parent, "chunk_index": position, "chunk_chars": 10, "topic": "t"},
        parent_id=parent,
    )


def test_group_by_parent_orders_chunks_by_position():
    """Test grouping keeps reading order."""
    chunks = [_chunk("P1", "P", 0.9, 1), _chunk("P0", "P", 0.95, 0), _chunk("Q0", "Q", 0.5, 0)]
    groups = group_by_parent(chunks, top_k=5)

    assert [g.parent_id for g in groups] == ["P", "Q"]
    p = groups[0]
    assert [c.doc_id for c in p.chunks] == ["P0", "P1"]
    assert p.max_score == pytest.approx(0.95)
    assert p.avg_score == pytest.approx(0.925)
    assert p.text == "P0 P1"
    assert p.metadata == {"topic": "t"}


def test_group_by_parent_caps_chunks_and_groups():
    """Test grouping caps."""
    chunks = [_chunk(f"P{i}", "P", 1.0 - i * 0.1, i) for i in range(4)]
    chunks += [_chunk("Q0", "Q", 0.2, 0), _chunk("R0", "R", 0.1, 0)]
    groups = group_by_parent(chunks, top_k=2, max_chunks_per_parent=2)

    assert [g.parent_id for g in groups] == ["P", "Q"]
    assert [c.doc_id for c in groups[0].chunks] == ["P0", "P1"]


def test_group_by_parent_uses_parent_lookup_and_self_parents():
    """Test parent lookup in grouping."""
    orphan = SearchHit(doc_id="solo", score=0.4, text="solo text")
    chunks = [_chunk("P0", "P", 0.9, 0), orphan]
    parents = {"P": {"text": "full parent text", "author": "ann"}}
    groups = group_by_parent(chunks, top_k=5, parent_lookup=parents.get)

    assert groups[0].text == "full parent text"
    assert groups[0].metadata["author"] == "ann"
    assert groups[1].parent_id == "solo"
    assert groups[1].text == "solo text"


# --- context assembly ------------------------------------------------------


def test_context_token_estimate():
    """Test context token estimation."""
    assert estimate_tokens("") == 0
    assert estimate_tokens("a" * 35) == math.ceil(35 / 3.5 * 1.1)


def test_context_budget():
    """Test context budget."""
    assert estimate_context_budget() == 2048 - 150 - 768
    assert estimate_context_budget(context_window=1000) == 500
    prompt = "x" * 350
    assert estimate_context_budget(system_prompt=prompt) == 2048 - estimate_tokens(prompt) - 150 - 768


def test_build_context_formats_and_stops_at_budget():
    """Test flat context assembly."""
    hits = [
        SearchHit(doc_id="a", score=1.0, text="alpha " * 5, metadata={"source": "wiki", "text": "ignored"}),
        SearchHit(doc_id="b", score=0.9, text="beta " * 200),
        SearchHit(doc_id="c", score=0.8, text="gamma"),
    ]
    result = build_context(hits, token_budget=100)

    assert result.context.startswith("[1] alpha")
    assert "\n   (source: wiki)" in result.context
    assert "beta" not in result.context
    assert "gamma" not in result.context
    assert result.limited
    assert result.tokens_used < 100
    assert result.max_tokens == 100


def test_build_context_metadata_fields_filter():
    """Test metadata field filtering."""
    hits = [SearchHit(doc_id="a", score=1.0, text="alpha", metadata={"source": "wiki", "year": 2020})]
    result = build_context(hits, token_budget=100, metadata_fields=["year"])
    assert "(year: 2020)" in result.context
    assert "source" not in result.context
    assert not build_context(hits, 100, include_metadata=False).context.count("(")


def test_build_chunked_context_layout():
    """Test chunked context layout."""
    group = ParentGroup(
        parent_id="P",
        chunks=[_chunk("P0", "P", 0.9, 0, text="first passage"), _chunk("P1", "P", 0.8, 1, text="second passage")],
        max_score=0.9,
    )
    result = build_chunked_context([group], token_budget=500)

    assert "[Document 1]" in result.context
    assert "Metadata: topic: t" in result.context
    assert "Relevant passages:" in result.context
    assert "» first passage" in result.context
    assert result.context.index("first passage") < result.context.index("second passage")
    assert "chunk_chars" not in result.context
    assert not result.limited


def test_oversized_chunk_is_split_to_fit():
    """Oversized chunks are split to fit."""
    big = "word " * 400
    group = ParentGroup(parent_id="P", chunks=[_chunk("P0", "P", 0.9, 0, text=big)], max_score=0.9)
    result = build_chunked_context([group], token_budget=300, include_metadata=False)

    assert result.context.count("»") >= 1
    assert result.tokens_used < 300
    assert result.limited


def test_dynamic_chunk_overlaps():
    """Test dynamic chunking."""
    text = "".join(chr(ord("a") + i % 26) for i in range(200))
    pieces = dynamic_chunk(text, target_tokens=10, overlap=0.2)
    assert all(len(p) <= 35 for p in pieces)
    assert pieces[0][-7:] == pieces[1][:7]
    assert "".join(p[: len(p) - 7] for p in pieces[:-1]) + pieces[-1] == text


def test_assemble_context_dispatches():
    """Test context dispatch by input type."""
    group = ParentGroup(parent_id="P", chunks=[_chunk("P0", "P", 0.9, 0)], max_score=0.9)
    assert "[Document 1]" in assemble_context([group], 500).context
    assert assemble_context([SearchHit(doc_id="a", score=1.0, text="x")], 500).context == "[1] x"
    assert assemble_context([], 500).context == ""


# --- documents and chunking ------------------------------------------------


def test_short_document_is_single_chunk():
    """Test short documents stay whole."""
    doc = DocumentRecord(id="d", text="  short text  ", metadata={"k": "v"})
    chunks = chunk_document(doc, chunk_size=100)
    assert len(chunks) == 1
    assert chunks[0].id == "d::chunk_0"
    assert chunks[0].text == "short text"
    assert chunks[0].metadata["k"] == "v"
    assert chunks[0].metadata["chunk_position"] == "1/1"


def test_long_document_is_chunked_with_overlap():
    """Test document chunking."""
    text = "".join(chr(ord("a") + i % 26) for i in range(1000))
    chunks = chunk_document(DocumentRecord(id="d", text=text), chunk_size=200, chunk_overlap=50, min_chunk_size=20)

    assert all(isinstance(c, ChunkRecord) for c in chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert all(len(c.text) <= 200 for c in chunks)
    assert chunks[0].text[-50:] == chunks[1].text[:50]
    assert all(c.parent_id == "d" for c in chunks)


def test_load_documents(tmp_path):
    """Test loading documents from JSONL."""
    path = tmp_path / "corpus.jsonl"
    lines = [
        json.dumps({"id": "a", "text": "alpha", "metadata": {"k": 1}}),
        "",
        json.dumps({"id": 2, "text": "beta"}),
    ]
    path.write_text("\n".join(lines), encoding="utf-8")

    docs = load_documents(path)
    assert [d.id for d in docs] == ["a", "2"]
    assert docs[0].metadata == {"k": 1}

    with pytest.raises(FileNotFoundError):
        load_documents(tmp_path / "missing.jsonl")


# --- hybrid retriever ------------------------------------------------------


def test_retriever_requires_index(pipeline):
    """Test retrieval before indexing."""
    with pytest.raises(IndexNotBuiltError):
        HybridRetriever(pipeline).retrieve("anything")


def test_retriever_finds_relevant_document(retriever: HybridRetriever):
    """Test hybrid retrieval."""
    outcome = retriever.retrieve("deadlock resource processes")

    assert outcome.groups[0].parent_id == "deadlock"
    assert outcome.chunk_based
    assert "[Document 1]" in outcome.context.context
    assert outcome.metrics["fusion_method"] == "RRF"
    assert outcome.metrics["requested_k"] == 5
    assert outcome.metrics["parent_count"] == len(outcome.groups)


def test_retriever_groups_chunks_of_long_documents(retriever: HybridRetriever):
    """Test chunk grouping in retrieval."""
    outcome = retriever.retrieve("round robin scheduling time slice", num_results=2)
    top = outcome.groups[0]

    assert top.parent_id == "scheduling"
    assert len(top.chunks) > 1
    positions = [c.position for c in top.chunks]
    assert positions == sorted(positions)
    assert top.text.startswith("Process scheduling decides")


def test_retriever_weight_extremes(retriever: HybridRetriever, backend):
    """Test vector-only and BM25-only retrieval."""
    calls = len(backend.calls)
    bm25_only = retriever.retrieve("handshake", vector_weight=0.0)
    assert bm25_only.metrics["fusion_method"] == "bm25-only"
    assert bm25_only.metrics["vector_count"] == 0
    assert len(backend.calls) == calls
    assert bm25_only.groups[0].parent_id == "tcp"

    vector_only = retriever.retrieve("tcp handshake connection", vector_weight=1.0)
    assert vector_only.metrics["fusion_method"] == "vector-only"
    assert vector_only.metrics["bm25_count"] == 0
    assert vector_only.groups[0].parent_id == "tcp"


def test_retriever_without_keyword_hits_reports_vector_only(retriever: HybridRetriever):
    """Hybrid retrieval with no keyword hits is vector-only."""
    outcome = retriever.retrieve("xylophone quasar")
    assert outcome.metrics["bm25_count"] == 0
    assert outcome.metrics["vector_count"] > 0
    assert outcome.metrics["fusion_method"] == "vector-only"


def test_retriever_scopes_to_allowed_documents(retriever: HybridRetriever):
    """Test scoped retrieval."""
    outcome = retriever.retrieve("deadlock", allowed_doc_ids=["tcp", "btree"])
    assert outcome.metrics["scope_size"] == 2
    assert {g.parent_id for g in outcome.groups} <= {"tcp", "btree"}


def test_retriever_falls_back_to_parent_search(retriever: HybridRetriever):
    """Test fallback to parent search."""
    outcome = retriever.retrieve("handshake", vector_weight=0.0, allowed_doc_ids=["btree"])
    assert not outcome.chunk_based
    assert [g.parent_id for g in outcome.groups] == ["btree"]
    assert outcome.context.context.startswith("[1] ")


def test_retriever_blank_query(retriever: HybridRetriever):
    """Test blank queries."""
    outcome = retriever.retrieve("   ")
    assert outcome.groups == []
    assert outcome.context.context == ""


def test_failed_reindex_keeps_previous_corpus(retriever: HybridRetriever):
    """Test an empty re-index keeps the corpus."""
    with pytest.raises(EmptyCorpusError):
        retriever.index([])
    assert retriever.retrieve("deadlock").groups[0].parent_id == "deadlock"


def test_reindex_failing_midway_keeps_previous_snapshot(retriever: HybridRetriever, backend, monkeypatch):
    """An embedding failure during re-index keeps the old corpus."""
    encode = backend.encode
    calls = []

    def crash_after_first_call(texts, **kwargs):
        calls.append(texts)
        if len(calls) > 1:
            raise RuntimeError("model crashed")
        return encode(texts, **kwargs)

    monkeypatch.setattr(backend, "encode", crash_after_first_call)
    long_text = " ".join(["Quantum entanglement links the states of distant particles."] * 10)
    with pytest.raises(ExecutorError, match="model crashed"):
        retriever.index([{"id": "quantum", "text": long_text}])
    assert len(calls) == 2
    monkeypatch.undo()

    assert retriever.stats()["documents"] == 4
    assert retriever.retrieve("deadlock resource processes").groups[0].parent_id == "deadlock"


def test_metadata_id_does_not_shadow_document_id(pipeline, rag_config):
    """A metadata id never replaces the document id."""
    r = HybridRetriever(pipeline, rag_config)
    r.index(
        [
            {"id": "doc1", "text": "Balanced index pages keep lookups cheap.", "metadata": {"id": "external-7"}},
            {"id": "doc2", "text": "The TCP handshake opens a connection."},
        ]
    )

    chunked = r.retrieve("balanced pages", vector_weight=0.0)
    assert chunked.groups[0].parent_id == "doc1"
    assert chunked.groups[0].metadata["doc_id"] == "doc1"
    assert chunked.groups[0].metadata["id"] == "external-7"

    fallback = r.retrieve("handshake", vector_weight=0.0, allowed_doc_ids=["doc1"])
    assert not fallback.chunk_based
    assert [g.parent_id for g in fallback.groups] == ["doc1"]
    assert fallback.groups[0].metadata["doc_id"] == "doc1"


def test_reindex_replaces_corpus(retriever: HybridRetriever):
    """Test re-indexing."""
    retriever.index([{"id": "new", "text": "quantum entanglement basics"}])
    stats = retriever.stats()
    assert stats["documents"] == 1
    assert retriever.search("quantum", top_k=3)[0].doc_id == "new"


def test_retriever_stats_and_clear(retriever: HybridRetriever):
    """Test retriever stats and clear."""
    stats = retriever.stats()
    assert stats["indexed"]
    assert stats["documents"] == 4
    assert stats["chunks"] == stats["vector_store"]["num_vectors"] == stats["bm25"]["num_documents"]
    assert stats["cache"]["size"] > 0

    retriever.clear()
    assert not retriever.is_indexed
    assert retriever.stats()["documents"] == 0


def test_rag_config_from_env(monkeypatch):
    """Test RAG config from environment."""
    monkeypatch.setenv("RAG_NUM_RESULTS", "3")
    monkeypatch.setenv("RAG_VECTOR_WEIGHT", "0.25")
    monkeypatch.setenv("RAG_METADATA_FIELDS", "title, author")
    config = RAGConfig.from_env()
    assert config.num_results == 3
    assert config.vector_weight == 0.25
    assert config.metadata_fields == ["title", "author"]
    assert config.context_budget() == 2048 - 150 - 768
