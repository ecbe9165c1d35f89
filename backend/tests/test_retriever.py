"""Tests for query-time retrieval: ranking, collapsing, boosts and the query cache."""
from unittest.mock import MagicMock

import pytest

from codeindex.config import RetrievalSettings
from codeindex.errors import CodeIndexError
from codeindex.index.retriever import QueryCache, Retriever, SearchResult, collapse_adjacent
from codeindex.index.vector_store import ChunkMetadata, FaissVectorStore

from conftest import DIM, FakeProvider, bag_of_words, make_gateway


def _hit(cid: str, score: float, file_path: str = "a.py", symbol=("a.py", "f"), seq: int = 0):
    meta = ChunkMetadata(
        file_path=file_path, symbol_path=list(symbol), byte_range=(0, 1),
        sequence_index=seq, language="python", text=f"text of {cid}",
    )
    return (cid, score, meta)


def _result(cid: str, score: float, file_path: str = "a.py", symbol=("a.py", "f"), seq: int = 0) -> SearchResult:
    return SearchResult(
        chunk_id=cid, file_path=file_path, symbol_path=list(symbol),
        score=score, text_excerpt="", sequence_index=seq,
    )


def _retriever(hits, provider=None, **settings) -> tuple[Retriever, MagicMock]:
    store = MagicMock()
    store.query.return_value = list(hits)
    return Retriever(make_gateway(provider or FakeProvider()), store, RetrievalSettings(**settings)), store


class TestCollapseAdjacent:
    def test_consecutive_chunks_of_one_symbol_collapse_to_best(self):
        results = [
            _result("c0", 0.5, seq=0),
            _result("c1", 0.9, seq=1),
            _result("c2", 0.7, seq=2),
        ]
        kept = collapse_adjacent(results)
        assert [r.chunk_id for r in kept] == ["c1"]

    def test_gap_starts_a_new_run(self):
        results = [_result("c0", 0.5, seq=0), _result("c1", 0.4, seq=1), _result("c5", 0.3, seq=5)]
        kept = collapse_adjacent(results)
        assert sorted(r.chunk_id for r in kept) == ["c0", "c5"]

    def test_different_symbols_are_not_merged(self):
        results = [
            _result("f0", 0.5, symbol=("a.py", "f"), seq=0),
            _result("g1", 0.4, symbol=("a.py", "g"), seq=1),
            _result("b0", 0.3, file_path="b.py", symbol=("b.py", "f"), seq=0),
        ]
        assert len(collapse_adjacent(results)) == 3


class TestSearch:
    @pytest.mark.asyncio
    async def test_ranking_with_deterministic_tie_break(self):
        hits = [
            _hit("z", 0.8, file_path="b.py", symbol=("b.py", "g")),
            _hit("y", 0.8, file_path="a.py", symbol=("a.py", "g")),
            _hit("x", 0.9, file_path="c.py", symbol=("c.py", "h")),
        ]
        retriever, _ = _retriever(hits)
        results = await retriever.search("anything", top_k=3)
        assert [r.chunk_id for r in results] == ["x", "y", "z"]
        assert results[0].text_excerpt == "text of x"

    @pytest.mark.asyncio
    async def test_over_fetches_and_truncates(self):
        hits = [_hit(f"c{i}", 1.0 - i / 10, file_path=f"f{i}.py", symbol=(f"f{i}.py",)) for i in range(6)]
        retriever, store = _retriever(hits, over_fetch_factor=3)
        results = await retriever.search("q", top_k=2)
        assert len(results) == 2
        vector, fetch_k, filters = store.query.call_args.args
        assert fetch_k == 6
        assert len(vector) == DIM
        assert filters is None

    @pytest.mark.asyncio
    async def test_filters_are_passed_to_store(self):
        retriever, store = _retriever([])
        await retriever.search("q", top_k=1, filters={"languages": ["rust"]})
        assert store.query.call_args.args[2] == {"languages": ["rust"]}

    @pytest.mark.asyncio
    async def test_min_score(self):
        hits = [_hit("hi", 0.8, file_path="a.py"), _hit("lo", 0.2, file_path="b.py")]
        retriever, _ = _retriever(hits, min_score=0.5)
        assert [r.chunk_id for r in await retriever.search("q")] == ["hi"]
        # per-call threshold overrides the configured one
        assert len(await retriever.search("q", min_score=0.0)) == 2

    @pytest.mark.asyncio
    async def test_name_boost(self):
        hits = [
            _hit("other", 0.60, file_path="a.py", symbol=("a.py", "helper")),
            _hit("named", 0.55, file_path="b.py", symbol=("b.py", "Parse_Config")),
        ]
        retriever, _ = _retriever(hits, name_match_boost=0.1)
        results = await retriever.search("where is parse_config defined")
        assert results[0].chunk_id == "named"
        assert results[0].score == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_no_boost_by_default(self):
        hits = [
            _hit("other", 0.60, file_path="a.py", symbol=("a.py", "helper")),
            _hit("named", 0.55, file_path="b.py", symbol=("b.py", "parse_config")),
        ]
        retriever, _ = _retriever(hits)
        results = await retriever.search("parse_config")
        assert results[0].chunk_id == "other"

    @pytest.mark.asyncio
    async def test_blank_query_rejected(self):
        retriever, _ = _retriever([])
        with pytest.raises(CodeIndexError) as exc_info:
            await retriever.search("   ")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_non_positive_top_k_returns_nothing(self):
        provider = FakeProvider()
        retriever, store = _retriever([_hit("x", 0.9)], provider=provider)
        assert await retriever.search("q", top_k=0) == []
        store.query.assert_not_called()
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_against_faiss_store(self):
        store = FaissVectorStore()
        for name, file_path in (("parse", "a.py"), ("render", "b.py")):
            meta = ChunkMetadata(
                file_path=file_path, symbol_path=[file_path, name], byte_range=(0, 1),
                sequence_index=0, language="python", text=f"def {name}(): pass",
            )
            store.upsert(f"id-{name}", bag_of_words(meta.text), meta)
        retriever = Retriever(make_gateway(), store)
        results = await retriever.search("def render(): pass", top_k=1)
        assert results[0].chunk_id == "id-render"
        assert results[0].score == pytest.approx(1.0, abs=1e-5)


class TestQueryCache:
    @pytest.mark.asyncio
    async def test_repeated_query_hits_cache(self):
        provider = FakeProvider()
        retriever, _ = _retriever([], provider=provider)
        await retriever.search("find  the parser")
        await retriever.search("find the parser ")
        assert len(provider.calls) == 1
        assert len(retriever.cache) == 1

        retriever.invalidate()
        await retriever.search("find the parser")
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self):
        provider = FakeProvider()
        retriever, _ = _retriever([], provider=provider, cache_max_entries=0)
        await retriever.search("q")
        await retriever.search("q")
        assert len(provider.calls) == 2

    def test_evicts_least_recently_used(self):
        cache = QueryCache(ttl_seconds=60, max_entries=2)
        cache.put("a", [1.0])
        cache.put("b", [2.0])
        assert cache.get("a") == [1.0]
        cache.put("c", [3.0])
        assert cache.get("b") is None
        assert cache.get("a") == [1.0]
        assert cache.get("c") == [3.0]

    def test_expired_entries_are_dropped(self, monkeypatch):
        clock = [100.0]
        monkeypatch.setattr("codeindex.index.retriever.time.monotonic", lambda: clock[0])
        cache = QueryCache(ttl_seconds=10, max_entries=4)
        cache.put("q", [1.0])
        clock[0] = 109.0
        assert cache.get("q") == [1.0]
        clock[0] = 111.0
        assert cache.get("q") is None
        assert len(cache) == 0
