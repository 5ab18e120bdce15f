"""Tests for keyword and vector retrieval."""

import pytest

from conftest import ADMIN
from kbchat.db.storage import CHUNKS_TABLE
from kbchat.services.errors import EmbeddingTimeoutError, RetrievalError
from kbchat.services.ingestion import sync_table
from kbchat.services.retriever import (
    KeywordRetriever,
    RetrievedChunk,
    VectorRetriever,
    extract_keywords,
    overlap_score,
)

FOOD_CSV = "name,city,food\nAlice,Paris,pizza\nBob,London,pizza\nCarol,Paris,sushi"


def _numbered_csv(count: int, word: str = "item") -> str:
    return "label\n" + "\n".join(f"{word} {i}" for i in range(count))


class TestKeywords:
    def test_stop_words_and_short_words_removed(self):
        assert extract_keywords("How old is Alice?") == ["old", "alice"]

    def test_at_most_five_distinct(self):
        keywords = extract_keywords("alpha beta gamma alpha delta epsilon zeta eta")

        assert keywords == ["alpha", "beta", "gamma", "delta", "epsilon"]

    def test_only_stop_words(self):
        assert extract_keywords("what is it?") == []

    def test_overlap_counts_distinct_keywords(self):
        assert overlap_score("Paris, PARIS and pizza", ["paris", "pizza", "rome"]) == 2


class TestKeywordRetriever:
    @pytest.mark.asyncio
    async def test_ranked_by_overlap_with_stable_ties(self, storage):
        await sync_table(storage, ADMIN, csv_text=FOOD_CSV)

        chunks = await KeywordRetriever(storage).top_k("Who in Paris likes pizza?")

        assert [c.content.split(";")[0] for c in chunks] == ["name: Alice", "name: Bob", "name: Carol"]
        assert [c.score for c in chunks] == [2, 1, 1]
        assert [c.row_number for c in chunks] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_no_match_falls_back_to_first_chunks(self, storage):
        await sync_table(storage, ADMIN, csv_text=_numbered_csv(10))

        chunks = await KeywordRetriever(storage).top_k("xyzzy?")

        assert len(chunks) == 6
        assert [c.chunk_index for c in chunks] == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_fallback_on_small_knowledge_base(self, storage):
        await sync_table(storage, ADMIN, csv_text=FOOD_CSV)

        chunks = await KeywordRetriever(storage).top_k("what is it?")

        assert len(chunks) == 3

    @pytest.mark.asyncio
    async def test_never_more_than_k(self, storage):
        await sync_table(storage, ADMIN, csv_text=_numbered_csv(20, word="widget"))

        chunks = await KeywordRetriever(storage).top_k("widget")

        assert len(chunks) == 6

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, storage):
        assert await KeywordRetriever(storage).top_k("How old is Alice?") == []


async def _seed_vectors(storage):
    await storage.insert_records(
        CHUNKS_TABLE,
        [
            {
                "doc_id": "csv-kb",
                "chunk_index": 0,
                "content": "name: Alice; age: 30",
                "embedding": [1.0, 0.0, 0.0],
                "metadata": {"row_number": 2},
            },
            {
                "doc_id": "csv-kb",
                "chunk_index": 1,
                "content": "name: Bob; age: 25",
                "embedding": [0.0, 1.0, 0.0],
                "metadata": {"row_number": 3},
            },
            {
                "doc_id": "csv-kb",
                "chunk_index": 2,
                "content": "name: Carol; age: 41",
                "embedding": [0.0, 0.0, 1.0],
                "metadata": {"row_number": 4},
            },
        ],
    )


def _embedder(vector):
    async def embed(question):
        return vector

    return embed


class TestVectorRetriever:
    @pytest.mark.asyncio
    async def test_threshold_and_order(self, storage):
        await _seed_vectors(storage)
        retriever = VectorRetriever(storage, embed_query_fn=_embedder([0.9, 0.43589, 0.0]))

        chunks = await retriever.top_k("How old is Alice?")

        assert [c.row_number for c in chunks] == [2, 3]
        assert chunks[0].similarity == pytest.approx(0.9, abs=1e-3)
        assert chunks[1].similarity == pytest.approx(0.4359, abs=1e-3)

    @pytest.mark.asyncio
    async def test_nothing_above_threshold(self, storage):
        await _seed_vectors(storage)
        retriever = VectorRetriever(storage, embed_query_fn=_embedder([-1.0, -1.0, -1.0]))

        assert await retriever.top_k("anything") == []

    @pytest.mark.asyncio
    async def test_limited_to_k(self, storage):
        await _seed_vectors(storage)
        retriever = VectorRetriever(storage, embed_query_fn=_embedder([1.0, 1.0, 1.0]), default_k=2)

        assert len(await retriever.top_k("anything")) == 2

    @pytest.mark.asyncio
    async def test_timeout_degrades_to_fallback(self, storage):
        await sync_table(storage, ADMIN, csv_text=FOOD_CSV)

        async def slow(question):
            raise EmbeddingTimeoutError()

        retriever = VectorRetriever(storage, embed_query_fn=slow, fallback=KeywordRetriever(storage))
        chunks = await retriever.top_k("Who likes sushi?")

        assert [c.content for c in chunks] == ["name: Carol; city: Paris; food: sushi"]
        assert chunks[0].similarity is None

    @pytest.mark.asyncio
    async def test_timeout_without_fallback(self, storage):
        async def slow(question):
            raise EmbeddingTimeoutError()

        with pytest.raises(EmbeddingTimeoutError):
            await VectorRetriever(storage, embed_query_fn=slow).top_k("question")

    @pytest.mark.asyncio
    async def test_embedding_failure_is_retrieval_error(self, storage):
        async def broken(question):
            raise RetrievalError("Embedding failed")

        retriever = VectorRetriever(storage, embed_query_fn=broken, fallback=KeywordRetriever(storage))
        with pytest.raises(RetrievalError):
            await retriever.top_k("question")


class TestRetrievedChunk:
    def test_row_number_defaults_from_chunk_index(self):
        chunk = RetrievedChunk(id="c1", doc_id="csv-kb", chunk_index=4, content="x")

        assert chunk.row_number == 6
