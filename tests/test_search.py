"""
Tests for the hybrid search engine.
"""

import asyncio

import numpy as np
import pytest

from memedex.models.schemas import ItemStatus
from memedex.processing import ItemProcessor
from memedex.search import HybridSearchEngine, SearchValidationError, title_boost

DRAKE_DESCRIPTION = "Two-panel comparison meme, person approving/disapproving."


@pytest.fixture
def engine(store, embedder) -> HybridSearchEngine:
    return HybridSearchEngine(store, embedder)


@pytest.fixture
def processor(store, describer, embedder, test_settings) -> ItemProcessor:
    return ItemProcessor(store, describer, embedder, test_settings)


def search(engine, query, mode="vector", limit=20):
    return asyncio.run(engine.search(query, mode=mode, limit=limit))


class TestTitleBoost:
    """Filename/title boost."""

    def test_no_match(self, store):
        item = store.add_item("/m/cat.png")

        assert title_boost(item, ["drake"]) == 0.0

    def test_all_tokens_match(self, store):
        item = store.add_item("/m/distracted-boyfriend.png")

        assert title_boost(item, ["distracted", "boyfriend"]) == pytest.approx(0.7)

    def test_partial_match_uses_title(self, store):
        item = store.add_item("/m/x.png", title="Drake Hotline")

        assert title_boost(item, ["drake", "cat"]) == pytest.approx(0.5)

    def test_folder_is_not_searched(self, store):
        item = store.add_item("/m/drake/x.png")

        assert title_boost(item, ["drake"]) == 0.0


class TestVectorSearch:
    """Vector mode ranking."""

    def test_drake_example(self, engine, processor, store, describer):
        drake = store.add_item("/data/memes/drake.jpg")
        rapper = store.add_item("/data/memes/rapper.png")
        describer.descriptions["drake.jpg"] = DRAKE_DESCRIPTION
        describer.descriptions["rapper.png"] = "drake"

        done = asyncio.run(processor.generate(drake.id))
        asyncio.run(processor.generate(rapper.id))

        assert done.status == ItemStatus.COMPLETE
        assert len(done.embedding) == 384

        query_vector = asyncio.run(engine.embedder.embed("drake"))
        raw = {item.id: score for item, score in store.nearest_by_embedding(query_vector, 5)}
        assert raw[rapper.id] > raw[drake.id]

        hits = search(engine, "drake")

        assert [hit.item.id for hit in hits][:2] == [drake.id, rapper.id]
        assert hits[0].score == pytest.approx(raw[drake.id] + 0.7, abs=1e-5)

    def test_filename_match_outranks_zero_overlap(self, engine, store):
        query_vector = np.array(asyncio.run(engine.embedder.embed("surprised pikachu")))
        orthogonal = np.random.default_rng(7).normal(size=384)
        orthogonal -= (orthogonal @ query_vector) * query_vector
        orthogonal /= np.linalg.norm(orthogonal)

        similar = store.add_item("/m/shocked-face.png")
        store.complete_item(
            similar.id, "similar", (0.6 * query_vector + 0.8 * orthogonal).tolist()
        )
        embedded = store.add_item("/m/surprised-pikachu.png")
        store.complete_item(embedded.id, "other", orthogonal.tolist())
        lexical_only = store.add_item("/m/uploads/Surprised_Pikachu.jpg")

        hits = search(engine, "surprised pikachu")
        scores = {hit.item.id: hit.score for hit in hits}

        assert scores[similar.id] == pytest.approx(0.6, abs=1e-4)
        assert scores[embedded.id] == pytest.approx(0.7, abs=1e-4)
        assert scores[lexical_only.id] == pytest.approx(0.7)
        assert [hit.item.id for hit in hits][-1] == similar.id

    def test_unprocessed_items_found_lexically(self, engine, store):
        pending = store.add_item("/m/uploads/Drake-Hotline.png")

        hits = search(engine, "drake")

        assert [hit.item.id for hit in hits] == [pending.id]
        assert hits[0].score == pytest.approx(0.7)

    def test_duplicates_removed(self, engine, store, embedder):
        item = store.add_item("/m/drake.png")
        store.complete_item(item.id, "drake", asyncio.run(embedder.embed("drake")))

        hits = search(engine, "drake")

        assert len(hits) == 1
        assert hits[0].score == pytest.approx(1.7, abs=1e-5)

    def test_regex_characters_are_literal(self, engine, store):
        store.add_item("/m/anything.png")
        literal = store.add_item("/m/what.png", title="why (not)?")

        hits = search(engine, "(not)?")

        assert [hit.item.id for hit in hits] == [literal.id]

    def test_limit_truncates(self, engine, store):
        for n in range(5):
            store.add_item(f"/m/cat-{n}.png")

        assert len(search(engine, "cat", limit=3)) == 3


class TestTextSearch:
    """Text mode ranking."""

    def test_description_and_substring_signals(self, engine, store, embedder):
        both = store.add_item("/m/cat-keyboard.png")
        desc_only = store.add_item("/m/x.png")
        name_only = store.add_item("/m/cat.png")
        neither = store.add_item("/m/dog.png")
        vector = asyncio.run(embedder.embed("placeholder"))
        store.complete_item(both.id, "A cat typing on a keyboard", vector)
        store.complete_item(desc_only.id, "Cats everywhere", vector)
        store.complete_item(neither.id, "A dog", vector)

        hits = search(engine, "cat", mode="text")
        ids = [hit.item.id for hit in hits]

        assert ids[0] == both.id
        assert set(ids) == {both.id, desc_only.id, name_only.id}
        assert neither.id not in ids
        scores = {hit.item.id: hit.score for hit in hits}
        assert scores[name_only.id] == pytest.approx(0.5)
        assert 0 < scores[desc_only.id] < 1
        assert scores[both.id] > 0.5

    def test_text_mode_does_not_embed(self, engine, store, embedder):
        store.add_item("/m/cat.png")

        search(engine, "cat", mode="text")

        assert embedder.embedded == []
        assert embedder.is_loaded is False

    def test_stop_words_in_query_ignored(self, engine, store, embedder):
        item = store.add_item("/data/memes/drake.jpg")
        store.complete_item(
            item.id, DRAKE_DESCRIPTION, asyncio.run(embedder.embed("placeholder"))
        )

        for query in ("comparison meme", "a comparison meme", "the meme of a comparison"):
            hits = search(engine, query, mode="text")

            assert [hit.item.id for hit in hits] == [item.id], query

    def test_punctuation_in_query(self, engine, store):
        item = store.add_item("/m/this-is-fine.png")

        hits = search(engine, "this-is-fine", mode="text")

        assert [hit.item.id for hit in hits] == [item.id]


class TestSearchValidation:
    """Empty queries and invalid parameters."""

    @pytest.mark.parametrize("mode", ["vector", "text"])
    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    def test_empty_query_returns_nothing(self, engine, store, embedder, mode, query):
        store.add_item("/m/cat.png")

        assert search(engine, query, mode=mode) == []
        assert embedder.embedded == []
        assert embedder.loader.calls == 0

    @pytest.mark.parametrize("limit", [0, -1, 201])
    def test_limit_out_of_range(self, engine, limit):
        with pytest.raises(SearchValidationError) as exc_info:
            search(engine, "cat", limit=limit)

        assert exc_info.value.status_code == 400

    def test_unknown_mode(self, engine):
        with pytest.raises(SearchValidationError):
            search(engine, "cat", mode="fuzzy")
