import asyncio
import tempfile
import unittest
from pathlib import Path

from _fakes import ANSWER_TOKENS, QUESTION, ScriptedChatModel, paragraph, scenario_embeddings, sectioned_document

from notebookrag.chunking import ChunkingPipeline
from notebookrag.embedding_client import EmbeddingClient
from notebookrag.errors import EmbeddingUnavailable, InvalidInput
from notebookrag.llm_client import LLMClient
from notebookrag.memory_manager import MemoryRegistry
from notebookrag.rag_service import (
    EXCERPT_FALLBACK_PREFIX,
    NO_CONTEXT_FALLBACK,
    UNGROUNDED_NOTICE,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    IngestDocument,
    MetadataEvent,
    QueryState,
    RetrievalOrchestrator,
    compute_confidence,
)
from notebookrag.vector_store import KnowledgeChunk, SearchHit, SearchTier, TenantKey, VectorStore

NOTEBOOK = TenantKey.notebook("geology", "user-7")
OTHER_NOTEBOOK = TenantKey.notebook("poetry", "user-7")


def _hit(score):
    chunk = KnowledgeChunk(text="t", tenant=NOTEBOOK, vector=[1.0])
    tier = SearchTier.TEXT if score is None else SearchTier.MANUAL
    return SearchHit(chunk=chunk, score=score, tier=tier)


class TestConfidence(unittest.TestCase):
    def test_no_hits_is_exactly_the_baseline(self):
        self.assertEqual(compute_confidence([]), 0.1)
        self.assertEqual(compute_confidence([], baseline=0.25), 0.25)

    def test_rank_weighted_mean(self):
        # (0.9 * 1 + 0.6 * 1/2) / (1 + 1/2)
        self.assertEqual(compute_confidence([_hit(0.9), _hit(0.6)]), 0.8)
        self.assertEqual(compute_confidence([_hit(0.42)]), 0.42)

    def test_keyword_hits_use_the_fallback_score(self):
        self.assertEqual(compute_confidence([_hit(None), _hit(None)]), 0.5)

    def test_result_is_clamped(self):
        self.assertEqual(compute_confidence([_hit(-0.4)]), 0.0)
        for hits in ([_hit(1.0)], [_hit(0.31), _hit(0.99), _hit(None)]):
            self.assertTrue(0.0 <= compute_confidence(hits) <= 1.0)


class _OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.embeddings = scenario_embeddings(fail_on="explode")
        self.model = ScriptedChatModel(ANSWER_TOKENS)
        self.store = VectorStore(Path(self.tmp.name) / "kb.sqlite").open()
        self.orchestrator = self.build(self.model)

    def tearDown(self):
        self.orchestrator.close()
        self.tmp.cleanup()

    def build(self, model, *, idle_timeout_s=5.0, **kwargs) -> RetrievalOrchestrator:
        return RetrievalOrchestrator(
            self.store,
            EmbeddingClient(self.embeddings, timeout_s=5.0),
            LLMClient(model, timeout_s=5.0, idle_timeout_s=idle_timeout_s),
            memory=MemoryRegistry(max_turns=20, context_turns=6),
            chunker=ChunkingPipeline(2000, 200),
            **kwargs,
        )

    async def ingest_scenario(self, tenant=NOTEBOOK, **kwargs):
        document = IngestDocument(text=sectioned_document(), title="Field Guide", category="geo")
        return await self.orchestrator.ingest(tenant, [document], **kwargs)


class TestIngest(_OrchestratorTestCase):
    async def test_document_is_chunked_embedded_and_stored(self):
        report = await self.ingest_scenario()

        self.assertTrue(report.success)
        self.assertEqual(report.chunk_count, 3)
        self.assertEqual(report.chunks_added, 3)
        self.assertEqual(report.documents_added, 1)
        self.assertEqual(len(report.chunk_ids), 3)
        self.assertEqual(self.store.count(NOTEBOOK), 3)
        self.assertEqual(self.embeddings.document_calls, 1)
        stored = self.store.get(report.chunk_ids[0])
        self.assertEqual((stored.title, stored.category, stored.source_name), ("Field Guide", "geo", "Field Guide"))

    async def test_one_bad_document_does_not_abort_the_batch(self):
        report = await self.orchestrator.ingest(
            NOTEBOOK,
            [
                IngestDocument(text=sectioned_document(), title="good"),
                "",
                {"text": "this will explode the embedder", "title": "bad"},
            ],
        )

        self.assertFalse(report.success)
        self.assertEqual(report.documents_added, 1)
        self.assertEqual(report.chunks_added, 3)
        self.assertEqual(
            [(e["index"], e["type"]) for e in report.errors],
            [(1, "InvalidInput"), (2, "EmbeddingUnavailable")],
        )
        self.assertEqual(report.errors[1]["title"], "bad")
        self.assertEqual(self.store.count(NOTEBOOK), 3)

    async def test_skip_duplicates(self):
        await self.ingest_scenario(skip_duplicates=True)
        report = await self.ingest_scenario(skip_duplicates=True)

        self.assertEqual(report.chunk_count, 3)
        self.assertEqual(report.chunks_added, 0)
        self.assertEqual(report.skipped_duplicates, 3)
        self.assertEqual(self.store.count(NOTEBOOK), 3)

    async def test_empty_request_is_invalid(self):
        with self.assertRaises(InvalidInput):
            await self.orchestrator.ingest(NOTEBOOK, [])


class TestQuery(_OrchestratorTestCase):
    async def test_grounded_answer_from_the_best_chunk(self):
        await self.ingest_scenario()

        result = await self.orchestrator.query(NOTEBOOK, QUESTION)

        self.assertTrue(result.success)
        self.assertTrue(result.grounded)
        self.assertEqual(result.state, QueryState.COMPLETED)
        self.assertEqual(result.answer, "The middle section covers orbits.")
        self.assertEqual(result.total_sources, 1)
        self.assertIn("Orbit beta gamma", self.store.get(result.sources[0].chunk_id).text)
        self.assertAlmostEqual(result.sources[0].score, 0.81, places=3)
        self.assertAlmostEqual(result.confidence, 0.81, places=3)
        self.assertEqual(result.tier, SearchTier.MANUAL.value)
        self.assertEqual(result.session_key, NOTEBOOK.storage_key)
        self.assertEqual([t["role"] for t in self.orchestrator.memory_turns(NOTEBOOK.storage_key)], ["question", "answer"])

    async def test_other_notebooks_see_nothing(self):
        await self.ingest_scenario()

        result = await self.orchestrator.query(OTHER_NOTEBOOK, QUESTION)

        self.assertTrue(result.success)
        self.assertFalse(result.grounded)
        self.assertEqual(result.sources, [])
        self.assertEqual(result.confidence, 0.1)
        self.assertTrue(result.answer.startswith(UNGROUNDED_NOTICE))

    async def test_generation_failure_falls_back_to_top_excerpt(self):
        await self.ingest_scenario()
        orchestrator = self.build(ScriptedChatModel(ANSWER_TOKENS, fail_invoke=True))

        result = await orchestrator.query(NOTEBOOK, QUESTION)

        self.assertFalse(result.success)
        self.assertFalse(result.grounded)
        self.assertEqual(result.state, QueryState.FAILED)
        self.assertTrue(result.answer.startswith(EXCERPT_FALLBACK_PREFIX))
        self.assertIn('"Field Guide"', result.answer)
        self.assertEqual(result.total_sources, 1)
        self.assertEqual(orchestrator.memory_turns(NOTEBOOK.storage_key), [])

    async def test_generation_failure_without_hits(self):
        orchestrator = self.build(ScriptedChatModel(ANSWER_TOKENS, fail_invoke=True))

        result = await orchestrator.query(OTHER_NOTEBOOK, QUESTION)

        self.assertEqual(result.answer, NO_CONTEXT_FALLBACK)
        self.assertEqual(result.confidence, 0.1)

    async def test_empty_question_is_rejected_before_embedding(self):
        for question in ("", "   ", None):
            with self.assertRaises(InvalidInput):
                await self.orchestrator.query(NOTEBOOK, question)
        self.assertEqual(self.embeddings.query_calls, 0)

    async def test_embedding_failure_raises_and_leaves_memory_alone(self):
        with self.assertRaises(EmbeddingUnavailable):
            await self.orchestrator.query(NOTEBOOK, "please explode")
        self.assertEqual(self.orchestrator.memory_turns(NOTEBOOK.storage_key), [])

    async def test_memory_feeds_the_next_prompt(self):
        await self.ingest_scenario()
        await self.orchestrator.query(NOTEBOOK, QUESTION, session_key="chat-1")
        await self.orchestrator.query(NOTEBOOK, "And the middle section again?", session_key="chat-1")

        prompt = self.model.invocations[-1][-1].content
        self.assertIn(f"User: {QUESTION}", prompt)
        self.assertIn("Assistant: The middle section covers orbits.", prompt)
        self.assertEqual(len(self.orchestrator.memory_turns("chat-1")), 4)

        await self.orchestrator.query(NOTEBOOK, "Fresh start on the middle section", session_key="chat-1", include_memory=False)
        self.assertNotIn(QUESTION, self.model.invocations[-1][-1].content)

    async def test_concurrent_queries_each_record_a_whole_exchange(self):
        await self.ingest_scenario()

        results = await asyncio.gather(
            *(self.orchestrator.query(NOTEBOOK, f"{QUESTION} #{i}", session_key="shared") for i in range(5))
        )

        self.assertTrue(all(r.success for r in results))
        turns = self.orchestrator.memory_turns("shared")
        self.assertEqual(len(turns), 10)
        self.assertEqual([t["role"] for t in turns], ["question", "answer"] * 5)


class TestStreamingQuery(_OrchestratorTestCase):
    async def _collect(self, orchestrator, tenant=NOTEBOOK, question=QUESTION):
        stream = await orchestrator.stream_query(tenant, question)
        async with stream:
            events = [event async for event in stream]
        return stream, events

    async def test_metadata_then_chunks_then_complete(self):
        await self.ingest_scenario()

        stream, events = await self._collect(self.orchestrator)

        self.assertIsInstance(events[0], MetadataEvent)
        self.assertIsInstance(events[-1], CompleteEvent)
        chunks = [e for e in events[1:-1] if isinstance(e, ChunkEvent)]
        self.assertEqual(len(chunks), len(events) - 2)
        self.assertEqual("".join(c.text for c in chunks), events[-1].full_answer)
        self.assertEqual(events[0].confidence, events[-1].confidence)
        self.assertEqual(len(events[0].sources), 1)
        self.assertTrue(events[-1].grounded)
        self.assertEqual(stream.state, QueryState.COMPLETED)
        self.assertTrue(stream.result.success)
        self.assertEqual(len(self.orchestrator.memory_turns(NOTEBOOK.storage_key)), 2)

    async def test_ungrounded_stream_is_labelled(self):
        _, events = await self._collect(self.orchestrator, tenant=OTHER_NOTEBOOK)

        self.assertEqual(events[0].sources, ())
        self.assertEqual(events[0].confidence, 0.1)
        self.assertTrue(events[1].text.startswith(UNGROUNDED_NOTICE))
        complete = events[-1]
        self.assertFalse(complete.grounded)
        self.assertEqual("".join(e.text for e in events[1:-1]), complete.full_answer)

    async def test_mid_stream_failure_ends_with_error_event(self):
        await self.ingest_scenario()
        orchestrator = self.build(ScriptedChatModel(ANSWER_TOKENS, fail_after=1))

        stream, events = await self._collect(orchestrator)

        self.assertIsInstance(events[0], MetadataEvent)
        self.assertIsInstance(events[1], ChunkEvent)
        self.assertIsInstance(events[-1], ErrorEvent)
        self.assertEqual(events[-1].message, "Language model stream failed")
        self.assertTrue(events[-1].fallback_answer.startswith(EXCERPT_FALLBACK_PREFIX))
        self.assertEqual(stream.state, QueryState.FAILED)
        self.assertEqual(orchestrator.memory_turns(NOTEBOOK.storage_key), [])

    async def test_stalled_model_ends_with_error_event(self):
        orchestrator = self.build(ScriptedChatModel(["late"], delay_s=1.0), idle_timeout_s=0.05)

        _, events = await self._collect(orchestrator, tenant=OTHER_NOTEBOOK)

        self.assertIsInstance(events[-1], ErrorEvent)
        self.assertEqual(events[-1].message, "Streaming response stalled")
        self.assertEqual(events[-1].fallback_answer, NO_CONTEXT_FALLBACK)

    async def test_consumer_leaving_early_cancels_generation(self):
        await self.ingest_scenario()
        model = ScriptedChatModel([f"token{i} " for i in range(50)], delay_s=0.01)
        orchestrator = self.build(model, stream_queue_size=1)

        stream = await orchestrator.stream_query(NOTEBOOK, QUESTION)
        seen = []
        async with stream:
            async for event in stream:
                seen.append(event)
                if isinstance(event, ChunkEvent):
                    break

        self.assertIsInstance(seen[0], MetadataEvent)
        self.assertEqual(stream.state, QueryState.CANCELLED)
        self.assertFalse(stream.result.success)
        self.assertTrue(model.closed)
        self.assertLess(model.pulled, 50)
        self.assertEqual(orchestrator.memory_turns(NOTEBOOK.storage_key), [])

    async def test_errors_before_generation_raise_directly(self):
        with self.assertRaises(InvalidInput):
            await self.orchestrator.stream_query(NOTEBOOK, " ")


class TestAdministration(_OrchestratorTestCase):
    async def test_search_documents_returns_ranked_text(self):
        await self.ingest_scenario()

        payload = await self.orchestrator.search_documents(NOTEBOOK, QUESTION, score_threshold=0.15)

        self.assertEqual(payload["tier"], SearchTier.MANUAL.value)
        self.assertEqual(payload["total_results"], 2)
        self.assertIn("Orbit", payload["results"][0]["text"])
        self.assertIn("Kappa", payload["results"][1]["text"])
        self.assertEqual(self.model.invocations, [])

    async def test_chunk_edits_are_tenant_scoped(self):
        report = await self.ingest_scenario()
        chunk_id = report.chunk_ids[0]

        self.assertIsNone(await self.orchestrator.update_chunk(chunk_id, tenant=OTHER_NOTEBOOK, title="Hijacked"))
        updated = await self.orchestrator.update_chunk(chunk_id, tenant=NOTEBOOK, title="Renamed", tags={"reviewed": True})
        self.assertEqual(updated.title, "Renamed")
        self.assertEqual(updated.tags, {"reviewed": True})

        self.assertFalse(await self.orchestrator.delete_chunk(chunk_id, tenant=OTHER_NOTEBOOK))
        self.assertTrue(await self.orchestrator.delete_chunk(chunk_id, tenant=NOTEBOOK))
        self.assertFalse(await self.orchestrator.delete_chunk(chunk_id))

    async def test_delete_tenant_and_stats(self):
        await self.ingest_scenario()
        await self.ingest_scenario(tenant=OTHER_NOTEBOOK)

        self.assertEqual((await self.orchestrator.tenant_stats(NOTEBOOK))["total_chunks"], 3)
        self.assertEqual(await self.orchestrator.delete_tenant(NOTEBOOK), 3)

        self.assertEqual((await self.orchestrator.tenant_stats(NOTEBOOK))["total_chunks"], 0)
        self.assertEqual((await self.orchestrator.tenant_stats(OTHER_NOTEBOOK))["total_chunks"], 3)
        result = await self.orchestrator.query(NOTEBOOK, QUESTION)
        self.assertFalse(result.grounded)

    async def test_clear_memory(self):
        await self.orchestrator.query(NOTEBOOK, QUESTION, session_key="s")
        self.assertTrue(self.orchestrator.clear_memory("s"))
        self.assertEqual(self.orchestrator.memory_turns("s"), [])


class TestReindex(_OrchestratorTestCase):
    async def test_reindex_replaces_the_tenant_content(self):
        await self.ingest_scenario()
        await self.ingest_scenario(tenant=OTHER_NOTEBOOK)

        report = await self.orchestrator.reindex(NOTEBOOK, [IngestDocument(text=paragraph("Orbit"), title="Short")])

        self.assertTrue(report.success)
        self.assertEqual(report.chunks_removed, 3)
        self.assertEqual(report.chunks_added, 1)
        self.assertEqual(report.documents_added, 1)
        self.assertEqual(self.store.count(NOTEBOOK), 1)
        self.assertEqual(self.store.get(report.chunk_ids[0]).title, "Short")
        self.assertEqual(self.store.count(OTHER_NOTEBOOK), 3)

    async def test_failed_reindex_keeps_the_old_content(self):
        before = await self.ingest_scenario()

        report = await self.orchestrator.reindex(
            NOTEBOOK,
            [
                IngestDocument(text=paragraph("Orbit"), title="good"),
                {"text": "this will explode the embedder", "title": "bad"},
            ],
        )

        self.assertFalse(report.success)
        self.assertEqual([(e["index"], e["type"]) for e in report.errors], [(1, "EmbeddingUnavailable")])
        self.assertEqual((report.chunks_added, report.chunks_removed), (0, 0))
        self.assertEqual(self.store.count(NOTEBOOK), 3)
        self.assertIsNotNone(self.store.get(before.chunk_ids[0]))

    async def test_reindex_needs_documents(self):
        with self.assertRaises(InvalidInput):
            await self.orchestrator.reindex(NOTEBOOK, [])

    async def test_delete_source_removes_one_document(self):
        await self.ingest_scenario()
        await self.orchestrator.ingest(NOTEBOOK, [IngestDocument(text=paragraph("Orbit"), title="Notes")])

        self.assertEqual(await self.orchestrator.delete_source(OTHER_NOTEBOOK, "Field Guide"), 0)
        self.assertEqual(await self.orchestrator.delete_source(NOTEBOOK, "Field Guide"), 3)

        stats = await self.orchestrator.tenant_stats(NOTEBOOK)
        self.assertEqual(stats["sources"], {"Notes": 1})
        with self.assertRaises(InvalidInput):
            await self.orchestrator.delete_source(NOTEBOOK, "  ")


if __name__ == "__main__":
    unittest.main()
