import math
import unittest

from _fakes import RuleEmbeddings, SlowEmbeddings

from notebookrag.embedding_client import EmbeddingClient, cosine_similarity
from notebookrag.errors import DimensionMismatchError, EmbeddingUnavailable, InvalidInput


class TestCosineSimilarity(unittest.TestCase):
    def test_basic_values(self):
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [1.0, 0.0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [-1.0, 0.0]), -1.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [0.0, 3.0]), 0.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 1.0], [2.0, 2.0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([3.0, 4.0], [4.0, 3.0]), 24.0 / 25.0)

    def test_zero_norm_scores_zero(self):
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 2.0]), 0.0)
        self.assertEqual(cosine_similarity([1.0, 2.0], [0.0, 0.0]), 0.0)

    def test_result_stays_in_range(self):
        vector = [0.1, 0.7, 0.2, 1e-9, 3.3]
        score = cosine_similarity(vector, [x * 7.0 for x in vector])
        self.assertLessEqual(score, 1.0)
        self.assertFalse(math.isnan(score))

    def test_dimension_mismatch_raises(self):
        with self.assertRaises(DimensionMismatchError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestEmbeddingClient(unittest.IsolatedAsyncioTestCase):
    async def test_embed_and_batch(self):
        model = RuleEmbeddings([("north", [0.0, 1.0])], default=[1.0, 0.0])
        client = EmbeddingClient(model)

        self.assertEqual(await client.embed("true north"), [0.0, 1.0])
        self.assertEqual(await client.embed_batch(["north pole", "equator"]), [[0.0, 1.0], [1.0, 0.0]])
        self.assertEqual(await client.embed_batch([]), [])
        self.assertEqual((model.query_calls, model.document_calls), (1, 1))

    async def test_empty_text_is_invalid_and_never_sent(self):
        model = RuleEmbeddings([])
        client = EmbeddingClient(model)

        with self.assertRaises(InvalidInput):
            await client.embed("   ")
        with self.assertRaises(InvalidInput):
            await client.embed_batch(["fine", ""])
        self.assertEqual((model.query_calls, model.document_calls), (0, 0))

    async def test_transport_failure_becomes_embedding_unavailable(self):
        client = EmbeddingClient(RuleEmbeddings([], fail_on="boom"))

        with self.assertRaises(EmbeddingUnavailable) as ctx:
            await client.embed("boom")
        self.assertIn("refused", ctx.exception.detail)

        with self.assertRaises(EmbeddingUnavailable):
            await client.embed_batch(["ok", "boom"])

    async def test_timeout_becomes_embedding_unavailable(self):
        client = EmbeddingClient(SlowEmbeddings(delay_s=1.0), timeout_s=0.05)

        with self.assertRaises(EmbeddingUnavailable) as ctx:
            await client.embed("slow question")
        self.assertEqual(ctx.exception.message, "Embedding request timed out")

    def test_most_similar_orders_and_filters(self):
        candidates = [[0.0, 1.0], [1.0, 0.0], [0.9, 0.1], [1.0, 0.0]]

        ranked = EmbeddingClient.most_similar([1.0, 0.0], candidates, top_k=3, threshold=0.7)

        self.assertEqual([idx for idx, _ in ranked], [1, 3, 2])
        self.assertAlmostEqual(ranked[0][1], 1.0)
        self.assertEqual(EmbeddingClient.most_similar([1.0, 0.0], candidates, threshold=1.1), [])
        self.assertAlmostEqual(EmbeddingClient.similarity([1.0, 0.0], [0.0, 1.0]), 0.0)


if __name__ == "__main__":
    unittest.main()
