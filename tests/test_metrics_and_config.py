import importlib
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from notebookrag import config
from notebookrag.errors import (
    DimensionMismatchError,
    EmbeddingUnavailable,
    GenerationFailed,
    InvalidInput,
    TenantIsolationViolation,
    rag_error_to_http,
    status_for_error,
)
from notebookrag.metrics import MetricsCollector


class TestMetricsCollector(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.collector = MetricsCollector(log_dir=Path(self.tmp.name))

    def tearDown(self):
        self.tmp.cleanup()

    def test_summary_aggregates_requests(self):
        self.collector.record_request(10.0, True, endpoint="query", grounded=True, tier="native_vector", confidence=0.8)
        self.collector.record_request(30.0, True, endpoint="query", grounded=False, tier="manual_cosine", confidence=0.1)
        self.collector.record_request(50.0, False, endpoint="query", grounded=True, confidence=0.6)
        self.collector.record_request(5.0, True, endpoint="ingest")

        summary = self.collector.get_summary()

        self.assertEqual(summary["throughput"]["total_requests"], 4)
        self.assertEqual(summary["throughput"]["by_endpoint"], {"query": 3, "ingest": 1})
        self.assertEqual(summary["latency"]["min_ms"], 5.0)
        self.assertEqual(summary["latency"]["max_ms"], 50.0)
        self.assertEqual(summary["latency"]["avg_ms"], 23.75)
        self.assertEqual(
            {k: summary["answers"][k] for k in ("grounded", "fallback", "failed")},
            {"grounded": 1, "fallback": 1, "failed": 1},
        )
        self.assertEqual(summary["answers"]["avg_confidence"], 0.5)
        self.assertEqual(summary["retrieval"]["tiers"], {"native_vector": 1, "manual_cosine": 1})
        self.assertEqual(summary["errors"], {"count": 1, "rate_percent": 25.0})
        self.assertGreater(summary["memory"]["rss_mb"], 0)

    def test_requests_are_logged_as_jsonl(self):
        self.collector.record_request(12.346, True, endpoint="search", tier="text_fallback")

        lines = self.collector.log_path.read_text(encoding="utf-8").splitlines()

        self.assertEqual(len(lines), 1)
        entry = json.loads(lines[0])
        self.assertEqual(entry["endpoint"], "search")
        self.assertEqual(entry["latency_ms"], 12.35)
        self.assertIsNone(entry["answer"])

    def test_empty_summary(self):
        summary = self.collector.get_summary()
        self.assertEqual(summary["latency"], {"avg_ms": 0.0, "min_ms": 0.0, "max_ms": 0.0})
        self.assertEqual(summary["errors"]["rate_percent"], 0.0)


class TestErrorMapping(unittest.TestCase):
    def test_status_codes(self):
        self.assertEqual(status_for_error(InvalidInput("empty")), 400)
        self.assertEqual(status_for_error(EmbeddingUnavailable("down")), 503)
        self.assertEqual(status_for_error(GenerationFailed("oops")), 500)
        self.assertEqual(status_for_error(TenantIsolationViolation("leak")), 500)

    def test_http_exception_body(self):
        exc = rag_error_to_http(DimensionMismatchError(768, 384))
        self.assertEqual(exc.status_code, 500)
        self.assertEqual(exc.detail["type"], "DimensionMismatchError")
        self.assertIn("expected 768, got 384", exc.detail["error"])
        self.assertEqual(rag_error_to_http(InvalidInput("x"), status_code=422).status_code, 422)

    def test_input_errors_are_value_errors(self):
        self.assertTrue(issubclass(InvalidInput, ValueError))
        self.assertTrue(issubclass(DimensionMismatchError, ValueError))


class TestRuntimeConfig(unittest.TestCase):
    def tearDown(self):
        importlib.reload(config)

    def test_environment_overrides_are_clamped(self):
        with patch.dict(os.environ, {"DEFAULT_TOP_K": "0", "QUERY_SCORE_THRESHOLD": "0.45", "CHUNK_SIZE": "abc"}):
            reloaded = importlib.reload(config)
            self.assertEqual(reloaded.DEFAULT_TOP_K, 1)
            self.assertEqual(reloaded.QUERY_SCORE_THRESHOLD, 0.45)
            self.assertEqual(reloaded.CHUNK_SIZE, 8000)

    def test_overlap_never_reaches_chunk_size(self):
        with patch.dict(os.environ, {"CHUNK_SIZE": "400", "CHUNK_OVERLAP": "400"}):
            reloaded = importlib.reload(config)
            self.assertEqual(reloaded.CHUNK_OVERLAP, 100)

    def test_env_bool_parsing(self):
        with patch.dict(os.environ, {"SOME_FLAG": "Yes"}):
            self.assertTrue(config._env_bool("SOME_FLAG", False))
        with patch.dict(os.environ, {"SOME_FLAG": "off"}):
            self.assertFalse(config._env_bool("SOME_FLAG", True))
        self.assertTrue(config._env_bool("UNSET_FLAG_FOR_TEST", True))


if __name__ == "__main__":
    unittest.main()
