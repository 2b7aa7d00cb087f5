"""
Performance metrics collector for the notebook RAG API service.

Tracks: latency, throughput, process memory, error count, grounded vs fallback
answers, and which retrieval tier answered each query.
Logs structured metrics to <METRICS_DIR>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_DIR
from .observability import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._error_count: int = 0
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._endpoints: Counter[str] = Counter()

        # Answer quality / retrieval tiers.
        self._answers: Counter[str] = Counter()
        self._tiers: Counter[str] = Counter()
        self._confidence_total: float = 0.0
        self._confidence_count: int = 0

        # Logging.
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_request(
        self,
        latency_ms: float,
        success: bool,
        *,
        endpoint: str = "",
        grounded: bool | None = None,
        tier: str | None = None,
        confidence: float | None = None,
    ) -> None:
        """Records a single request's outcome and appends to JSONL log."""
        if grounded is None:
            answer_kind = None
        elif not success:
            answer_kind = "failed"
        else:
            answer_kind = "grounded" if grounded else "fallback"

        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "endpoint": endpoint,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "answer": answer_kind,
            "tier": tier,
            "confidence": confidence,
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if not success:
                self._error_count += 1
            if endpoint:
                self._endpoints[endpoint] += 1
            if answer_kind:
                self._answers[answer_kind] += 1
            if tier:
                self._tiers[tier] += 1
            if confidence is not None:
                self._confidence_total += float(confidence)
                self._confidence_count += 1

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_log_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            errors = self._error_count
            endpoints = dict(self._endpoints)
            answers = dict(self._answers)
            tiers = dict(self._tiers)
            avg_conf = (
                self._confidence_total / self._confidence_count
                if self._confidence_count > 0 else 0.0
            )

        # Throughput.
        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0

        # Memory usage.
        mem_info = self._process.memory_info()
        mem_rss_mb = mem_info.rss / (1024 * 1024)
        mem_vms_mb = mem_info.vms / (1024 * 1024)

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
                "by_endpoint": endpoints,
            },
            "memory": {
                "rss_mb": round(mem_rss_mb, 1),
                "vms_mb": round(mem_vms_mb, 1),
            },
            "answers": {
                "grounded": answers.get("grounded", 0),
                "fallback": answers.get("fallback", 0),
                "failed": answers.get("failed", 0),
                "avg_confidence": round(avg_conf, 4),
            },
            "retrieval": {
                "tiers": tiers,
            },
            "errors": {
                "count": errors,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
