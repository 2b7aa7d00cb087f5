# /notebookrag/config.py
"""
Centralized configuration for the notebook RAG service.
Includes model names, paths, retrieval thresholds, timeouts and hardware detection.
"""
import functools
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)

# ==============================================================================
# GPU DETECTION & SETUP
# ==============================================================================
@functools.cache
def detect_gpu_setup():
    """Detects and prints GPU information on first access only."""
    import torch  # Imported lazily; only the embedding model needs it.

    if torch.cuda.is_available():
        device_name = torch.cuda.get_device_name(0)
        memory_gb = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        console.print(Panel(
            f"[bold green]GPU Detected![/bold green]\n"
            f"Device: {device_name}\n"
            f"Memory: {memory_gb:.1f} GB",
            title="GPU Configuration",
            border_style="green"
        ))
        return {'device': 'cuda', 'name': device_name}
    console.print("[yellow]No GPU detected. Using CPU instead.[/yellow]")
    return {'device': 'cpu', 'name': 'cpu'}


@functools.cache
def get_model_kwargs() -> dict[str, str]:
    return {'device': detect_gpu_setup()['device']}


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Application Toggles ---
USE_API_LLM = _env_bool("USE_API_LLM", False)              # True for Groq API, False for local Ollama
NATIVE_VECTOR_SEARCH = _env_bool("NATIVE_VECTOR_SEARCH", True)  # Chroma index as the first search tier

# --- Model Names ---
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "gemma2-9b-it")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "BAAI/bge-base-en-v1.5")

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/notebookrag/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "knowledge.sqlite")))
CHROMA_DIR = Path(os.getenv("CHROMA_DIR", str(DATA_DIR / "chroma")))
CHROMA_COLLECTION = os.getenv("CHROMA_COLLECTION", "knowledge_chunks")
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "metrics")))

# --- Chunking Configuration ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 8000, minimum=128)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 200, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 4)
CHUNK_SPLIT_OVERSIZED = _env_bool("CHUNK_SPLIT_OVERSIZED", False)

# --- Retrieval Tuning ---
# Thresholds are per call site: query-time search is permissive, add-time dedup is strict.
DEFAULT_TOP_K = _env_int("DEFAULT_TOP_K", 5, minimum=1)
QUERY_SCORE_THRESHOLD = _env_float("QUERY_SCORE_THRESHOLD", 0.3, minimum=-1.0)
DEDUP_SCORE_THRESHOLD = _env_float("DEDUP_SCORE_THRESHOLD", 0.7, minimum=-1.0)
TEXT_FALLBACK_SCORE = min(1.0, _env_float("TEXT_FALLBACK_SCORE", 0.5, minimum=0.0))
CONFIDENCE_BASELINE = min(1.0, _env_float("CONFIDENCE_BASELINE", 0.1, minimum=0.0))
INGEST_MAX_CONCURRENCY = _env_int("INGEST_MAX_CONCURRENCY", 4, minimum=1)

# --- Memory Tuning ---
MEMORY_MAX_TURNS = _env_int("MEMORY_MAX_TURNS", 20, minimum=2)
MEMORY_CONTEXT_TURNS = _env_int("MEMORY_CONTEXT_TURNS", 6, minimum=1)
PROMPT_TOTAL_TOKEN_BUDGET = _env_int("PROMPT_TOTAL_TOKEN_BUDGET", 6144, minimum=512)
PROMPT_MEMORY_RATIO = _env_float("PROMPT_MEMORY_RATIO", 0.20, minimum=0.05)
PROMPT_DOCS_RATIO = _env_float("PROMPT_DOCS_RATIO", 0.70, minimum=0.10)
ratio_total = PROMPT_MEMORY_RATIO + PROMPT_DOCS_RATIO
if ratio_total > 1.0:
    PROMPT_MEMORY_RATIO = PROMPT_MEMORY_RATIO / ratio_total
    PROMPT_DOCS_RATIO = PROMPT_DOCS_RATIO / ratio_total
SOURCE_EXCERPT_CHARS = _env_int("SOURCE_EXCERPT_CHARS", 200, minimum=20)
FALLBACK_EXCERPT_CHARS = _env_int("FALLBACK_EXCERPT_CHARS", 400, minimum=50)

# --- Timeouts & Streaming ---
EMBEDDING_TIMEOUT_S = _env_float("EMBEDDING_TIMEOUT_S", 30.0, minimum=0.1)
LLM_TIMEOUT_S = _env_float("LLM_TIMEOUT_S", 120.0, minimum=0.1)
# Set to 0 to disable the per-token stall timeout.
STREAM_IDLE_TIMEOUT_S = _env_float("STREAM_IDLE_TIMEOUT_S", 30.0, minimum=0.0)
STREAM_QUEUE_SIZE = _env_int("STREAM_QUEUE_SIZE", 64, minimum=1)

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
METRICS_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
