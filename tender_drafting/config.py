"""
config.py — Central configuration for the tender drafting pipeline.

Every tunable lives here so a threshold changed for the detector doesn't
silently disagree with the one the deduplicator uses. Defaults are what we
run locally; deployments override them through environment variables.

The numbers that matter most:
  - 2,500 / 500 character chunk windows for AI classification. Smaller
    windows split multi-line questions away from their numbering; the
    overlap keeps a sentence that straddles a boundary whole in at least
    one chunk.
  - 0.7 similarity for prior answers. Lower than that and the generator
    gets "inspired" by answers to a different question.
  - Batches of 5 questions per completion call. Big enough to amortise the
    company profile in the prompt, small enough that a failed batch only
    costs five fallback answers.
"""

from dataclasses import dataclass, field
import os
import logging

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class OCRConfig:
    """
    Settings for the optional Tesseract OCR collaborator.

    OCR never runs in-process unless OCR_PROVIDER=tesseract. Without it,
    PDFs and images are rejected with an ExtractionError that tells the
    caller to send pre-extracted text instead.
    """
    provider: str = os.getenv("OCR_PROVIDER", "none")
    tesseract_cmd: str = os.getenv(
        "TESSERACT_CMD",
        r"C:\Program Files\Tesseract-OCR\tesseract.exe"
        if os.name == "nt"
        else "tesseract",
    )
    lang: str = "eng"
    # Pages whose text layer has fewer characters than this are treated as
    # scanned and rendered for OCR.
    scanned_char_threshold: int = 50
    dpi: int = 300
    contrast_enhance: bool = True
    denoise: bool = True


@dataclass
class ExtractionConfig:
    """
    Minimum viable text per format.

    Spreadsheets legitimately carry less prose than a document, so they get
    a lower floor. Anything below these is treated as a failed extraction
    rather than an empty tender.
    """
    min_chars_default: int = 50
    min_chars_xlsx: int = 20
    max_file_size_mb: int = 50
    text_formats: tuple = (".txt", ".md", ".csv")
    ocr_formats: tuple = (".pdf", ".png", ".jpg", ".jpeg", ".tif", ".tiff")


@dataclass
class SegmentationConfig:
    """Chunking, detection and dedup thresholds."""
    chunk_size_chars: int = 2500
    chunk_overlap_chars: int = 500
    # How far back from a window end we look for whitespace to avoid
    # cutting a word in half.
    boundary_lookback_chars: int = 200
    max_ai_chunks: int = _env_int("MAX_AI_CHUNKS", 40)
    min_question_chars: int = 10
    min_item_chars: int = 20
    item_key_chars: int = 100
    min_section_chars: int = 50
    tiktoken_model: str = "cl100k_base"


@dataclass
class ValidationConfig:
    """
    Grounding thresholds for AI-classified text.

    The classifier is told to copy text verbatim. Anything that does not
    match its chunk at least this well is a paraphrase or an invention and
    gets dropped.
    """
    min_grounding_ratio: float = 0.60


@dataclass
class RetrievalConfig:
    """Embedding + similarity store for previously approved answers."""
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "openai")
    openai_embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    local_embedding_model: str = "all-MiniLM-L6-v2"
    memory_backend: str = os.getenv("MEMORY_BACKEND", "chroma")
    chroma_persist_dir: str = os.getenv("CHROMA_PERSIST_DIR", ".chroma_memory")
    chroma_collection: str = "qa_memory"
    similarity_threshold: float = 0.7
    max_matches_per_question: int = 5
    # Embedding calls cost money and latency; only the first N questions
    # of a run get prior-answer lookups.
    max_questions: int = 10
    # Threshold above which an approved answer replaces an existing memory
    # entry instead of creating a new one.
    memory_match_threshold: float = 0.95
    memory_initial_confidence: float = 0.8
    memory_confidence_step: float = 0.1


@dataclass
class LLMConfig:
    """
    Completion service settings.

    provider=openai needs OPENAI_API_KEY; provider=llama_cpp needs a GGUF
    model file at LLM_MODEL_PATH. Without either the pipeline runs
    heuristics-only and answers fall back to the disclaimer text.
    """
    provider: str = os.getenv("LLM_PROVIDER", "openai")
    api_key: str = os.getenv("OPENAI_API_KEY", "")
    model: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    timeout_seconds: float = _env_float("LLM_TIMEOUT_SECONDS", 60.0)
    temperature: float = 0.3
    classification_temperature: float = 0.0
    max_tokens: int = 4096
    model_path: str = os.getenv(
        "LLM_MODEL_PATH",
        "models/mistral-7b-instruct-v0.2.Q4_K_M.gguf",
    )
    n_ctx: int = 8192
    n_threads: int = 0  # 0 = let llama.cpp pick


@dataclass
class GenerationConfig:
    """Answer generation batching and prompt budget."""
    batch_size: int = 5
    max_context_words: int = 1000
    max_attempts: int = 2
    retry_delay_seconds: float = _env_float("GENERATION_RETRY_DELAY", 1.0)
    closed_answer_tokens: int = 200
    open_answer_tokens: int = 500


@dataclass
class PipelineConfig:
    """Orchestrator-level limits."""
    min_document_chars: int = 50
    deadline_seconds: float = _env_float("PIPELINE_DEADLINE_SECONDS", 900.0)


@dataclass
class StorageConfig:
    """Local adapters for the object store and datastore."""
    storage_root: str = os.getenv("STORAGE_ROOT", "storage")
    datastore_path: str = os.getenv("DATASTORE_PATH", "data/tenders.json")


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    ocr: OCRConfig = field(default_factory=OCRConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Fail fast on settings that would make the pipeline loop or
        silently skip work."""
        seg = self.segmentation
        if seg.chunk_overlap_chars >= seg.chunk_size_chars:
            raise ValueError(
                f"Chunk overlap ({seg.chunk_overlap_chars}) must be smaller "
                f"than chunk size ({seg.chunk_size_chars})"
            )
        if self.generation.batch_size < 1:
            raise ValueError(f"Batch size must be >= 1, got {self.generation.batch_size}")
        if self.generation.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.generation.max_attempts}")
        if not 0 <= self.retrieval.similarity_threshold <= 1:
            raise ValueError(
                f"Similarity threshold must be [0,1], got {self.retrieval.similarity_threshold}"
            )
        if self.retrieval.memory_match_threshold < self.retrieval.similarity_threshold:
            logger.warning(
                "Memory match threshold %.2f is below the retrieval threshold %.2f; "
                "approved answers may overwrite unrelated memories.",
                self.retrieval.memory_match_threshold,
                self.retrieval.similarity_threshold,
            )


# Singleton: every module imports this same instance
config = Config()
