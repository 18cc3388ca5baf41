"""
config.py — Central configuration for the tender analyzer.

All tunable params live here so nobody goes hunting through the pipeline
modules when a threshold needs changing. Defaults are read from
environment variables, so the same build runs locally (via a shell
export or .env loader) and on the hosted deployment.

Windowing parameters are NOT validated here. A bad CHUNK_OVERLAP in the
environment should fail the analysis call that uses it with a
ConfigurationError, not crash the API process at import time.
"""

from dataclasses import dataclass, field
import os
import logging

logger = logging.getLogger(__name__)


def _env_id(key: str):
    """
    Read an ID-like env var, treating "", "null" and "undefined" as unset.

    Hosting dashboards happily store the literal string "undefined" when
    someone clears a field, and we used to send that to Notion as a
    database id.
    """
    value = os.getenv(key)
    if value is None:
        return None
    value = value.strip()
    if not value or value.lower() in ("null", "undefined"):
        return None
    return value


@dataclass
class LLMConfig:
    """
    Text-generation backend settings.

    The hosted OpenAI backend is the default. The local llama.cpp backend
    is kept for offline runs on machines without API access; it has no
    rate limits so the retry policy never kicks in there.
    """
    backend: str = os.getenv("LLM_BACKEND", "openai")
    api_key: str = os.getenv("OPENAI_API_KEY", "")
    base_url: str = os.getenv("OPENAI_BASE_URL", "") or None
    model: str = os.getenv("OPENAI_MODEL", "gpt-5-mini")
    max_tokens: int = int(os.getenv("OPENAI_MAX_TOKENS", "20000"))
    temperature: float = float(os.getenv("OPENAI_TEMPERATURE", "0.2"))
    request_timeout: float = float(os.getenv("OPENAI_TIMEOUT", "300"))

    # Single-shot full-text analysis goes to the big model. temperature=1
    # because that model rejects anything else.
    full_text_model: str = os.getenv("OPENAI_FULL_TEXT_MODEL", "gpt-5")
    full_text_temperature: float = 1.0

    # 3 attempts, 200ms * 3^n backoff: 200ms, 600ms (1800ms would be the
    # next step but the third failure is final).
    max_attempts: int = 3
    retry_base_delay: float = 0.2
    retry_multiplier: float = 3.0

    # llama.cpp only
    model_path: str = os.getenv(
        "LLM_MODEL_PATH",
        "models/mistral-7b-instruct-v0.2.Q4_K_M.gguf",
    )
    n_ctx: int = 8192
    n_threads: int = 0  # 0 = auto-detect


@dataclass
class WindowingConfig:
    """
    Map-reduce windowing.

    Documents under whole_document_threshold chars go to the backend in one
    call. Anything bigger is cut into window_size windows sharing `overlap`
    chars, so a requirement sentence cut by one boundary is whole in the
    neighbouring window.
    """
    window_size: int = int(os.getenv("CHUNK_SIZE", "1000"))
    overlap: int = int(os.getenv("CHUNK_OVERLAP", "100"))
    whole_document_threshold: int = 15000


@dataclass
class MergeConfig:
    """Per-field caps applied by the reducer."""
    list_cap: int = 12
    document_spec_cap: int = 20


@dataclass
class PipelineConfig:
    # "json" asks for a JSON object; "sections" for numbered plain text.
    output_format: str = os.getenv("OUTPUT_FORMAT", "json")
    finalize: bool = os.getenv("FINALIZE", "0").lower() in ("1", "true", "yes")
    # 1 = windows go out one at a time. Raising it trades rate-limit
    # headroom for throughput.
    max_concurrency: int = int(os.getenv("MAX_CONCURRENCY", "1"))


@dataclass
class KnowledgeBaseConfig:
    path: str = os.getenv("KB_PATH", "kb/capabilities.json")


@dataclass
class NotionConfig:
    """
    Notion workspace publishing.

    Notion accepts at most 100 children per request. We send 50 with the
    page create call (the create payload also carries properties) and
    append the rest in 90s.
    """
    token: str = _env_id("NOTION_TOKEN")
    database_id: str = _env_id("NOTION_DATABASE_ID")
    base_url: str = "https://api.notion.com/v1"
    api_version: str = "2022-06-28"
    first_batch_size: int = 50
    append_batch_size: int = 90
    timeout: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.database_id)


@dataclass
class QueueConfig:
    max_size: int = int(os.getenv("JOB_QUEUE_SIZE", "32"))
    workers: int = int(os.getenv("JOB_WORKERS", "2"))
    publish_attempts: int = 3
    publish_retry_delay: float = 2.0
    # Finished jobs kept for the status endpoints; older ones are forgotten.
    history_size: int = int(os.getenv("JOB_HISTORY_SIZE", "200"))


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    windowing: WindowingConfig = field(default_factory=WindowingConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    knowledge_base: KnowledgeBaseConfig = field(default_factory=KnowledgeBaseConfig)
    notion: NotionConfig = field(default_factory=NotionConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)

    # 0 = unlimited
    max_file_size_mb: int = int(os.getenv("MAX_FILE_SIZE_MB", "0"))
    supported_formats: tuple = (".pdf", ".docx", ".csv", ".txt")
    output_dir: str = os.getenv("OUTPUT_DIR", "outputs")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Catch obviously broken settings at startup."""
        if self.llm.backend not in ("openai", "llama_cpp"):
            raise ValueError(f"Unknown LLM backend: {self.llm.backend!r}")
        if self.pipeline.output_format not in ("json", "sections"):
            raise ValueError(
                f"OUTPUT_FORMAT must be 'json' or 'sections', got {self.pipeline.output_format!r}"
            )
        if self.llm.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.llm.max_attempts}")
        if self.pipeline.max_concurrency < 1:
            logger.warning(
                "MAX_CONCURRENCY=%d makes no sense, falling back to sequential.",
                self.pipeline.max_concurrency,
            )
            self.pipeline.max_concurrency = 1
        if self.llm.backend == "openai" and not self.llm.api_key:
            logger.warning("OPENAI_API_KEY is not set; analysis calls will fail.")


# Singleton — every module imports this same instance
config = Config()
