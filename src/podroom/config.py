"""
Podroom Configuration
Pydantic Settings for all configurable options.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PODROOM_",
        extra="ignore",
    )

    # --- Storage Paths ---
    storage_path: Path = Field(default=Path.home() / "_PODROOM_STORAGE")
    lancedb_path: Path = Field(default=Path.home() / "_PODROOM_STORAGE" / ".lancedb")
    queue_state_file: str = "task_queue.json"  # Relative to storage_path

    # --- Task Queue ---
    max_concurrent_tasks: int = 3
    queue_poll_interval: float = 5.0  # seconds between idle polls
    task_timeout_seconds: float = 3 * 60 * 60  # 3 hours per task

    # --- ASR ---
    asr_endpoint: str = "http://localhost:9000/asr"
    asr_api_key: str = ""
    asr_min_segment_seconds: float = 10.0
    asr_max_segment_seconds: float = 180.0
    asr_default_segment_seconds: float = 170.0
    asr_max_concurrent: int = 3
    asr_bitrate_kbps: int = 128  # Used to estimate segment payload size
    asr_max_segment_bytes: int = 10 * 1024 * 1024
    asr_timeout_seconds: float = 300.0
    fallback_duration_seconds: float = 2640.0  # 44 minutes, used when probing fails
    ffprobe_path: str = "ffprobe"
    probe_timeout_seconds: float = 30.0

    # --- LLM Provider ---
    llm_provider: Literal["ollama", "openai"] = "ollama"
    ollama_model: str = "qwen2.5:7b"
    ollama_base_url: str = "http://localhost:11434"
    openai_model: str = "qwen-plus"
    openai_base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    openai_api_key: str = ""
    llm_timeout_seconds: float = 600.0
    llm_temperature: float = 0.3
    llm_cost_per_1k_tokens: float = 0.002  # Rough blended input/output price

    # --- Embedding ---
    embedding_provider: Literal["sentence-transformers", "openai"] = "sentence-transformers"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    openai_embedding_model: str = "text-embedding-v3"
    embedding_dimensions: int = 384  # all-MiniLM-L6-v2 output dim
    embedding_batch_size: int = 16
    embedding_timeout_seconds: float = 60.0

    # --- Cleaning ---
    cleaning_max_input_tokens: int = 100_000  # Single-call input ceiling
    cleaning_max_output_tokens: int = 8_000  # Hard output limit per call
    cleaning_output_safety_margin: float = 0.8  # Fraction of output limit "whole" may use
    cleaning_expected_output_ratio: float = 0.7  # Cleaned / raw size
    cleaning_chunk_size: int = 12_000  # characters per window
    cleaning_chunk_overlap: int = 1_500
    cleaning_max_windows: int = 200
    cleaning_max_concurrent: int = 3
    cleaning_min_compression: float = 0.3
    cleaning_min_sentence_ratio: float = 0.2
    integrity_min_retention: float = 0.95
    speaker_window_segments: int = 10  # ASR pieces per speaker-memory window
    speaker_min_segments: int = 20  # Below this, boundaries do not help

    # --- Index / QA ---
    index_chunk_size: int = 800  # characters per indexed chunk
    index_chunk_overlap: int = 100
    vector_index_min_rows: int = 256  # ANN index needs enough rows to train
    qa_default_limit: int = 5
    qa_max_limit: int = 8
    qa_rerank: bool = False
    reranker_model: str = "BAAI/bge-reranker-v2-m3"

    # --- Cache ---
    cache_memory_size: int = 100
    cache_default_ttl: float = 5 * 60
    cache_short_ttl: float = 2 * 60
    cache_medium_ttl: float = 10 * 60
    cache_long_ttl: float = 7 * 24 * 60 * 60

    # --- Retry ---
    upstream_max_attempts: int = 1  # 1 disables retry
    upstream_retry_wait: float = 2.0
    upstream_retry_max_wait: float = 30.0

    # --- Server ---
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def queue_state_path(self) -> Path:
        return self.storage_path / self.queue_state_file

    def ensure_directories(self) -> None:
        """Create storage directories if they don't exist."""
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.lancedb_path.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
