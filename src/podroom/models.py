"""
Podroom Data Models
Pydantic models for tasks, episodes, chunks, cleaning results and answers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .podcast.models import TranscriptPiece


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Tasks ---


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.READY, TaskStatus.FAILED)


class TaskType(str, Enum):
    PROCESS_EPISODE = "process_episode"


class TaskInput(BaseModel):
    """Submission payload for a processing task."""

    url: str = Field(description="Source URL of the episode audio")
    user_id: Optional[str] = Field(None, description="Submitting user, if known")
    title: Optional[str] = Field(None, description="Episode title hint")


class Task(BaseModel):
    """A unit of background work. Mutated only by the worker that claims it."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: TaskType = TaskType.PROCESS_EPISODE
    status: TaskStatus = TaskStatus.PENDING
    data: TaskInput
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStatus(BaseModel):
    """Snapshot of queue counts and worker capacity."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    max_concurrent: int = 0
    current_concurrent: int = 0


# --- Episodes ---


class Report(BaseModel):
    """Structured summary of an episode."""

    summary: str = ""
    key_points: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class Episode(BaseModel):
    """A processed (or in-progress) recording, upserted by source URL."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_url: str = Field(description="URL the episode was submitted with")
    audio_url: str = Field(description="Resolved audio URL handed to ASR")
    title: str = ""
    segments: List[TranscriptPiece] = Field(default_factory=list)
    transcript: Optional[str] = None
    script: Optional[str] = None
    summary: Optional[Report] = None
    duration_seconds: Optional[float] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TranscriptChunk(BaseModel):
    """A time-aligned slice of the cleaned script, with its embedding."""

    chunk_id: str = Field(description="Episode id + chunk index")
    episode_id: str
    start_sec: float
    end_sec: float
    text: str
    vector: List[float] = Field(default_factory=list)


class ScoredChunk(BaseModel):
    """A chunk returned from similarity search."""

    chunk_id: str
    episode_id: str
    episode_title: str = ""
    start_sec: float
    end_sec: float
    text: str
    distance: float


# --- Cleaning ---


class AtRiskStatement(BaseModel):
    """A factual statement whose numbers or names did not survive cleaning."""

    statement: str
    missing_terms: List[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    """Content-retention report produced by the integrity strategy."""

    target_ratio: float
    actual_ratio: float
    score: int = Field(description="0-100, 100 means nothing at risk")
    facts_checked: int = 0
    at_risk: List[AtRiskStatement] = Field(default_factory=list)
    summary: str = ""


class CleaningResult(BaseModel):
    """Output of one cleaning strategy run."""

    method: str
    reason: str
    script: str
    processing_time: float = 0.0
    estimated_tokens: int = 0
    cost_estimate: float = 0.0
    windows: int = 1
    quality_score: float = 1.0
    issues: List[str] = Field(default_factory=list)
    integrity_report: Optional[IntegrityReport] = None
    speaker_map: Dict[str, str] = Field(default_factory=dict)
    fallback: Optional[str] = None


# --- QA ---


class Citation(BaseModel):
    episode_id: str
    episode_title: str = ""
    start: float
    end: float
    time_range: str = ""
    chunk_id: str
    distance: Optional[float] = None


class Answer(BaseModel):
    answer: str
    citations: List[Citation] = Field(default_factory=list)


# --- Pipeline ---


class StepMetric(BaseModel):
    status: str = "pending"  # pending | running | completed | skipped | failed
    duration: float = 0.0


class PipelineMetrics(BaseModel):
    """Per-run metrics written onto the episode and the task."""

    audio_duration: float = 0.0
    asr_segments_count: int = 0
    chunks_count: int = 0
    cleaning_windows: int = 0
    cleaning_method: Optional[str] = None
    transcript_compression_ratio: Optional[float] = None
    report_compression_ratio: Optional[float] = None
    cost_estimate: float = 0.0
    from_cache: bool = False
    steps: Dict[str, StepMetric] = Field(
        default_factory=lambda: {
            name: StepMetric() for name in ("asr", "cleaning", "report", "indexing")
        }
    )


class PipelineOutcome(BaseModel):
    """What run_pipeline hands back to the queue worker."""

    episode_id: str
    title: str = ""
    transcript_chars: int = 0
    script_chars: int = 0
    chunks_count: int = 0
    metrics: PipelineMetrics = Field(default_factory=PipelineMetrics)


class ConsistencyReport(BaseModel):
    """Which artifacts an episode has, and what is missing."""

    episode_id: str
    exists: bool = True
    has_transcript: bool = False
    has_script: bool = False
    has_summary: bool = False
    chunks_count: int = 0
    issues: List[str] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.issues
