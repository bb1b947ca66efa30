"""
Podcast Transcription Data Models

Pydantic models for transcript pieces and audio segment descriptors.
"""

from typing import Optional

from pydantic import BaseModel, Field


class TranscriptPiece(BaseModel):
    """A timestamped piece of transcribed speech with optional speaker label."""

    start: float = Field(description="Start time in seconds (absolute within the episode)")
    end: float = Field(description="End time in seconds")
    text: str = Field(description="Transcribed text")
    speaker: Optional[str] = Field(None, description="Speaker label (e.g., 'Speaker 1')")

    def shifted(self, offset: float) -> "TranscriptPiece":
        """Return a copy moved forward by offset seconds."""
        return self.model_copy(update={"start": self.start + offset, "end": self.end + offset})


class SegmentDescriptor(BaseModel):
    """One time range of an episode to transcribe. Produced per run, never persisted."""

    index: int = Field(description="Zero-based position in the episode")
    start: float = Field(description="Segment start in seconds")
    end: float = Field(description="Segment end in seconds")
    duration: float = Field(description="end - start")
    estimated_size_bytes: int = Field(0, description="Estimated encoded payload size")
    compatible: bool = Field(True, description="Within ASR duration and size limits")


class SegmentRequest(BaseModel):
    """What the ASR collaborator receives for one segment."""

    audio_url: str
    index: int
    start: float
    duration: float
