"""
Shared fixtures and fake collaborators for podroom tests.

The fakes replace the external ASR, LLM, embedding and probe services so
tests run without network access or model downloads.
"""

import math
import zlib
from typing import Callable, List, Optional

import pytest

from podroom.config import Settings
from podroom.embeddings import Embedder
from podroom.llm import LLMClient
from podroom.podcast.models import SegmentRequest, TranscriptPiece
from podroom.podcast.transcriber import BaseTranscriber, DurationProbe, TranscriberConfig
from podroom.service import PodroomService
from podroom.stats import UsageStats


SUMMARY_REPLY = "The hosts discuss how podcasts are produced and what makes a good interview."


def echo_transcript(prompt: str) -> str:
    """Return the transcript part of a cleaning prompt unchanged."""
    return prompt.rsplit(":\n", 1)[-1]


def default_reply(prompt: str, system: Optional[str]) -> str:
    if prompt.startswith("Write a concise summary"):
        return SUMMARY_REPLY
    if prompt.startswith("Extract 5-10 key takeaways"):
        return '["Preparation matters", "Listen more than you talk"]'
    if prompt.startswith("Extract 5-10 keywords"):
        return 'Keywords: ["Podcasting", "Interviews"]'
    if prompt.startswith("Transcript excerpts:"):
        return "They talk about interview preparation."
    return echo_transcript(prompt)


class FakeLLM(LLMClient):
    """Scripted text generation. The responder may raise to simulate failures."""

    provider = "fake"

    def __init__(self, responder: Callable[[str, Optional[str]], str] = None, stats: UsageStats = None):
        super().__init__(model="fake", timeout=1, stats=stats)
        self.responder = responder or default_reply
        self.calls: List[dict] = []

    async def _generate(self, prompt, system, max_tokens, temperature) -> str:
        self.calls.append({"prompt": prompt, "system": system, "max_tokens": max_tokens})
        return self.responder(prompt, system)


class FakeEmbedder(Embedder):
    """Hashed bag-of-words vectors, normalized."""

    def __init__(self, dimensions: int = 8):
        super().__init__(dimensions=dimensions)

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        vectors = []
        for text in texts:
            vector = [0.0] * self.dimensions
            for word in text.lower().split():
                vector[zlib.crc32(word.encode()) % self.dimensions] += 1.0
            norm = math.sqrt(sum(v * v for v in vector)) or 1.0
            vectors.append([v / norm for v in vector])
        return vectors


def two_pieces(request: SegmentRequest) -> List[TranscriptPiece]:
    return [
        TranscriptPiece(start=0.0, end=5.0, text=f"Segment {request.index} opening remark."),
        TranscriptPiece(start=5.0, end=10.0, text=f"Segment {request.index} closing remark."),
    ]


class FakeTranscriber(BaseTranscriber):
    """Returns pieces from a function of the request and records every request."""

    def __init__(self, pieces_for: Callable[[SegmentRequest], List[TranscriptPiece]] = None):
        super().__init__(TranscriberConfig(endpoint="http://asr.test"))
        self.pieces_for = pieces_for or two_pieces
        self.requests: List[SegmentRequest] = []

    async def transcribe(self, request: SegmentRequest) -> List[TranscriptPiece]:
        self.requests.append(request)
        return self.pieces_for(request)


class FakeProbe(DurationProbe):
    def __init__(self, duration: float = 400.0, error: Exception = None):
        self.duration = duration
        self.error = error

    async def probe(self, url: str) -> float:
        if self.error is not None:
            raise self.error
        return self.duration


@pytest.fixture
def config(tmp_path):
    return Settings(
        storage_path=tmp_path,
        lancedb_path=tmp_path / ".lancedb",
        embedding_dimensions=8,
        max_concurrent_tasks=1,
        queue_poll_interval=0.05,
        asr_max_concurrent=2,
    )


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def embedder():
    return FakeEmbedder(dimensions=8)


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def probe():
    return FakeProbe(400.0)


@pytest.fixture
def service(config, llm, embedder, transcriber, probe):
    return PodroomService.from_settings(
        config,
        llm=llm,
        embedder=embedder,
        transcriber=transcriber,
        probe=probe,
    )
