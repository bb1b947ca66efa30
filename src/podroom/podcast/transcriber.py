"""
Transcription Collaborators

Abstract transcriber and duration-probe contracts, plus the shipped
adapters: an HTTP client for a self-hosted ASR service and an ffprobe
based duration probe.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx

from ..config import Settings, settings
from ..errors import UpstreamError
from ..llm import RetryPolicy
from ..stats import UsageStats
from .models import SegmentRequest, TranscriptPiece

logger = logging.getLogger(__name__)

# Placeholder texts some ASR backends return for silent audio
_NO_SPEECH_MARKERS = {"no words", "[no speech]", "[blank_audio]"}


@dataclass
class TranscriberConfig:
    """Configuration for transcriber backends."""

    endpoint: str = ""
    api_key: str = ""
    language: str = "auto"
    timeout: float = 300.0

    @classmethod
    def from_settings(cls, config: Settings = None) -> "TranscriberConfig":
        config = config or settings
        return cls(
            endpoint=config.asr_endpoint,
            api_key=config.asr_api_key,
            timeout=config.asr_timeout_seconds,
        )


class BaseTranscriber(ABC):
    """
    Abstract base class for ASR backends.

    Implementations return pieces with times relative to the start of the
    requested segment; the pipeline shifts them to episode time.
    """

    def __init__(self, config: Optional[TranscriberConfig] = None, stats: Optional[UsageStats] = None):
        self.config = config or TranscriberConfig.from_settings()
        self.stats = stats or UsageStats()

    @abstractmethod
    async def transcribe(self, request: SegmentRequest) -> List[TranscriptPiece]:
        """
        Transcribe one segment.

        Returns:
            Pieces ordered by start time; empty if the segment has no speech

        Raises:
            UpstreamError: If the backend fails or times out
        """

    def is_available(self) -> bool:
        return True


def parse_asr_payload(payload: dict, duration: float) -> List[TranscriptPiece]:
    """
    Normalize an ASR response into pieces.

    Accepts either {"segments": [{start, end, text, speaker?}, ...]} or a
    bare {"text": "..."}, which becomes one piece spanning the segment.
    """
    pieces = []
    for item in payload.get("segments") or []:
        text = (item.get("text") or "").strip()
        if not text or text.lower() in _NO_SPEECH_MARKERS:
            continue
        pieces.append(
            TranscriptPiece(
                start=float(item.get("start", 0.0)),
                end=float(item.get("end", item.get("start", 0.0))),
                text=text,
                speaker=item.get("speaker"),
            )
        )
    if pieces:
        return sorted(pieces, key=lambda p: p.start)

    text = (payload.get("text") or "").strip()
    if not text or text.lower() in _NO_SPEECH_MARKERS:
        return []
    return [TranscriptPiece(start=0.0, end=duration, text=text)]


class HttpTranscriber(BaseTranscriber):
    """Client for an ASR service that fetches and trims the audio itself."""

    def __init__(
        self,
        config: Optional[TranscriberConfig] = None,
        stats: Optional[UsageStats] = None,
        retry: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config, stats)
        self.retry = retry or RetryPolicy.from_settings()
        self._transport = transport

    async def transcribe(self, request: SegmentRequest) -> List[TranscriptPiece]:
        self.stats.incr("asr_calls")
        try:
            return await self.retry.call(self._request, request)
        except UpstreamError:
            self.stats.incr("asr_failures")
            raise

    async def _request(self, request: SegmentRequest) -> List[TranscriptPiece]:
        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.config.endpoint,
                    json={
                        "audio_url": request.audio_url,
                        "start": request.start,
                        "duration": request.duration,
                        "language": self.config.language,
                    },
                    headers=headers,
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise UpstreamError(f"ASR timed out on segment {request.index}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"ASR failed on segment {request.index}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"ASR returned invalid JSON for segment {request.index}") from e

        pieces = parse_asr_payload(payload, request.duration)
        logger.debug(f"Segment {request.index}: {len(pieces)} pieces")
        return pieces


class DurationProbe(ABC):
    """Reports the length of an audio resource in seconds."""

    @abstractmethod
    async def probe(self, url: str) -> float:
        """Raise on failure; callers decide the fallback."""


class FfprobeDurationProbe(DurationProbe):
    """Reads the container duration with ffprobe (works on remote URLs)."""

    def __init__(self, ffprobe_path: str = None, timeout: float = None):
        self.ffprobe_path = ffprobe_path or settings.ffprobe_path
        self.timeout = timeout or settings.probe_timeout_seconds

    async def probe(self, url: str) -> float:
        process = await asyncio.create_subprocess_exec(
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            url,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise UpstreamError(f"ffprobe timed out after {self.timeout}s")

        if process.returncode != 0:
            raise UpstreamError(f"ffprobe failed: {stderr.decode(errors='ignore').strip()[:200]}")

        duration = float(stdout.decode().strip())
        if duration <= 0:
            raise UpstreamError(f"ffprobe reported non-positive duration: {duration}")
        return duration


async def probe_duration(probe: DurationProbe, url: str, fallback: float = None) -> float:
    """Probe duration, falling back to a fixed estimate on any failure."""
    fallback = settings.fallback_duration_seconds if fallback is None else fallback
    try:
        return await probe.probe(url)
    except Exception as e:
        logger.warning(f"Duration probe failed for {url}, using {fallback:.0f}s: {e}")
        return fallback


def create_transcriber(config: Settings = None, stats: Optional[UsageStats] = None) -> HttpTranscriber:
    """Build the configured ASR client."""
    config = config or settings
    return HttpTranscriber(
        TranscriberConfig.from_settings(config),
        stats=stats,
        retry=RetryPolicy.from_settings(config),
    )
