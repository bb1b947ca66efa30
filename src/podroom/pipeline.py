"""
Pipeline Orchestrator

Runs one episode through probe -> segmentation -> transcription ->
cleaning -> report -> persistence -> indexing. Stages run strictly in
order; only transcription segments and cleaning windows run in parallel.
Each artifact is cached as soon as it exists, so a re-run resumes from
the last cached artifact instead of repeating paid calls.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Callable, List, Optional, Set, Tuple

from .cache import MultiLevelCache, cache_keys
from .cleaning import CleaningContext, StrategySelector
from .config import Settings, settings
from .db import Database
from .errors import TaskCancelledError, UpstreamError, ValidationError
from .events import EventEmitter
from .models import Episode, PipelineMetrics, PipelineOutcome, Report, utcnow
from .podcast.models import SegmentDescriptor, SegmentRequest, TranscriptPiece
from .podcast.reporter import ReportGenerator
from .podcast.segmenter import estimate_segment_bytes, segment
from .podcast.transcriber import BaseTranscriber, DurationProbe, probe_duration
from .search import VectorIndex
from .stats import UsageStats

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Sequences the processing stages for one episode at a time."""

    def __init__(
        self,
        database: Database,
        cache: MultiLevelCache,
        transcriber: BaseTranscriber,
        probe: DurationProbe,
        selector: StrategySelector,
        reporter: ReportGenerator,
        index: VectorIndex,
        events: Optional[EventEmitter] = None,
        stats: Optional[UsageStats] = None,
        config: Settings = None,
    ):
        self.db = database
        self.cache = cache
        self.transcriber = transcriber
        self.probe = probe
        self.selector = selector
        self.reporter = reporter
        self.index = index
        self.events = events or EventEmitter()
        self.stats = stats or UsageStats()
        self.config = config or settings
        self._background: Set[asyncio.Task] = set()

    @contextmanager
    def _step(self, metrics: PipelineMetrics, name: str, episode_id: str):
        """Time a stage and record its status."""
        step = metrics.steps[name]
        step.status = "running"
        started = time.monotonic()
        logger.info(f"[{episode_id[:8]}] {name} started")
        try:
            yield step
        except Exception:
            step.status = "failed"
            step.duration = round(time.monotonic() - started, 3)
            logger.warning(f"[{episode_id[:8]}] {name} failed after {step.duration:.1f}s")
            raise
        step.status = "completed"
        step.duration = round(time.monotonic() - started, 3)
        self.stats.record_stage(name, step.duration)
        logger.info(f"[{episode_id[:8]}] {name} completed in {step.duration:.1f}s")

    @staticmethod
    def _check_cancel(should_cancel: Optional[Callable[[], bool]], stage: str) -> None:
        if should_cancel is not None and should_cancel():
            raise TaskCancelledError(f"Canceled before {stage}")

    # --- Stages ---

    def plan_segments(self, duration: float) -> List[SegmentDescriptor]:
        """One segment for short audio, fixed-length segments otherwise."""
        if duration > self.config.asr_max_segment_seconds:
            return segment(duration, self.config.asr_default_segment_seconds, self.config)
        return [
            SegmentDescriptor(
                index=0,
                start=0.0,
                end=duration,
                duration=duration,
                estimated_size_bytes=estimate_segment_bytes(duration, self.config.asr_bitrate_kbps),
            )
        ]

    async def transcribe(self, episode: Episode) -> Tuple[float, List[SegmentDescriptor], List[TranscriptPiece], str]:
        """
        Probe, segment and transcribe concurrently.

        Returns:
            (duration, segments, pieces in episode time, merged transcript)

        Raises:
            UpstreamError: If a segment fails or no segment contains speech
        """
        duration = await probe_duration(
            self.probe, episode.audio_url, fallback=self.config.fallback_duration_seconds
        )
        segments = self.plan_segments(duration)
        semaphore = asyncio.Semaphore(max(1, self.config.asr_max_concurrent))

        async def run(descriptor: SegmentDescriptor):
            async with semaphore:
                pieces = await self.transcriber.transcribe(
                    SegmentRequest(
                        audio_url=episode.audio_url,
                        index=descriptor.index,
                        start=descriptor.start,
                        duration=descriptor.duration,
                    )
                )
            return descriptor, [p.shifted(descriptor.start) for p in pieces]

        outcomes = await asyncio.gather(*(run(d) for d in segments), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        outcomes.sort(key=lambda item: item[0].start)
        pieces: List[TranscriptPiece] = []
        blocks: List[str] = []
        for _, segment_pieces in outcomes:
            if not segment_pieces:
                continue
            pieces.extend(segment_pieces)
            blocks.append(" ".join(p.text for p in segment_pieces))

        if not pieces:
            raise UpstreamError(f"No speech recognized in any of {len(segments)} segments")

        return duration, segments, pieces, "\n\n".join(blocks)

    def _cached_transcript(self, episode: Episode) -> Optional[dict]:
        """
        Cached transcript entry, or one rebuilt from the stored episode when
        the script and summary are still cached. Either way no ASR is needed.
        """
        url = episode.source_url
        cached = self.cache.get(cache_keys.transcript(url))
        if cached:
            return cached
        if not episode.transcript:
            return None
        if self.cache.get(cache_keys.script(url)) is None or self.cache.get(cache_keys.summary(url)) is None:
            return None

        restored = {
            "text": episode.transcript,
            "segments": [p.model_dump() for p in episode.segments],
            "duration": episode.duration_seconds or 0.0,
            "segments_count": episode.metrics.get("asr_segments_count", 0),
        }
        self.cache.set(cache_keys.transcript(url), restored)
        logger.info(f"[{episode.id[:8]}] Transcript restored from the stored episode")
        return restored

    # --- Orchestration ---

    async def run_pipeline(
        self,
        episode_id: str,
        should_cancel: Optional[Callable[[], bool]] = None,
        strategy: Optional[str] = None,
        correctness_critical: bool = False,
        use_cache: bool = True,
    ) -> PipelineOutcome:
        """
        Process one episode end to end.

        Args:
            episode_id: Episode to process
            should_cancel: Polled between stages; True raises TaskCancelledError
            strategy: Force a cleaning strategy by name
            correctness_critical: Prefer the integrity cleaning strategy
            use_cache: Reuse cached transcript, script and summary

        Returns:
            PipelineOutcome with the per-step metrics

        Raises:
            ValidationError: If the episode does not exist
            UpstreamError, CapacityError: From the failing stage; earlier
                artifacts stay cached
        """
        episode = self.db.get_episode(episode_id)
        if episode is None:
            raise ValidationError(f"Episode not found: {episode_id}")

        url = episode.source_url
        metrics = PipelineMetrics()
        logger.info(f"[{episode_id[:8]}] Pipeline started for {url}")

        # Transcript
        self._check_cancel(should_cancel, "asr")
        cached = self._cached_transcript(episode) if use_cache else None
        if cached:
            transcript = cached["text"]
            pieces = [TranscriptPiece(**p) for p in cached.get("segments", [])]
            duration = cached.get("duration") or 0.0
            metrics.asr_segments_count = cached.get("segments_count", 0)
            metrics.steps["asr"].status = "skipped"
            metrics.from_cache = True
            logger.info(f"[{episode_id[:8]}] Using cached transcript")
        else:
            with self._step(metrics, "asr", episode_id):
                duration, segments, pieces, transcript = await self.transcribe(episode)
            metrics.asr_segments_count = len(segments)
            self.cache.set(
                cache_keys.transcript(url),
                {
                    "text": transcript,
                    "segments": [p.model_dump() for p in pieces],
                    "duration": duration,
                    "segments_count": len(segments),
                },
            )
        metrics.audio_duration = duration

        # Cleaning
        self._check_cancel(should_cancel, "cleaning")
        cached = self.cache.get(cache_keys.script(url)) if use_cache else None
        if cached:
            script = cached["script"]
            metrics.cleaning_method = cached.get("method")
            metrics.cleaning_windows = cached.get("windows", 0)
            metrics.steps["cleaning"].status = "skipped"
        else:
            with self._step(metrics, "cleaning", episode_id):
                result = await self.selector.clean(
                    CleaningContext(
                        text=transcript,
                        segments=pieces,
                        force=strategy,
                        correctness_critical=correctness_critical,
                    )
                )
            script = result.script
            metrics.cleaning_method = result.method
            metrics.cleaning_windows = result.windows
            metrics.cost_estimate += result.cost_estimate
            self.cache.set(
                cache_keys.script(url),
                {
                    "script": script,
                    "method": result.method,
                    "reason": result.reason,
                    "windows": result.windows,
                    "issues": result.issues,
                },
            )
        metrics.transcript_compression_ratio = round(len(script) / max(len(transcript), 1), 3)

        # Report
        self._check_cancel(should_cancel, "report")
        cached = self.cache.get(cache_keys.summary(url)) if use_cache else None
        if cached:
            report = Report.model_validate(cached)
            metrics.steps["report"].status = "skipped"
        else:
            with self._step(metrics, "report", episode_id):
                report = await self.reporter.generate(script)
            self.cache.set(cache_keys.summary(url), report.model_dump())
        metrics.report_compression_ratio = round(len(report.summary) / max(len(script), 1), 3)

        # Persist
        episode.transcript = transcript
        episode.segments = pieces
        episode.script = script
        episode.summary = report
        episode.duration_seconds = duration
        episode.metrics = metrics.model_dump()
        episode.updated_at = utcnow()
        self.db.save_episode(episode)
        self.cache.set(cache_keys.episode(url), episode.model_dump(mode="json"))

        # Indexing
        self._check_cancel(should_cancel, "indexing")
        with self._step(metrics, "indexing", episode_id):
            chunks = await self.index.index_episode(episode)
        metrics.chunks_count = len(chunks)

        episode.metrics = metrics.model_dump()
        self.db.save_episode(episode)

        logger.info(
            f"[{episode_id[:8]}] Pipeline completed: {len(chunks)} chunks, "
            f"cleaning={metrics.cleaning_method}, from_cache={metrics.from_cache}"
        )
        await self.events.emit("pipeline.completed", {"episode_id": episode_id})
        return PipelineOutcome(
            episode_id=episode.id,
            title=episode.title,
            transcript_chars=len(transcript),
            script_chars=len(script),
            chunks_count=len(chunks),
            metrics=metrics,
        )

    def trigger(self, episode_id: str, **kwargs) -> asyncio.Task:
        """Start run_pipeline in the background. Failures are logged and emitted, never raised."""
        task = asyncio.get_running_loop().create_task(self._run_detached(episode_id, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_detached(self, episode_id: str, **kwargs) -> Optional[PipelineOutcome]:
        try:
            return await self.run_pipeline(episode_id, **kwargs)
        except Exception as e:
            logger.exception(f"Background pipeline failed for {episode_id}")
            await self.events.emit("pipeline.failed", {"episode_id": episode_id, "error": str(e)})
            return None
