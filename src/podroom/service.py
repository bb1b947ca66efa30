"""
Podroom Service

Builds every component from settings and connects them: the queue's
task processor upserts the episode for a submitted URL and runs the
pipeline; QA reads go through the vector index; access events land in
the store.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .cache import MultiLevelCache
from .cleaning import StrategySelector
from .config import Settings, settings
from .db import Database
from .embeddings import Embedder, create_embedder
from .errors import ValidationError
from .events import EventEmitter
from .llm import LLMClient, create_llm_client
from .models import Answer, ConsistencyReport, Episode, Task
from .pipeline import PipelineOrchestrator
from .podcast.reporter import ReportGenerator
from .podcast.transcriber import BaseTranscriber, DurationProbe, FfprobeDurationProbe, create_transcriber
from .queue import TaskQueue
from .search import VectorIndex
from .stats import UsageStats

logger = logging.getLogger(__name__)


@dataclass
class PodroomService:
    """Every long-lived component of a running podroom instance."""

    config: Settings
    stats: UsageStats
    events: EventEmitter
    db: Database
    cache: MultiLevelCache
    llm: LLMClient
    embedder: Embedder
    index: VectorIndex
    pipeline: PipelineOrchestrator
    queue: TaskQueue

    @classmethod
    def from_settings(
        cls,
        config: Settings = None,
        llm: Optional[LLMClient] = None,
        embedder: Optional[Embedder] = None,
        transcriber: Optional[BaseTranscriber] = None,
        probe: Optional[DurationProbe] = None,
    ) -> "PodroomService":
        """
        Build the service. Collaborators can be injected; the rest come
        from configuration.

        Raises:
            ConfigurationError: If a configured provider lacks credentials
        """
        config = config or settings
        config.ensure_directories()

        stats = UsageStats()
        events = EventEmitter()
        database = Database(config.lancedb_path, config.embedding_dimensions)
        cache = MultiLevelCache(store=database, max_size=config.cache_memory_size, stats=stats, config=config)
        llm = llm or create_llm_client(config, stats)
        embedder = embedder or create_embedder(config, stats)
        transcriber = transcriber or create_transcriber(config, stats)
        probe = probe or FfprobeDurationProbe(config.ffprobe_path, config.probe_timeout_seconds)

        index = VectorIndex(database, embedder, llm, events=events, config=config)
        pipeline = PipelineOrchestrator(
            database=database,
            cache=cache,
            transcriber=transcriber,
            probe=probe,
            selector=StrategySelector(llm, config),
            reporter=ReportGenerator(llm),
            index=index,
            events=events,
            stats=stats,
            config=config,
        )
        queue = TaskQueue(
            state_file=config.queue_state_path,
            max_concurrent=config.max_concurrent_tasks,
            poll_interval=config.queue_poll_interval,
            task_timeout=config.task_timeout_seconds,
            events=events,
            stats=stats,
        )

        service = cls(
            config=config,
            stats=stats,
            events=events,
            db=database,
            cache=cache,
            llm=llm,
            embedder=embedder,
            index=index,
            pipeline=pipeline,
            queue=queue,
        )
        queue.processor = service.process_task
        events.on("qa.answered", service._record_access)
        return service

    # --- Queue processing ---

    async def process_task(self, task: Task, should_cancel: Callable[[], bool]) -> Dict[str, Any]:
        """Upsert the episode for the task's URL and run the pipeline."""
        episode = self.db.upsert_episode_by_url(task.data.url, title=task.data.title)
        outcome = await self.pipeline.run_pipeline(episode.id, should_cancel=should_cancel)
        return outcome.model_dump(mode="json")

    def submit(self, url: str, title: Optional[str] = None, user_id: Optional[str] = None) -> str:
        return self.queue.add_task("process_episode", {"url": url, "title": title, "user_id": user_id})

    # --- Reads ---

    async def answer(self, question: str, limit: Optional[int] = None, episode_id: Optional[str] = None) -> Answer:
        return await self.index.answer(question, limit=limit, episode_id=episode_id)

    def trigger_pipeline(self, episode_id: str, **kwargs):
        if self.db.get_episode(episode_id) is None:
            raise ValidationError(f"Episode not found: {episode_id}")
        return self.pipeline.trigger(episode_id, **kwargs)

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        return self.db.get_episode(episode_id)

    # --- Maintenance ---

    def check_episode_consistency(self, episode_id: str) -> ConsistencyReport:
        """Report which artifacts an episode is missing."""
        episode = self.db.get_episode(episode_id)
        if episode is None:
            return ConsistencyReport(episode_id=episode_id, exists=False, issues=["Episode not found"])

        report = ConsistencyReport(
            episode_id=episode_id,
            has_transcript=bool(episode.transcript),
            has_script=bool(episode.script),
            has_summary=bool(episode.summary and episode.summary.summary),
            chunks_count=self.db.count_chunks(episode_id),
        )
        if not report.has_transcript:
            report.issues.append("Missing transcript")
        if not report.has_script:
            report.issues.append("Missing cleaned script")
        if not report.has_summary:
            report.issues.append("Missing summary")
        if report.has_script and report.chunks_count == 0:
            report.issues.append("Script is not indexed")
        return report

    def merge_episodes(self, source_id: str, target_id: Optional[str]) -> Episode:
        return self.db.merge_episodes(source_id, target_id)

    async def _record_access(self, event: str, payload: Dict[str, Any]) -> None:
        episode_ids = payload.get("episode_ids") or [""]
        for episode_id in episode_ids:
            self.db.log_access(event, episode_id, {"question": payload.get("question"), "user_id": payload.get("user_id")})
