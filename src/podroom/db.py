"""
Podroom Database Layer
LanceDB operations for episodes, transcript chunks, cache entries and
access logs.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import lancedb
from lancedb.pydantic import LanceModel, Vector

from .config import settings
from .errors import ConsistencyError, ValidationError
from .models import Episode, Report, ScoredChunk, TranscriptChunk, utcnow
from .podcast.models import TranscriptPiece

logger = logging.getLogger(__name__)


class EpisodeTable(LanceModel):
    """LanceDB table schema for episodes. Nested fields are JSON strings."""

    id: str
    source_url: str
    audio_url: str
    title: str
    segments_json: str
    transcript: str
    script: str
    summary_json: str
    duration_seconds: float
    metrics_json: str
    created_at: str  # ISO format string
    updated_at: str


class CacheEntryTable(LanceModel):
    """LanceDB table schema for the shared cache tier."""

    key: str
    value_json: str
    expires_at: float  # Unix timestamp
    updated_at: str


class AccessLogTable(LanceModel):
    """LanceDB table schema for read access logs."""

    id: str
    event: str
    episode_id: str
    detail_json: str
    created_at: str


def chunk_table_schema(dimensions: int):
    """Build the chunk table schema for a given embedding size."""

    class TranscriptChunkTable(LanceModel):
        chunk_id: str
        episode_id: str
        start_sec: float
        end_sec: float
        text: str
        vector: Vector(dimensions)

    return TranscriptChunkTable


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class Database:
    """Database wrapper for LanceDB operations."""

    EPISODES = "episodes"
    CHUNKS = "transcript_chunks"
    CACHE = "cache_entries"
    ACCESS_LOGS = "access_logs"

    def __init__(self, db_path: Optional[Path] = None, embedding_dimensions: int = None):
        self.db_path = Path(db_path or settings.lancedb_path)
        self.embedding_dimensions = embedding_dimensions or settings.embedding_dimensions
        self._db = None
        self._episodes_table = None
        self._chunks_table = None
        self._cache_table = None
        self._access_table = None

    def connect(self) -> "Database":
        """Connect to LanceDB."""
        self.db_path.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.db_path))
        return self

    @property
    def db(self):
        if self._db is None:
            self.connect()
        return self._db

    def _get_or_create_table(self, name: str, schema):
        """Get existing table or create new one."""
        if name in self.db.table_names():
            return self.db.open_table(name)
        return self.db.create_table(name, schema=schema)

    def has_table(self, name: str) -> bool:
        return name in self.db.table_names()

    @property
    def episodes(self):
        if self._episodes_table is None:
            self._episodes_table = self._get_or_create_table(self.EPISODES, EpisodeTable)
        return self._episodes_table

    @property
    def chunks(self):
        if self._chunks_table is None:
            self._chunks_table = self._get_or_create_table(
                self.CHUNKS, chunk_table_schema(self.embedding_dimensions)
            )
        return self._chunks_table

    @property
    def cache_entries(self):
        if self._cache_table is None:
            self._cache_table = self._get_or_create_table(self.CACHE, CacheEntryTable)
        return self._cache_table

    @property
    def access_logs(self):
        if self._access_table is None:
            self._access_table = self._get_or_create_table(self.ACCESS_LOGS, AccessLogTable)
        return self._access_table

    @staticmethod
    def _select(table, where: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        """Run a filter-only query. Without a limit every matching row is returned."""
        if limit is None:
            limit = max(table.count_rows(where) if where else table.count_rows(), 1)
        query = table.search()
        if where:
            query = query.where(where)
        return query.limit(limit).to_list()

    # --- Episode Operations ---

    @staticmethod
    def _episode_record(episode: Episode) -> dict:
        return EpisodeTable(
            id=episode.id,
            source_url=episode.source_url,
            audio_url=episode.audio_url,
            title=episode.title or "",
            segments_json=json.dumps([s.model_dump() for s in episode.segments], ensure_ascii=False),
            transcript=episode.transcript or "",
            script=episode.script or "",
            summary_json=episode.summary.model_dump_json() if episode.summary else "",
            duration_seconds=float(episode.duration_seconds or 0.0),
            metrics_json=json.dumps(episode.metrics, ensure_ascii=False, default=str),
            created_at=episode.created_at.isoformat(),
            updated_at=utcnow().isoformat(),
        ).model_dump()

    @staticmethod
    def _episode_from_row(row: dict) -> Episode:
        return Episode(
            id=row["id"],
            source_url=row["source_url"],
            audio_url=row["audio_url"],
            title=row["title"],
            segments=[TranscriptPiece(**s) for s in json.loads(row["segments_json"] or "[]")],
            transcript=row["transcript"] or None,
            script=row["script"] or None,
            summary=Report.model_validate_json(row["summary_json"]) if row["summary_json"] else None,
            duration_seconds=row["duration_seconds"] or None,
            metrics=json.loads(row["metrics_json"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def save_episode(self, episode: Episode) -> Episode:
        """Insert or update an episode by id."""
        record = self._episode_record(episode)
        if self.get_episode(episode.id):
            self.episodes.delete(f"id = {_quote(episode.id)}")
        self.episodes.add([record])
        episode.updated_at = datetime.fromisoformat(record["updated_at"])
        return episode

    def upsert_episode_by_url(
        self,
        source_url: str,
        audio_url: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Episode:
        """
        Get the episode for a source URL, creating it if needed.

        Later submissions for the same URL reuse the existing record; a new
        title replaces the old one.
        """
        if not source_url:
            raise ValidationError("source_url is required")
        existing = self.get_episode_by_url(source_url)
        if existing:
            if title and title != existing.title:
                existing.title = title
                self.save_episode(existing)
            return existing

        episode = Episode(
            source_url=source_url,
            audio_url=audio_url or source_url,
            title=title or "",
        )
        self.save_episode(episode)
        logger.info(f"Created episode {episode.id[:8]} for {source_url}")
        return episode

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        results = self._select(self.episodes, f"id = {_quote(episode_id)}", limit=1)
        return self._episode_from_row(results[0]) if results else None

    def get_episode_by_url(self, source_url: str) -> Optional[Episode]:
        results = self._select(self.episodes, f"source_url = {_quote(source_url)}", limit=1)
        return self._episode_from_row(results[0]) if results else None

    def list_episodes(self, limit: int = 50, offset: int = 0) -> List[Episode]:
        rows = self._select(self.episodes, limit=limit + offset)
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._episode_from_row(r) for r in rows[offset:offset + limit]]

    def delete_episode(self, episode_id: str) -> None:
        self.episodes.delete(f"id = {_quote(episode_id)}")
        self.delete_chunks(episode_id)

    def merge_episodes(self, source_id: str, target_id: Optional[str]) -> Episode:
        """
        Fold a duplicate episode into a target and delete the duplicate.

        Fields empty on the target are filled from the source, and the
        source's chunks are re-pointed at the target.

        Raises:
            ConsistencyError: If no target is given or either episode is missing
        """
        if not target_id:
            raise ConsistencyError("Merging requires a target episode id")
        if source_id == target_id:
            raise ConsistencyError("Cannot merge an episode into itself")

        source = self.get_episode(source_id)
        target = self.get_episode(target_id)
        if source is None or target is None:
            missing = source_id if source is None else target_id
            raise ConsistencyError(f"Episode not found for merge: {missing}")

        for field in ("title", "transcript", "script", "summary", "duration_seconds"):
            if not getattr(target, field) and getattr(source, field):
                setattr(target, field, getattr(source, field))
        if not target.segments and source.segments:
            target.segments = source.segments

        self.save_episode(target)
        if self.count_chunks(target_id) == 0:
            self.chunks.update(
                where=f"episode_id = {_quote(source_id)}",
                values={"episode_id": target_id},
            )
        self.delete_episode(source_id)

        logger.info(f"Merged episode {source_id[:8]} into {target_id[:8]}")
        return target

    # --- Chunk Operations ---

    def replace_chunks(self, episode_id: str, chunks: List[TranscriptChunk]) -> int:
        """Supersede every chunk of an episode with a new set."""
        for chunk in chunks:
            if chunk.episode_id != episode_id:
                raise ConsistencyError(
                    f"Chunk {chunk.chunk_id} belongs to {chunk.episode_id}, not {episode_id}"
                )
            if len(chunk.vector) != self.embedding_dimensions:
                raise ValidationError(
                    f"Chunk {chunk.chunk_id} has {len(chunk.vector)} dims, "
                    f"expected {self.embedding_dimensions}"
                )

        self.delete_chunks(episode_id)
        if chunks:
            self.chunks.add([c.model_dump() for c in sorted(chunks, key=lambda c: c.start_sec)])
        logger.info(f"Stored {len(chunks)} chunks for episode {episode_id[:8]}")
        return len(chunks)

    def delete_chunks(self, episode_id: str) -> None:
        if self.has_table(self.CHUNKS):
            self.chunks.delete(f"episode_id = {_quote(episode_id)}")

    def count_chunks(self, episode_id: Optional[str] = None) -> int:
        if not self.has_table(self.CHUNKS):
            return 0
        if episode_id:
            return self.chunks.count_rows(f"episode_id = {_quote(episode_id)}")
        return self.chunks.count_rows()

    def list_chunks(self, episode_id: str) -> List[TranscriptChunk]:
        rows = self._select(self.chunks, f"episode_id = {_quote(episode_id)}")
        chunks = [
            TranscriptChunk(
                chunk_id=r["chunk_id"],
                episode_id=r["episode_id"],
                start_sec=r["start_sec"],
                end_sec=r["end_sec"],
                text=r["text"],
                vector=list(r["vector"]),
            )
            for r in rows
        ]
        return sorted(chunks, key=lambda c: c.start_sec)

    def search_chunks(
        self,
        vector: List[float],
        episode_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[ScoredChunk]:
        """Nearest chunks to a vector, ascending distance."""
        if not self.has_table(self.CHUNKS) or self.count_chunks() == 0:
            return []

        query = self.chunks.search(vector).limit(limit)
        if episode_id:
            query = query.where(f"episode_id = {_quote(episode_id)}")
        rows = query.to_list()

        results = [
            ScoredChunk(
                chunk_id=r["chunk_id"],
                episode_id=r["episode_id"],
                start_sec=r["start_sec"],
                end_sec=r["end_sec"],
                text=r["text"],
                distance=float(r.get("_distance", 0.0)),
            )
            for r in rows
        ]
        return sorted(results, key=lambda r: r.distance)

    def has_vector_index(self) -> bool:
        if not self.has_table(self.CHUNKS):
            return False
        return any("vector" in (idx.columns or []) for idx in self.chunks.list_indices())

    def create_vector_index(self) -> None:
        rows = self.count_chunks()
        self.chunks.create_index(
            vector_column_name="vector",
            num_partitions=max(1, min(256, rows // 64)),
            num_sub_vectors=max(1, self.embedding_dimensions // 16),
        )
        logger.info(f"Created vector index over {rows} chunks")

    # --- Cache Entries ---

    def cache_get(self, key: str) -> Optional[Any]:
        """Return a cached value, deleting it if it has expired."""
        results = self._select(self.cache_entries, f"key = {_quote(key)}", limit=1)
        if not results:
            return None
        row = results[0]
        if row["expires_at"] <= time.time():
            self.cache_delete(key)
            return None
        return json.loads(row["value_json"])

    def cache_set(self, key: str, value: Any, ttl: float) -> None:
        self.cache_delete(key)
        self.cache_entries.add([
            CacheEntryTable(
                key=key,
                value_json=json.dumps(value, ensure_ascii=False, default=str),
                expires_at=time.time() + ttl,
                updated_at=utcnow().isoformat(),
            ).model_dump()
        ])

    def cache_delete(self, key: str) -> None:
        self.cache_entries.delete(f"key = {_quote(key)}")

    def cache_clear(self) -> None:
        self.cache_entries.delete("key IS NOT NULL")

    def cache_purge_expired(self) -> None:
        self.cache_entries.delete(f"expires_at <= {time.time()}")

    # --- Access Logs ---

    def log_access(self, event: str, episode_id: str = "", detail: Dict[str, Any] = None) -> None:
        self.access_logs.add([
            AccessLogTable(
                id=str(uuid4()),
                event=event,
                episode_id=episode_id or "",
                detail_json=json.dumps(detail or {}, ensure_ascii=False, default=str),
                created_at=utcnow().isoformat(),
            ).model_dump()
        ])

    def list_access_logs(self, event: Optional[str] = None) -> List[dict]:
        where = f"event = {_quote(event)}" if event else None
        rows = self._select(self.access_logs, where)
        return sorted(rows, key=lambda r: r["created_at"])
