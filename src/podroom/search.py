"""
Podroom Search & Question Answering
Chunk indexing, vector search with optional reranking, and grounded QA.
"""

import logging
from typing import Dict, List, Optional

from .chunker import format_time_range, time_aligned_chunks
from .config import Settings, settings
from .db import Database
from .embeddings import Embedder
from .errors import ValidationError
from .events import EventEmitter
from .llm import LLMClient
from .models import Answer, Citation, Episode, ScoredChunk, TranscriptChunk

logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = "Not mentioned in the transcripts."

QA_SYSTEM = """You answer questions about podcast episodes using only the transcript
excerpts provided. Each excerpt is headed by 【episode title MM:SS-MM:SS】.
If the excerpts do not contain the answer, reply exactly: "{not_found}"
Cite the excerpt time ranges you relied on. Answer in the language of the question."""

QA_PROMPT = """Transcript excerpts:

{context}

Question: {question}"""

# Lazy-loaded reranker
_reranker = None


def get_reranker(model_name: str = None):
    """Get or load the reranker model (cached)."""
    global _reranker
    if _reranker is None:
        from sentence_transformers import CrossEncoder

        model_name = model_name or settings.reranker_model
        logger.info(f"Loading reranker: {model_name}")
        _reranker = CrossEncoder(model_name)
    return _reranker


def rerank_results(question: str, results: List[ScoredChunk], top_k: int) -> List[ScoredChunk]:
    """Reorder retrieved chunks with a cross-encoder, best first."""
    if not results:
        return []
    reranker = get_reranker()
    scores = reranker.predict([(question, r.text) for r in results])
    scored = sorted(zip(results, scores), key=lambda x: x[1], reverse=True)
    return [r for r, _ in scored[:top_k]]


def format_context(chunks: List[ScoredChunk]) -> str:
    blocks = []
    for chunk in chunks:
        title = chunk.episode_title or chunk.episode_id
        blocks.append(f"【{title} {format_time_range(chunk.start_sec, chunk.end_sec)}】\n{chunk.text}")
    return "\n\n".join(blocks)


class VectorIndex:
    """Episode chunk index plus question answering over it."""

    def __init__(
        self,
        database: Database,
        embedder: Embedder,
        llm: LLMClient,
        events: Optional[EventEmitter] = None,
        config: Settings = None,
    ):
        self.db = database
        self.embedder = embedder
        self.llm = llm
        self.events = events or EventEmitter()
        self.config = config or settings

    def ensure_index_setup(self) -> bool:
        """
        Make sure the chunk table and its ANN index exist.

        Safe to call repeatedly. The ANN index is only built once the table
        holds enough rows to train it; until then search is exhaustive.

        Returns:
            True if an ANN index exists after the call
        """
        _ = self.db.chunks  # creates the table if absent
        if self.db.has_vector_index():
            return True
        if self.db.count_chunks() < self.config.vector_index_min_rows:
            return False
        self.db.create_vector_index()
        return True

    async def index_episode(self, episode: Episode) -> List[TranscriptChunk]:
        """Re-chunk the cleaned script, embed it and replace the episode's chunks."""
        if not episode.script:
            raise ValidationError(f"Episode {episode.id} has no script to index")

        windows = time_aligned_chunks(
            episode.script,
            episode.duration_seconds or 0.0,
            chunk_size=self.config.index_chunk_size,
            chunk_overlap=self.config.index_chunk_overlap,
        )
        vectors = await self.embedder.embed([text for _, _, text in windows])
        chunks = [
            TranscriptChunk(
                chunk_id=f"{episode.id}_chunk_{i}",
                episode_id=episode.id,
                start_sec=start,
                end_sec=end,
                text=text,
                vector=vector,
            )
            for i, ((start, end, text), vector) in enumerate(zip(windows, vectors))
        ]
        self.db.replace_chunks(episode.id, chunks)
        self.ensure_index_setup()
        return chunks

    def search(
        self,
        episode_id: Optional[str],
        query_vector: List[float],
        limit: int = None,
    ) -> List[ScoredChunk]:
        """
        Nearest chunks to a query vector.

        Args:
            episode_id: Restrict to one episode, or None for all episodes
            query_vector: Embedding of the query
            limit: Maximum number of chunks

        Returns:
            Chunks ordered by ascending distance, with episode titles filled in
        """
        limit = limit or self.config.qa_default_limit
        results = self.db.search_chunks(query_vector, episode_id=episode_id, limit=limit)

        titles: Dict[str, str] = {}
        for result in results:
            if result.episode_id not in titles:
                episode = self.db.get_episode(result.episode_id)
                titles[result.episode_id] = episode.title if episode else ""
            result.episode_title = titles[result.episode_id]
        return results

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.qa_default_limit
        return max(1, min(int(limit), self.config.qa_max_limit))

    async def answer(
        self,
        question: str,
        limit: Optional[int] = None,
        episode_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Answer:
        """
        Answer a question from the indexed transcripts.

        With no retrieved chunks the fixed not-found answer is returned
        without calling the model.

        Raises:
            ValidationError: If the question is empty
            UpstreamError: If embedding or generation fails
        """
        question = (question or "").strip()
        if not question:
            raise ValidationError("Question must not be empty")
        limit = self._clamp_limit(limit)

        self.ensure_index_setup()
        query_vector = await self.embedder.embed_one(question)
        candidates = self.search(
            episode_id,
            query_vector,
            limit=limit * 3 if self.config.qa_rerank else limit,
        )
        if not candidates:
            logger.info("QA retrieved no chunks, returning not-found answer")
            return Answer(answer=NOT_FOUND_ANSWER, citations=[])

        chunks = rerank_results(question, candidates, limit) if self.config.qa_rerank else candidates[:limit]

        reply = await self.llm.generate(
            QA_PROMPT.format(context=format_context(chunks), question=question),
            system=QA_SYSTEM.format(not_found=NOT_FOUND_ANSWER),
        )
        citations = [
            Citation(
                episode_id=c.episode_id,
                episode_title=c.episode_title,
                start=c.start_sec,
                end=c.end_sec,
                time_range=format_time_range(c.start_sec, c.end_sec),
                chunk_id=c.chunk_id,
                distance=c.distance,
            )
            for c in chunks
        ]

        self.events.emit_background(
            "qa.answered",
            {
                "question": question,
                "user_id": user_id,
                "episode_ids": sorted({c.episode_id for c in citations}),
            },
        )
        return Answer(answer=reply, citations=citations)
