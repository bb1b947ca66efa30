"""
Cleaning strategy contract and shared helpers.
"""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..chunker import estimate_tokens
from ..config import Settings, settings
from ..llm import LLMClient
from ..models import CleaningResult
from ..podcast.models import TranscriptPiece

logger = logging.getLogger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?。！？]+")

# Replies that mean the model chatted instead of returning the transcript
CHATTY_PATTERNS = [
    "I'll need to see",
    "Please provide",
    "I don't see",
    "I can help you",
    "provide the entire",
    "I'd be happy to",
    "Here is the cleaned",
    "Here's the cleaned",
    "I've cleaned",
    "As an AI",
]


@dataclass
class CleaningContext:
    """Input to the selector and the strategies."""

    text: str
    segments: List[TranscriptPiece] = field(default_factory=list)
    force: Optional[str] = None
    correctness_critical: bool = False

    @property
    def input_tokens(self) -> int:
        return estimate_tokens(self.text)


@dataclass
class QualityCheck:
    score: float
    issues: List[str]

    @property
    def valid(self) -> bool:
        return not self.issues


def count_sentences(text: str) -> int:
    return len([s for s in _SENTENCE_END_RE.split(text) if s.strip()])


def check_quality(original: str, cleaned: str, config: Settings = None) -> QualityCheck:
    """
    Compare a cleaned text against its input.

    Flags over-compression, a collapse in sentence count, suspiciously
    short output and conversational replies.
    """
    config = config or settings
    issues = []
    if not cleaned.strip():
        return QualityCheck(score=0.0, issues=["Empty output"])

    ratio = len(cleaned) / max(len(original), 1)
    if ratio < config.cleaning_min_compression:
        issues.append(f"Output is {ratio:.0%} of input, below {config.cleaning_min_compression:.0%}")

    if len(original) >= 1000 and len(cleaned) < 1000:
        issues.append(f"Output is only {len(cleaned)} characters")

    in_sentences = count_sentences(original)
    if in_sentences:
        sentence_ratio = count_sentences(cleaned) / in_sentences
        if sentence_ratio < config.cleaning_min_sentence_ratio:
            issues.append(f"Sentence count dropped to {sentence_ratio:.0%} of input")

    lowered = cleaned[:300].lower()
    if any(p.lower() in lowered for p in CHATTY_PATTERNS):
        issues.append("Model replied conversationally instead of returning the transcript")

    return QualityCheck(score=max(0.0, 1.0 - 0.3 * len(issues)), issues=issues)


def estimate_cost(tokens: int, config: Settings = None) -> float:
    config = config or settings
    return round(tokens / 1000 * config.llm_cost_per_1k_tokens, 6)


class CleaningStrategy(ABC):
    """One way of turning raw transcript text into a cleaned script."""

    name: str = "base"

    def __init__(self, llm: LLMClient, config: Settings = None):
        self.llm = llm
        self.config = config or settings

    @abstractmethod
    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        """Clean context.text. Subclasses fill method-specific metadata."""

    async def clean(self, context: CleaningContext, reason: str) -> CleaningResult:
        """Run the strategy and stamp timing and cost onto the result."""
        started = time.monotonic()
        result = await self.run(context, reason)
        result.processing_time = round(time.monotonic() - started, 3)
        tokens = estimate_tokens(context.text) + estimate_tokens(result.script)
        result.estimated_tokens = tokens
        result.cost_estimate = estimate_cost(tokens, self.config)
        logger.info(
            f"Cleaning '{result.method}' finished in {result.processing_time:.1f}s "
            f"({result.windows} windows, {len(result.issues)} issues)"
        )
        return result

    async def map_windows(
        self,
        windows: List[str],
        build_prompt,
        system: str,
    ) -> List[Tuple[str, Optional[str], float]]:
        """
        Clean windows concurrently, keeping order.

        A window that errors or fails the quality check keeps its original
        text. Returns (text, issue or None, score) per window.
        """
        semaphore = asyncio.Semaphore(max(1, self.config.cleaning_max_concurrent))
        total = len(windows)

        async def clean_one(index: int, window: str):
            async with semaphore:
                try:
                    output = await self.llm.generate(
                        build_prompt(window, index + 1, total),
                        system=system,
                        max_tokens=self.config.cleaning_max_output_tokens,
                    )
                except Exception as e:
                    logger.warning(f"Window {index + 1}/{total} failed: {e}")
                    return window, f"Window {index + 1} failed, original text kept: {e}", 0.0
                check = check_quality(window, output, self.config)
                if not check.valid:
                    issue = f"Window {index + 1} rejected, original text kept: {'; '.join(check.issues)}"
                    return window, issue, 0.5
                return output, None, 1.0

        return list(await asyncio.gather(*(clean_one(i, w) for i, w in enumerate(windows))))
