"""
Cleaning Strategy Selector

Strategy choice is a table of rules evaluated in priority order. Each
rule names a strategy, a predicate over the input and a reason builder.
New strategies are added with register(); existing rules stay untouched.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..chunker import count_windows
from ..config import Settings, settings
from ..errors import CapacityError, ValidationError
from ..llm import LLMClient
from ..models import CleaningResult
from .base import CleaningContext, CleaningStrategy
from .strategies import (
    ChunkedStrategy,
    IntegrityStrategy,
    SmartStrategy,
    SpeakerMemoryStrategy,
    WholeStrategy,
)

logger = logging.getLogger(__name__)


@dataclass
class SelectionRule:
    """Pick `strategy` when `predicate` holds; `reason` explains the choice."""

    strategy: str
    predicate: Callable[[CleaningContext, Settings], bool]
    reason: Callable[[CleaningContext, Settings], str]


def _expected_output(context: CleaningContext, config: Settings) -> int:
    return int(context.input_tokens * config.cleaning_expected_output_ratio)


def _whole_budget(config: Settings) -> int:
    return int(config.cleaning_max_output_tokens * config.cleaning_output_safety_margin)


SELECTION_RULES: List[SelectionRule] = [
    SelectionRule(
        strategy="integrity",
        predicate=lambda ctx, cfg: ctx.correctness_critical,
        reason=lambda ctx, cfg: "Correctness-critical input, tracking every factual statement",
    ),
    SelectionRule(
        strategy="whole",
        predicate=lambda ctx, cfg: _expected_output(ctx, cfg) <= _whole_budget(cfg),
        reason=lambda ctx, cfg: (
            f"Expected output ~{_expected_output(ctx, cfg)} tokens fits the single-call "
            f"budget of {_whole_budget(cfg)}"
        ),
    ),
    SelectionRule(
        strategy="smart",
        predicate=lambda ctx, cfg: ctx.input_tokens <= cfg.cleaning_max_input_tokens,
        reason=lambda ctx, cfg: (
            f"Input ~{ctx.input_tokens} tokens fits one call but expected output "
            f"~{_expected_output(ctx, cfg)} tokens is near the limit; trying whole first"
        ),
    ),
    SelectionRule(
        strategy="speaker_memory",
        predicate=lambda ctx, cfg: len(ctx.segments) >= cfg.speaker_min_segments,
        reason=lambda ctx, cfg: (
            f"Long transcript (~{ctx.input_tokens} tokens) with {len(ctx.segments)} ASR "
            f"boundaries, cleaning per boundary window with speaker memory"
        ),
    ),
    SelectionRule(
        strategy="chunked",
        predicate=lambda ctx, cfg: True,
        reason=lambda ctx, cfg: (
            f"Input ~{ctx.input_tokens} tokens exceeds the {cfg.cleaning_max_input_tokens}-token "
            f"single-call ceiling, cleaning in windows"
        ),
    ),
]


class StrategySelector:
    """Chooses and runs a cleaning strategy."""

    def __init__(
        self,
        llm: LLMClient,
        config: Settings = None,
        rules: Optional[List[SelectionRule]] = None,
    ):
        self.config = config or settings
        self.rules = list(rules if rules is not None else SELECTION_RULES)
        self.strategies: Dict[str, CleaningStrategy] = {}
        for strategy_cls in (
            WholeStrategy,
            ChunkedStrategy,
            SmartStrategy,
            IntegrityStrategy,
            SpeakerMemoryStrategy,
        ):
            self.strategies[strategy_cls.name] = strategy_cls(llm, self.config)

    def register(
        self,
        strategy: CleaningStrategy,
        rule: Optional[SelectionRule] = None,
        priority: Optional[int] = None,
    ) -> None:
        """Add a strategy, optionally with a selection rule at a given priority."""
        self.strategies[strategy.name] = strategy
        if rule is not None:
            position = len(self.rules) - 1 if priority is None else priority
            self.rules.insert(max(position, 0), rule)

    def select(self, context: CleaningContext) -> Tuple[CleaningStrategy, str]:
        """Return the strategy to use and why."""
        if context.force:
            if context.force not in self.strategies:
                raise ValidationError(
                    f"Unknown cleaning strategy '{context.force}'. "
                    f"Available: {', '.join(sorted(self.strategies))}"
                )
            return self.strategies[context.force], f"Forced strategy '{context.force}'"

        for rule in self.rules:
            if rule.strategy in self.strategies and rule.predicate(context, self.config):
                return self.strategies[rule.strategy], rule.reason(context, self.config)

        return self.strategies["chunked"], "No rule matched, cleaning in windows"

    def check_capacity(self, strategy: CleaningStrategy, context: CleaningContext) -> int:
        """
        Number of windows the strategy will need.

        Raises:
            CapacityError: If it exceeds the configured maximum
        """
        if strategy.name == "whole":
            windows = 1
        elif strategy.name == "speaker_memory" and context.segments:
            windows = math.ceil(len(context.segments) / max(1, self.config.speaker_window_segments))
        else:
            windows = count_windows(
                context.text, self.config.cleaning_chunk_size, self.config.cleaning_chunk_overlap
            )

        if windows > self.config.cleaning_max_windows:
            raise CapacityError(
                f"Transcript needs {windows} cleaning windows "
                f"(~{context.input_tokens} tokens); the limit is {self.config.cleaning_max_windows}"
            )
        return windows

    async def clean(self, context: CleaningContext) -> CleaningResult:
        """Select a strategy, check capacity and run it."""
        if not context.text or not context.text.strip():
            raise ValidationError("Cannot clean an empty transcript")

        strategy, reason = self.select(context)
        self.check_capacity(strategy, context)
        logger.info(f"Cleaning with '{strategy.name}': {reason}")
        return await strategy.clean(context, reason)
