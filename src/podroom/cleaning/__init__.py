"""
Transcript Cleaning

Five interchangeable strategies and the rule table that picks one.
"""

from .base import CleaningContext, CleaningStrategy, check_quality
from .selector import SELECTION_RULES, SelectionRule, StrategySelector
from .strategies import (
    ChunkedStrategy,
    IntegrityStrategy,
    SmartStrategy,
    SpeakerMemoryStrategy,
    WholeStrategy,
)

__all__ = [
    "CleaningContext",
    "CleaningStrategy",
    "check_quality",
    "SELECTION_RULES",
    "SelectionRule",
    "StrategySelector",
    "ChunkedStrategy",
    "IntegrityStrategy",
    "SmartStrategy",
    "SpeakerMemoryStrategy",
    "WholeStrategy",
]
