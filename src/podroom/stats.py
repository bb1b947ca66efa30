"""
Usage statistics collector.

An explicit, scoped collector handed to clients, strategies, the pipeline
and the queue. Create one per service (or per test) instead of sharing
module-level counters.
"""

import threading
from dataclasses import dataclass, field, fields
from typing import Any, Dict


@dataclass
class UsageStats:
    """Counters for external calls, cache traffic and task outcomes."""

    llm_calls: int = 0
    llm_failures: int = 0
    llm_prompt_chars: int = 0
    llm_output_chars: int = 0
    asr_calls: int = 0
    asr_failures: int = 0
    embedding_calls: int = 0
    embedded_texts: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    stage_seconds: Dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def record_llm(self, prompt: str, output: str) -> None:
        with self._lock:
            self.llm_calls += 1
            self.llm_prompt_chars += len(prompt)
            self.llm_output_chars += len(output)

    def record_stage(self, stage: str, seconds: float) -> None:
        with self._lock:
            self.stage_seconds[stage] = self.stage_seconds.get(stage, 0.0) + seconds

    def snapshot(self) -> Dict[str, Any]:
        """Copy of all counters, safe to serialize."""
        with self._lock:
            data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "_lock"}
            data["stage_seconds"] = dict(self.stage_seconds)
        return data
