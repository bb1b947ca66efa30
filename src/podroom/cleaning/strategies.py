"""
The five cleaning strategies.

whole           one call, lowest latency and cost
chunked         paragraph windows with overlap, stitched and de-duplicated
smart           whole when the output fits, chunked otherwise
integrity       chunked with an integrity prompt and a retention report
speaker_memory  windows aligned to ASR pieces, speaker map carried forward
"""

import json
import logging
import re
from typing import Dict, List, Tuple

from ..chunker import paragraph_windows, stitch_windows
from ..errors import UpstreamError
from ..models import AtRiskStatement, CleaningResult, IntegrityReport
from ..podcast.models import TranscriptPiece
from . import prompts
from .base import CleaningContext, CleaningStrategy, check_quality

logger = logging.getLogger(__name__)


class WholeStrategy(CleaningStrategy):
    name = "whole"

    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        script = await self.llm.generate(
            prompts.WHOLE_PROMPT.format(transcript=context.text),
            system=prompts.CLEANING_SYSTEM,
            max_tokens=self.config.cleaning_max_output_tokens,
        )
        check = check_quality(context.text, script, self.config)
        return CleaningResult(
            method=self.name,
            reason=reason,
            script=script,
            windows=1,
            quality_score=check.score,
            issues=check.issues,
        )


class ChunkedStrategy(CleaningStrategy):
    name = "chunked"
    system_prompt = prompts.CLEANING_SYSTEM

    def windows(self, text: str) -> List[str]:
        return paragraph_windows(
            text,
            window_size=self.config.cleaning_chunk_size,
            overlap=self.config.cleaning_chunk_overlap,
        )

    async def clean_windows(self, text: str) -> Tuple[str, int, float, List[str]]:
        """
        Clean every window and stitch the results.

        Raises:
            UpstreamError: Only when every window failed
        """
        windows = self.windows(text)
        outcomes = await self.map_windows(
            windows,
            lambda window, index, total: prompts.WINDOW_PROMPT.format(
                index=index, total=total, transcript=window
            ),
            system=self.system_prompt,
        )
        if outcomes and all(score == 0.0 for _, _, score in outcomes):
            raise UpstreamError(f"All {len(windows)} cleaning windows failed")

        script = stitch_windows([text for text, _, _ in outcomes], self.config.cleaning_chunk_overlap)
        issues = [issue for _, issue, _ in outcomes if issue]
        score = sum(score for _, _, score in outcomes) / max(len(outcomes), 1)
        return script, len(windows), score, issues

    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        script, windows, score, issues = await self.clean_windows(context.text)
        return CleaningResult(
            method=self.name,
            reason=reason,
            script=script,
            windows=windows,
            quality_score=round(score, 3),
            issues=issues,
        )


class SmartStrategy(CleaningStrategy):
    """Try one pass, degrade to windows when the output would not fit or fails checks."""

    name = "smart"

    def __init__(self, llm, config=None):
        super().__init__(llm, config)
        self.whole = WholeStrategy(llm, self.config)
        self.chunked = ChunkedStrategy(llm, self.config)

    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        expected_output = int(context.input_tokens * self.config.cleaning_expected_output_ratio)
        fallback_reason = None

        if expected_output > self.config.cleaning_max_output_tokens:
            fallback_reason = (
                f"Expected output ~{expected_output} tokens exceeds the "
                f"{self.config.cleaning_max_output_tokens}-token output limit"
            )
        else:
            try:
                result = await self.whole.run(context, reason)
            except UpstreamError as e:
                fallback_reason = f"Single pass failed: {e}"
            else:
                if not result.issues:
                    result.method = self.name
                    return result
                fallback_reason = f"Single pass failed quality check: {'; '.join(result.issues)}"

        logger.info(f"Smart cleaning degrading to chunked: {fallback_reason}")
        script, windows, score, issues = await self.chunked.clean_windows(context.text)
        return CleaningResult(
            method=self.name,
            reason=reason,
            script=script,
            windows=windows,
            quality_score=round(score, 3),
            issues=[fallback_reason] + issues,
            fallback=ChunkedStrategy.name,
        )


# Numbers (with decimals, thousands separators, percent) and capitalized names
_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*%?")
_NAME_RE = re.compile(r"\b[A-Z][a-zA-Z]{2,}\b")
_SENTENCE_RE = re.compile(r"[^.!?。！？\n]+[.!?。！？]?")
_NON_NAMES = {"The", "This", "That", "And", "But", "Yes", "Well", "Speaker", "Host", "Guest", "Okay"}


def extract_facts(text: str) -> List[Tuple[str, List[str]]]:
    """Sentences that carry a number or a proper name, with those terms."""
    facts = []
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0).strip()
        if not sentence:
            continue
        terms = _NUMBER_RE.findall(sentence)
        terms += [n for n in _NAME_RE.findall(sentence) if n not in _NON_NAMES]
        if terms:
            facts.append((sentence, list(dict.fromkeys(terms))))
    return facts


def build_integrity_report(original: str, cleaned: str, target_ratio: float) -> IntegrityReport:
    """Check which factual statements lost a number or a name during cleaning."""
    facts = extract_facts(original)
    lowered = cleaned.lower()
    at_risk = []
    for sentence, terms in facts:
        missing = [t for t in terms if t.lower() not in lowered]
        if missing:
            at_risk.append(AtRiskStatement(statement=sentence, missing_terms=missing))

    actual_ratio = round(len(cleaned) / max(len(original), 1), 3)
    score = 100 if not facts else round(100 * (len(facts) - len(at_risk)) / len(facts))
    if actual_ratio < target_ratio:
        score = min(score, round(100 * actual_ratio / target_ratio))

    summary = (
        f"{len(facts) - len(at_risk)}/{len(facts)} factual statements intact, "
        f"retention {actual_ratio:.0%} (target {target_ratio:.0%})"
    )
    return IntegrityReport(
        target_ratio=target_ratio,
        actual_ratio=actual_ratio,
        score=score,
        facts_checked=len(facts),
        at_risk=at_risk,
        summary=summary,
    )


class IntegrityStrategy(ChunkedStrategy):
    """Windowed cleaning that reports every fact at risk of being dropped."""

    name = "integrity"

    @property
    def system_prompt(self) -> str:
        return prompts.INTEGRITY_SYSTEM.format(target=self.config.integrity_min_retention)

    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        script, windows, score, issues = await self.clean_windows(context.text)
        report = build_integrity_report(context.text, script, self.config.integrity_min_retention)
        if report.actual_ratio < report.target_ratio:
            issues.append(
                f"Retention {report.actual_ratio:.0%} below target {report.target_ratio:.0%}"
            )
        if report.at_risk:
            issues.append(f"{len(report.at_risk)} factual statements at risk")
        return CleaningResult(
            method=self.name,
            reason=reason,
            script=script,
            windows=windows,
            quality_score=round(score, 3),
            issues=issues,
            integrity_report=report,
        )


_SPEAKERS_LINE_RE = re.compile(r"^\s*SPEAKERS:\s*(\{.*\})\s*$", re.MULTILINE)


def parse_speaker_reply(reply: str) -> Tuple[str, Dict[str, str]]:
    """Split a window reply into cleaned text and the reported speaker map."""
    matches = list(_SPEAKERS_LINE_RE.finditer(reply))
    if not matches:
        return reply.strip(), {}
    last = matches[-1]
    try:
        found = json.loads(last.group(1))
    except json.JSONDecodeError:
        found = {}
    if not isinstance(found, dict):
        found = {}
    script = (reply[:last.start()] + reply[last.end():]).strip()
    return script, {str(k): str(v) for k, v in found.items()}


def merge_speaker_map(known: Dict[str, str], found: Dict[str, str]) -> Dict[str, str]:
    """New names are added; names already known keep their first label."""
    merged = dict(known)
    for name, label in found.items():
        merged.setdefault(name, label)
    return merged


def format_pieces(pieces: List[TranscriptPiece]) -> str:
    lines = []
    for piece in pieces:
        prefix = f"[{piece.speaker}] " if piece.speaker else ""
        lines.append(f"{prefix}{piece.text}")
    return "\n".join(lines)


class SpeakerMemoryStrategy(CleaningStrategy):
    """
    Windows follow ASR piece boundaries. The speaker map is an explicit
    accumulator: each window call takes the current map and returns the
    cleaned text plus the updated map.
    """

    name = "speaker_memory"

    def windows(self, context: CleaningContext) -> List[str]:
        if context.segments:
            size = max(1, self.config.speaker_window_segments)
            return [
                format_pieces(context.segments[i:i + size])
                for i in range(0, len(context.segments), size)
            ]
        return paragraph_windows(context.text, window_size=self.config.cleaning_chunk_size, overlap=0)

    async def clean_window(
        self,
        window: str,
        index: int,
        total: int,
        speaker_map: Dict[str, str],
    ) -> Tuple[str, Dict[str, str]]:
        """Clean one window given the speakers known so far."""
        reply = await self.llm.generate(
            prompts.SPEAKER_WINDOW_PROMPT.format(
                index=index,
                total=total,
                speaker_map=json.dumps(speaker_map, ensure_ascii=False),
                transcript=window,
            ),
            system=prompts.CLEANING_SYSTEM,
            max_tokens=self.config.cleaning_max_output_tokens,
        )
        script, found = parse_speaker_reply(reply)
        return script, merge_speaker_map(speaker_map, found)

    async def run(self, context: CleaningContext, reason: str) -> CleaningResult:
        windows = self.windows(context)
        speaker_map: Dict[str, str] = {}
        outputs: List[str] = []
        issues: List[str] = []
        scores: List[float] = []

        for index, window in enumerate(windows, start=1):
            try:
                script, next_map = await self.clean_window(window, index, len(windows), speaker_map)
            except Exception as e:
                logger.warning(f"Speaker window {index}/{len(windows)} failed: {e}")
                outputs.append(window)
                issues.append(f"Window {index} failed, original text kept: {e}")
                scores.append(0.0)
                continue

            check = check_quality(window, script, self.config)
            if check.valid:
                outputs.append(script)
                scores.append(1.0)
            else:
                outputs.append(window)
                issues.append(f"Window {index} rejected, original text kept: {'; '.join(check.issues)}")
                scores.append(0.5)
            speaker_map = next_map

        if windows and all(s == 0.0 for s in scores):
            raise UpstreamError(f"All {len(windows)} speaker windows failed")

        return CleaningResult(
            method=self.name,
            reason=reason,
            script="\n\n".join(o for o in outputs if o.strip()),
            windows=len(windows),
            quality_score=round(sum(scores) / max(len(scores), 1), 3),
            issues=issues,
            speaker_map=speaker_map,
        )
