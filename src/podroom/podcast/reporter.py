"""
Episode Report Module

LLM-based summary, key point and keyword extraction over the cleaned
script.
"""

import json
import logging
from typing import List

from ..errors import UpstreamError
from ..llm import LLMClient
from ..models import Report

logger = logging.getLogger(__name__)


SUMMARY_PROMPT = """Write a concise summary (3-5 sentences) of this podcast transcript.
Cover: the main topic discussed, who the guests are, and the key conclusions or insights.
Write in third person, in the language of the transcript. Do NOT start with "In this episode".

Return ONLY the summary text, no headers or labels.

Transcript:
{transcript}"""

KEY_POINTS_PROMPT = """Extract 5-10 key takeaways from this podcast transcript.
Each point should be a specific, concrete insight - not a vague topic reference.

Return ONLY a JSON array of strings, nothing else.

Transcript:
{transcript}"""

KEYWORD_PROMPT = """Extract 5-10 keywords from this podcast transcript.
Focus on: main topics discussed, key concepts, notable people or organizations mentioned.
Return ONLY a JSON array of strings, nothing else.

Transcript:
{transcript}"""

_SUMMARY_PREAMBLES = ["Here is the summary:", "Here's the summary:", "Summary:"]


def sample_text(text: str, limit: int = 12000, edge: int = 5000) -> str:
    """Long texts are represented by their beginning and end."""
    if len(text) <= limit:
        return text
    return text[:edge] + "\n\n[...]\n\n" + text[-edge:]


def parse_json_list(reply: str) -> List[str]:
    """Pull the first JSON array of strings out of a model reply."""
    reply = reply.strip()
    start = reply.find("[")
    end = reply.rfind("]") + 1
    if start != -1 and end > start:
        reply = reply[start:end]
    items = json.loads(reply)
    if not isinstance(items, list):
        raise ValueError("Expected a JSON array")
    return [str(item).strip() for item in items if str(item).strip()]


class ReportGenerator:
    """Builds the structured report for an episode."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def summarize(self, script: str) -> str:
        """
        Raises:
            UpstreamError: If the model fails or returns nothing usable
        """
        summary = (await self.llm.generate(SUMMARY_PROMPT.format(transcript=sample_text(script)))).strip()
        for preamble in _SUMMARY_PREAMBLES:
            if summary.lower().startswith(preamble.lower()):
                summary = summary[len(preamble):].strip()
                break
        if len(summary) < 20:
            raise UpstreamError(f"Summary too short ({len(summary)} chars)")
        return summary

    async def _extract_list(self, prompt: str, script: str, label: str, limit: int) -> List[str]:
        try:
            reply = await self.llm.generate(prompt.format(transcript=sample_text(script)))
            items = parse_json_list(reply)[:limit]
            logger.info(f"Extracted {len(items)} {label}")
            return items
        except (UpstreamError, ValueError) as e:
            logger.warning(f"{label.capitalize()} extraction failed: {e}")
            return []

    async def generate(self, script: str) -> Report:
        """Summary is required; key points and keywords degrade to empty lists."""
        logger.info("Generating episode report")
        summary = await self.summarize(script)
        key_points = await self._extract_list(KEY_POINTS_PROMPT, script, "key points", 10)
        keywords = await self._extract_list(KEYWORD_PROMPT, script, "keywords", 10)
        return Report(
            summary=summary,
            key_points=key_points,
            keywords=[k.lower() for k in keywords],
        )
