"""
Podroom Chunking Module
Recursive character-based text splitting, cleaning windows and
time-aligned index chunks.
"""

import re
from typing import List, Optional, Tuple

from .config import settings

# Latin separators first, then CJK sentence punctuation
DEFAULT_SEPARATORS = ["\n\n", "\n", "。", "！", "？", ". ", "? ", "! ", " ", ""]

_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]")


def recursive_split(
    text: str,
    chunk_size: int = None,
    chunk_overlap: int = None,
    separators: List[str] = None,
) -> List[str]:
    """
    Recursively split text using multiple separators.

    Tries to split on larger semantic boundaries first (paragraphs),
    then falls back to smaller ones (sentences, words, characters).
    """
    chunk_size = chunk_size or settings.index_chunk_size
    chunk_overlap = settings.index_chunk_overlap if chunk_overlap is None else chunk_overlap
    separators = separators or DEFAULT_SEPARATORS

    if not text:
        return []

    if len(text) <= chunk_size:
        return [text]

    chunks = []
    current_separator = separators[0]
    remaining_separators = separators[1:]

    parts = text.split(current_separator) if current_separator else list(text)

    current_chunk = ""
    for part in parts:
        part_with_sep = part + current_separator if current_separator else part

        if len(current_chunk) + len(part_with_sep) > chunk_size:
            if current_chunk.strip():
                chunks.append(current_chunk.strip())

            if len(part_with_sep) > chunk_size and remaining_separators:
                sub_chunks = recursive_split(
                    part,
                    chunk_size=chunk_size,
                    chunk_overlap=0,  # No overlap in recursion
                    separators=remaining_separators,
                )
                chunks.extend(sub_chunks)
                current_chunk = ""
            else:
                current_chunk = part_with_sep
        else:
            current_chunk += part_with_sep

    if current_chunk.strip():
        chunks.append(current_chunk.strip())

    if chunk_overlap > 0 and len(chunks) > 1:
        overlapped = []
        for i, chunk in enumerate(chunks):
            if i == 0:
                overlapped.append(chunk)
            else:
                prev_chunk = chunks[i - 1]
                overlap_text = prev_chunk[-chunk_overlap:] if len(prev_chunk) > chunk_overlap else prev_chunk
                overlapped.append(overlap_text + " " + chunk)
        chunks = overlapped

    return chunks


def estimate_tokens(text: str) -> int:
    """
    Rough token estimate.

    CJK characters are counted at about 1.5 characters per token,
    everything else at 4 characters per token.
    """
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return int(cjk / 1.5 + other / 4)


def paragraph_windows(
    text: str,
    window_size: int = None,
    overlap: int = None,
) -> List[str]:
    """
    Split text into cleaning windows on paragraph boundaries.

    Each window after the first starts with the last `overlap` characters
    of the previous window so the model sees some context. Paragraphs
    longer than a window are split further with recursive_split.
    """
    window_size = window_size or settings.cleaning_chunk_size
    overlap = settings.cleaning_chunk_overlap if overlap is None else overlap

    if not text or not text.strip():
        return []
    if len(text) <= window_size:
        return [text]

    paragraphs: List[str] = []
    for paragraph in text.split("\n\n"):
        if not paragraph.strip():
            continue
        if len(paragraph) > window_size:
            paragraphs.extend(recursive_split(paragraph, chunk_size=window_size, chunk_overlap=0))
        else:
            paragraphs.append(paragraph)

    windows: List[str] = []
    current = ""
    for paragraph in paragraphs:
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > window_size and current:
            windows.append(current)
            tail = current[-overlap:] if overlap > 0 else ""
            current = f"{tail}\n\n{paragraph}" if tail else paragraph
        else:
            current = candidate
    if current.strip():
        windows.append(current)

    return windows


def count_windows(text: str, window_size: int = None, overlap: int = None) -> int:
    """Approximate number of windows paragraph_windows would produce, without building them."""
    window_size = window_size or settings.cleaning_chunk_size
    overlap = settings.cleaning_chunk_overlap if overlap is None else overlap
    if not text:
        return 0
    overlap = min(overlap, window_size // 2)
    step = max(window_size - overlap, 1)
    if len(text) <= window_size:
        return 1
    return 1 + -(-(len(text) - window_size) // step)


def stitch_windows(windows: List[str], overlap: int = None) -> str:
    """
    Join cleaned windows in order.

    When the start of a window repeats the tail of what has been stitched
    so far, the repeated part is dropped. Duplicate paragraphs (compared
    case-insensitively) are removed afterwards.
    """
    overlap = settings.cleaning_chunk_overlap if overlap is None else overlap
    if not windows:
        return ""
    if len(windows) == 1:
        return windows[0]

    merged = windows[0]
    for window in windows[1:]:
        tail = merged[-overlap:] if overlap > 0 else ""
        head = window[:overlap] if overlap > 0 else ""
        if tail and head and (head in tail or tail in head):
            merged += window[overlap:]
        else:
            merged += "\n\n" + window

    seen = set()
    unique = []
    for paragraph in merged.split("\n\n"):
        if not paragraph.strip():
            continue
        key = paragraph.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(paragraph)

    return "\n\n".join(unique)


def time_aligned_chunks(
    text: str,
    duration: float,
    chunk_size: int = None,
    chunk_overlap: int = None,
) -> List[Tuple[float, float, str]]:
    """
    Split a script into index chunks with approximate time ranges.

    The cleaned script no longer carries timestamps, so each chunk's time
    range is derived from its character offset relative to the whole
    script, scaled to the audio duration.

    Returns:
        List of (start_sec, end_sec, text), ordered by start_sec
    """
    pieces = recursive_split(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    if not pieces:
        return []

    total = max(len(text), 1)
    duration = max(duration or 0.0, 0.0)
    result = []
    cursor = 0
    for piece in pieces:
        start_char = _locate(text, piece, cursor)
        end_char = min(start_char + len(piece), total)
        cursor = max(cursor, start_char)
        start_sec = round(duration * start_char / total, 2)
        end_sec = round(duration * end_char / total, 2)
        result.append((start_sec, max(end_sec, start_sec), piece))

    result.sort(key=lambda item: item[0])
    return result


def _locate(text: str, piece: str, cursor: int) -> int:
    # Overlapped pieces may not match at the seam, so fall back to the tail.
    head = text.find(piece[:50], cursor)
    if head != -1:
        return head
    tail_probe = piece[-50:]
    tail = text.find(tail_probe, cursor)
    if tail != -1:
        return max(tail + len(tail_probe) - len(piece), cursor)
    return cursor


def format_timestamp(seconds: Optional[float]) -> str:
    """Format seconds as MM:SS (minutes may exceed 59)."""
    seconds = max(int(seconds or 0), 0)
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def format_time_range(start: float, end: float) -> str:
    return f"{format_timestamp(start)}-{format_timestamp(end)}"
