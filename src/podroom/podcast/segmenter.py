"""
Audio Segmentation Module

Computes the fixed-duration time ranges an episode is split into for
transcription. No audio is decoded here; the ASR service receives the
source URL plus a start offset and duration per segment.
"""

import logging
import math
from typing import List, Optional

from ..config import Settings, settings
from ..errors import ValidationError
from .models import SegmentDescriptor

logger = logging.getLogger(__name__)


def clamp_segment_duration(max_segment_duration: Optional[float], config: Settings = None) -> float:
    """Clamp a requested segment length into the ASR-supported range."""
    config = config or settings
    if max_segment_duration is None or max_segment_duration <= 0:
        max_segment_duration = config.asr_default_segment_seconds
    return min(
        max(float(max_segment_duration), config.asr_min_segment_seconds),
        config.asr_max_segment_seconds,
    )


def estimate_segment_bytes(duration: float, bitrate_kbps: int = None) -> int:
    """Estimated encoded size of a segment at the configured bitrate."""
    bitrate_kbps = bitrate_kbps or settings.asr_bitrate_kbps
    return int(duration * bitrate_kbps * 1000 / 8)


def segment(
    total_duration: float,
    max_segment_duration: Optional[float] = None,
    config: Settings = None,
) -> List[SegmentDescriptor]:
    """
    Split [0, total_duration) into contiguous segments.

    Every segment is max_segment_duration long except the last, which
    absorbs the remainder. Durations sum to total_duration.

    Args:
        total_duration: Episode length in seconds
        max_segment_duration: Requested segment length, clamped to the
            configured ASR limits (default 170s)
        config: Settings supplying the limits and bitrate; the global
            settings when omitted

    Returns:
        Ordered list of SegmentDescriptor

    Raises:
        ValidationError: If total_duration is negative
    """
    if total_duration is None or total_duration < 0:
        raise ValidationError(f"Invalid audio duration: {total_duration}")
    if total_duration == 0:
        return []

    config = config or settings
    step = clamp_segment_duration(max_segment_duration, config)
    num_segments = math.ceil(total_duration / step)

    segments = []
    for i in range(num_segments):
        start = i * step
        end = total_duration if i == num_segments - 1 else min((i + 1) * step, total_duration)
        duration = end - start
        size = estimate_segment_bytes(duration, config.asr_bitrate_kbps)
        segments.append(
            SegmentDescriptor(
                index=i,
                start=start,
                end=end,
                duration=duration,
                estimated_size_bytes=size,
                compatible=(
                    duration <= config.asr_max_segment_seconds
                    and size <= config.asr_max_segment_bytes
                ),
            )
        )

    logger.info(
        f"Segmented {total_duration:.1f}s audio into {len(segments)} segments of up to {step:.0f}s"
    )
    return segments
