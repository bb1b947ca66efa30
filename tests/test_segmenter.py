"""
Podroom Tests - Audio Segmentation
"""

import pytest

from podroom.config import Settings
from podroom.errors import ValidationError
from podroom.podcast.segmenter import clamp_segment_duration, estimate_segment_bytes, segment


class TestSegment:
    def test_remainder_goes_to_last_segment(self):
        segments = segment(400, 170)

        assert [(s.start, s.end) for s in segments] == [(0, 170), (170, 340), (340, 400)]
        assert [s.index for s in segments] == [0, 1, 2]
        assert segments[-1].duration == 60

    def test_durations_sum_to_total(self):
        segments = segment(2640, 170)

        assert len(segments) == 16
        assert sum(s.duration for s in segments) == pytest.approx(2640)
        assert segments[-1].end == 2640

    def test_exact_multiple(self):
        segments = segment(340, 170)

        assert len(segments) == 2
        assert segments[-1].end == 340

    def test_contiguous(self):
        segments = segment(1000, 60)

        for previous, current in zip(segments, segments[1:]):
            assert current.start == previous.end

    def test_short_audio_single_segment(self):
        segments = segment(100, 170)

        assert len(segments) == 1
        assert segments[0].start == 0
        assert segments[0].end == 100

    def test_zero_duration(self):
        assert segment(0) == []

    def test_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            segment(-5)

    def test_requested_length_is_clamped(self):
        """A 5s request is raised to the 10s minimum."""
        segments = segment(30, 5)

        assert len(segments) == 3
        assert all(s.duration == 10 for s in segments)

    def test_segments_are_asr_compatible(self):
        segments = segment(600, 170)

        assert all(s.compatible for s in segments)
        assert all(s.estimated_size_bytes > 0 for s in segments)


class TestClampSegmentDuration:
    def test_default_when_missing(self):
        assert clamp_segment_duration(None) == 170
        assert clamp_segment_duration(0) == 170

    def test_bounds(self):
        assert clamp_segment_duration(5) == 10
        assert clamp_segment_duration(500) == 180
        assert clamp_segment_duration(120) == 120


class TestEstimateSegmentBytes:
    def test_bitrate(self):
        # 10s at 128 kbps
        assert estimate_segment_bytes(10, 128) == 160_000


class TestGivenSettings:
    def test_limits_come_from_given_settings(self):
        config = Settings(asr_min_segment_seconds=10, asr_max_segment_seconds=60, asr_bitrate_kbps=64)

        segments = segment(150, 170, config)

        assert [(s.start, s.end) for s in segments] == [(0, 60), (60, 120), (120, 150)]
        assert segments[0].estimated_size_bytes == estimate_segment_bytes(60, 64)
        assert clamp_segment_duration(5, config) == 10
