"""Property-based tests for the resolution ladder and media probing."""

from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings, strategies as st

from streamvault.modules.media.inspector import (
    MediaInspector,
    MissingDimensions,
    UnreadableMedia,
    parse_dimensions,
)
from streamvault.modules.media.models import (
    DEFAULT_LADDER,
    RESOLUTION_DIMENSIONS,
    Resolution,
    filter_ladder,
)


class TestLadderFilter:
    """No rendition is ever larger than its source in either dimension."""

    @given(
        width=st.integers(min_value=1, max_value=8000),
        height=st.integers(min_value=1, max_value=5000),
    )
    @settings(max_examples=100)
    def test_no_upscaling(self, width: int, height: int) -> None:
        for resolution in filter_ladder(width, height):
            assert resolution.width <= width
            assert resolution.height <= height

    @given(
        width=st.integers(min_value=1, max_value=8000),
        height=st.integers(min_value=1, max_value=5000),
    )
    @settings(max_examples=100)
    def test_every_fitting_rung_survives_in_order(self, width: int, height: int) -> None:
        expected = [r for r in DEFAULT_LADDER if r.width <= width and r.height <= height]
        assert filter_ladder(width, height) == expected

    def test_1080p_source_against_partial_ladder(self) -> None:
        ladder = [Resolution.RES_4K, Resolution.RES_1080P, Resolution.RES_720P, Resolution.RES_360P]
        assert filter_ladder(1920, 1080, ladder) == [
            Resolution.RES_1080P,
            Resolution.RES_720P,
            Resolution.RES_360P,
        ]

    def test_portrait_source_keeps_only_rungs_fitting_both_dimensions(self) -> None:
        # 1080x1920: every rung wider than 1080 is dropped even though it is shorter
        result = filter_ladder(1080, 1920)
        assert Resolution.RES_1080P not in result
        assert result[0] == Resolution.RES_480P

    def test_tiny_source_has_no_rungs(self) -> None:
        assert filter_ladder(200, 100) == []

    def test_default_ladder_is_highest_first(self) -> None:
        heights = [RESOLUTION_DIMENSIONS[r][1] for r in DEFAULT_LADDER]
        assert heights == sorted(heights, reverse=True)
        assert Resolution.RES_480P.dimensions == "854x480"


class TestParseDimensions:
    def test_first_video_stream_is_used(self) -> None:
        info = {
            "streams": [
                {"codec_type": "audio"},
                {"codec_type": "video", "width": 1920, "height": 1080},
                {"codec_type": "video", "width": 640, "height": 360},
            ]
        }
        assert parse_dimensions(info) == (1920, 1080)

    def test_no_video_stream_is_unreadable(self) -> None:
        with pytest.raises(UnreadableMedia):
            parse_dimensions({"streams": [{"codec_type": "audio"}]})

    @pytest.mark.parametrize("stream", [
        {"codec_type": "video"},
        {"codec_type": "video", "width": 1280},
        {"codec_type": "video", "width": 0, "height": 720},
    ])
    def test_missing_dimensions(self, stream: dict) -> None:
        with pytest.raises(MissingDimensions):
            parse_dimensions({"streams": [stream]})


class TestMediaInspector:
    @pytest.mark.asyncio
    async def test_probe_reads_ffprobe_report(self) -> None:
        inspector = MediaInspector()
        report = {"streams": [{"codec_type": "video", "width": 1280, "height": 720}]}
        with patch.object(inspector, "get_video_info", AsyncMock(return_value=report)):
            assert await inspector.probe("/tmp/source") == (1280, 720)

    @pytest.mark.asyncio
    async def test_missing_binary_is_unreadable(self) -> None:
        inspector = MediaInspector(ffprobe_path="/nonexistent/ffprobe")
        with pytest.raises(UnreadableMedia):
            await inspector.probe("/tmp/source")
