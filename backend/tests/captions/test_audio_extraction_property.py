"""Tests for ffmpeg audio extraction with the subprocess faked out."""

import asyncio
import os
from unittest.mock import patch

import pytest
from hypothesis import given, settings, strategies as st

from streamvault.modules.captions.audio import (
    AudioExtractionFailed,
    extract_audio,
    extract_sample,
    pcm_options,
)


class FakeProcess:
    def __init__(self, returncode: int = 0, stderr: bytes = b""):
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr


def fake_ffmpeg(chunks: int = 0, returncode: int = 0, stderr: bytes = b""):
    """Replacement for create_subprocess_exec writing ``chunks`` WAV files."""
    calls = []

    async def create(*cmd, **kwargs):
        calls.append(list(cmd))
        output = cmd[-1]
        if "%03d" in output:
            for index in range(chunks):
                with open(output % index, "wb") as f:
                    f.write(b"RIFF")
        return FakeProcess(returncode, stderr)

    return create, calls


class TestExtractAudio:
    @given(chunks=st.integers(min_value=1, max_value=12))
    @settings(max_examples=12, deadline=None)
    def test_chunks_are_returned_in_playback_order(self, chunks: int, tmp_path_factory) -> None:
        out = tmp_path_factory.mktemp("audio")
        create, calls = fake_ffmpeg(chunks=chunks)

        with patch("asyncio.create_subprocess_exec", create):
            paths = asyncio.run(extract_audio("/tmp/source", str(out), 600))

        assert [os.path.basename(p) for p in paths] == [f"audio_{i:03d}.wav" for i in range(chunks)]
        cmd = calls[0]
        assert cmd[cmd.index("-segment_time") + 1] == "600"
        assert cmd[cmd.index("-f") + 1] == "segment"
        for option in pcm_options():
            assert option in cmd

    @pytest.mark.asyncio
    async def test_no_output_is_a_failure(self, tmp_path) -> None:
        create, _ = fake_ffmpeg(chunks=0)

        with patch("asyncio.create_subprocess_exec", create):
            with pytest.raises(AudioExtractionFailed):
                await extract_audio("/tmp/source", str(tmp_path), 600)

    @pytest.mark.asyncio
    async def test_ffmpeg_error_carries_stderr_tail(self, tmp_path) -> None:
        create, _ = fake_ffmpeg(returncode=1, stderr=b"Output file #0 does not contain any stream")

        with patch("asyncio.create_subprocess_exec", create):
            with pytest.raises(AudioExtractionFailed, match="does not contain any stream"):
                await extract_audio("/tmp/source", str(tmp_path), 600)

    @pytest.mark.asyncio
    async def test_missing_binary_is_a_failure(self, tmp_path) -> None:
        async def missing(*cmd, **kwargs):
            raise FileNotFoundError("ffmpeg")

        with patch("asyncio.create_subprocess_exec", missing):
            with pytest.raises(AudioExtractionFailed):
                await extract_audio("/tmp/source", str(tmp_path), 600, ffmpeg_path="/opt/none/ffmpeg")


class TestExtractSample:
    @pytest.mark.asyncio
    async def test_sample_is_limited_to_duration(self, tmp_path) -> None:
        create, calls = fake_ffmpeg()
        target = str(tmp_path / "sample.wav")

        with patch("asyncio.create_subprocess_exec", create):
            assert await extract_sample("/tmp/source", target, 30) == target

        cmd = calls[0]
        assert cmd[cmd.index("-t") + 1] == "30"
        assert cmd[-1] == target
