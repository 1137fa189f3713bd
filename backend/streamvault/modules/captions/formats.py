"""SRT and WebVTT rendering of timed transcript segments."""

from collections.abc import Iterable

from streamvault.modules.captions.transcription import TranscriptSegment


def _split_millis(seconds: float) -> tuple[int, int, int, int]:
    total_ms = max(0, round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return hours, minutes, secs, millis


def srt_timestamp(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS,mmm``."""
    hours, minutes, secs, millis = _split_millis(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def vtt_timestamp(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS.mmm``."""
    hours, minutes, secs, millis = _split_millis(seconds)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def _cues(segments: Iterable[TranscriptSegment]) -> list[TranscriptSegment]:
    return [segment for segment in segments if segment.text.strip()]


def to_srt(segments: Iterable[TranscriptSegment]) -> str:
    """Render segments as SubRip: number, timecode, text, blank line."""
    lines = []
    for counter, segment in enumerate(_cues(segments), start=1):
        lines.append(str(counter))
        lines.append(f"{srt_timestamp(segment.start)} --> {srt_timestamp(segment.end)}")
        lines.append(segment.text.strip())
        lines.append("")
    return "\n".join(lines)


def to_vtt(segments: Iterable[TranscriptSegment]) -> str:
    """Render segments as WebVTT."""
    lines = ["WEBVTT", ""]
    for segment in _cues(segments):
        lines.append(f"{vtt_timestamp(segment.start)} --> {vtt_timestamp(segment.end)}")
        lines.append(segment.text.strip())
        lines.append("")
    return "\n".join(lines)
