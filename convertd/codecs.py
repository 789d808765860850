"""
Browser compatibility checks for video/audio codec pairs.
"""

from typing import Optional

# Names are matched as substrings of the probed codec name, so "avc1",
# "h264" or decoder names like "mp3float" all count.
COMPATIBLE_VIDEO = ("h264", "avc1", "avc", "vp8", "vp9", "av1")
COMPATIBLE_AUDIO = ("aac", "mp3", "opus", "vorbis", "flac")

UNKNOWN = "unknown"


def _is_unknown(codec: Optional[str]) -> bool:
    return not codec or codec.strip().lower() == UNKNOWN


def _matches(codec: str, allowed: tuple) -> bool:
    name = codec.strip().lower()
    return any(c in name for c in allowed)


def needs_conversion(video_codec: Optional[str], audio_codec: Optional[str]) -> bool:
    """Return True when the pair cannot be played directly by a browser.

    Unknown or missing codecs are treated optimistically: direct playback is
    attempted instead of forcing a transcode.
    """
    if _is_unknown(video_codec) or _is_unknown(audio_codec):
        return False
    video_ok = _matches(video_codec, COMPATIBLE_VIDEO)
    audio_ok = _matches(audio_codec, COMPATIBLE_AUDIO)
    return not video_ok or not audio_ok


def is_browser_compatible(video_codec: Optional[str], audio_codec: Optional[str]) -> bool:
    return not needs_conversion(video_codec, audio_codec)
