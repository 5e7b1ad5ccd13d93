"""Request, codec and output types, and the rules that relate them."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from enum import Enum
from typing import Collection, Hashable, Optional, TypeVar, Union


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return str(self.value)


class RequestType(_StrEnum):
    ROOM_COMPOSITE = "room_composite"
    WEB = "web"
    PARTICIPANT = "participant"
    TRACK_COMPOSITE = "track_composite"
    TRACK = "track"


class SourceType(_StrEnum):
    WEB = "web"
    SDK = "sdk"


class EgressType(_StrEnum):
    STREAM = "stream"
    WEBSOCKET = "websocket"
    FILE = "file"
    SEGMENTS = "segments"
    IMAGES = "images"


class MimeType(_StrEnum):
    AAC = "audio/aac"
    OPUS = "audio/opus"
    RAW_AUDIO = "audio/x-raw"
    H264 = "video/h264"
    VP8 = "video/vp8"
    VP9 = "video/vp9"
    JPEG = "image/jpeg"
    RAW_VIDEO = "video/x-raw"


class Profile(_StrEnum):
    BASELINE = "baseline"
    MAIN = "main"
    HIGH = "high"


class OutputType(_StrEnum):
    UNKNOWN_FILE = ""
    RAW = "audio/x-raw"
    OGG = "audio/ogg"
    IVF = "video/x-ivf"
    MP4 = "video/mp4"
    TS = "video/mp2t"
    WEBM = "video/webm"
    JPEG = "image/jpeg"
    RTMP = "rtmp"
    SRT = "srt"
    HLS = "application/x-mpegurl"
    JSON = "application/json"
    BLOB = "application/octet-stream"


class FileExtension(_StrEnum):
    RAW = ".raw"
    OGG = ".ogg"
    IVF = ".ivf"
    MP4 = ".mp4"
    TS = ".ts"
    WEBM = ".webm"
    M3U8 = ".m3u8"
    JPEG = ".jpeg"


class EgressError(Exception):
    """Base error for egress operations, carrying an HTTP-style status code."""

    status: int = 500

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status


DEFAULT_AUDIO_CODECS: dict[OutputType, MimeType] = {
    OutputType.RAW: MimeType.RAW_AUDIO,
    OutputType.OGG: MimeType.OPUS,
    OutputType.MP4: MimeType.AAC,
    OutputType.TS: MimeType.AAC,
    OutputType.WEBM: MimeType.OPUS,
    OutputType.RTMP: MimeType.AAC,
    OutputType.SRT: MimeType.AAC,
    OutputType.HLS: MimeType.AAC,
}

DEFAULT_VIDEO_CODECS: dict[OutputType, MimeType] = {
    OutputType.IVF: MimeType.VP8,
    OutputType.MP4: MimeType.H264,
    OutputType.TS: MimeType.H264,
    OutputType.WEBM: MimeType.VP8,
    OutputType.RTMP: MimeType.H264,
    OutputType.SRT: MimeType.H264,
    OutputType.HLS: MimeType.H264,
}

FILE_EXTENSIONS: frozenset[FileExtension] = frozenset(FileExtension)

FILE_EXTENSION_FOR_OUTPUT_TYPE: dict[OutputType, FileExtension] = {
    OutputType.RAW: FileExtension.RAW,
    OutputType.OGG: FileExtension.OGG,
    OutputType.IVF: FileExtension.IVF,
    OutputType.MP4: FileExtension.MP4,
    OutputType.TS: FileExtension.TS,
    OutputType.WEBM: FileExtension.WEBM,
    OutputType.HLS: FileExtension.M3U8,
    OutputType.JPEG: FileExtension.JPEG,
}

CODEC_COMPATIBILITY: dict[OutputType, frozenset[MimeType]] = {
    OutputType.RAW: frozenset({MimeType.RAW_AUDIO}),
    OutputType.OGG: frozenset({MimeType.OPUS}),
    OutputType.IVF: frozenset({MimeType.VP8, MimeType.VP9}),
    OutputType.MP4: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.TS: frozenset({MimeType.AAC, MimeType.OPUS, MimeType.H264}),
    OutputType.WEBM: frozenset({MimeType.OPUS, MimeType.VP8, MimeType.VP9}),
    OutputType.RTMP: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.SRT: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.HLS: frozenset({MimeType.AAC, MimeType.H264}),
    OutputType.UNKNOWN_FILE: frozenset(
        {MimeType.AAC, MimeType.OPUS, MimeType.H264, MimeType.VP8, MimeType.VP9}
    ),
}

ALL_OUTPUT_AUDIO_CODECS: frozenset[MimeType] = frozenset(
    {MimeType.AAC, MimeType.OPUS, MimeType.RAW_AUDIO}
)
ALL_OUTPUT_VIDEO_CODECS: frozenset[MimeType] = frozenset({MimeType.H264})

AUDIO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.OGG, OutputType.MP4)
VIDEO_ONLY_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)
AUDIO_VIDEO_FILE_OUTPUT_TYPES: tuple[OutputType, ...] = (OutputType.MP4,)

TRACK_OUTPUT_TYPES: dict[MimeType, OutputType] = {
    MimeType.OPUS: OutputType.OGG,
    MimeType.H264: OutputType.MP4,
    MimeType.VP8: OutputType.WEBM,
    MimeType.VP9: OutputType.WEBM,
}

STREAM_OUTPUT_TYPES: dict[str, OutputType] = {
    "rtmp": OutputType.RTMP,
    "rtmps": OutputType.RTMP,
    "mux": OutputType.RTMP,
    "twitch": OutputType.RTMP,
    "srt": OutputType.SRT,
    "ws": OutputType.RAW,
    "wss": OutputType.RAW,
}

K = TypeVar("K", bound=Hashable)
CodecSet = Union[Mapping[MimeType, bool], Collection[MimeType]]


def get_output_type_compatible_with_codecs(
    types: Sequence[OutputType],
    audio_codecs: Optional[CodecSet],
    video_codecs: Optional[CodecSet],
) -> OutputType:
    """Return the first output type compatible with both codec sets.

    A codec set of None is not checked; an empty one matches nothing.
    """
    for output_type in types:
        if audio_codecs is not None and not is_output_type_compatible_with_codecs(
            output_type, audio_codecs
        ):
            continue
        if video_codecs is not None and not is_output_type_compatible_with_codecs(
            output_type, video_codecs
        ):
            continue
        return output_type
    return OutputType.UNKNOWN_FILE


def is_output_type_compatible_with_codecs(output_type: OutputType, codecs: CodecSet) -> bool:
    """True if any of the codecs can be carried by the output type."""
    allowed = CODEC_COMPATIBILITY.get(output_type, frozenset())
    return any(codec in allowed for codec in codecs)


def _contains(container: Union[Mapping[K, bool], Collection[K]], key: K) -> bool:
    if isinstance(container, Mapping):
        return bool(container.get(key))
    return key in container


def get_map_intersection(
    map_a: Union[Mapping[K, bool], Iterable[K]],
    map_b: Union[Mapping[K, bool], Collection[K]],
) -> dict[K, bool]:
    """Keys of map_a that map_b marks as present."""
    return {key: True for key in map_a if _contains(map_b, key)}