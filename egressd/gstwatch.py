"""Interpretation of GStreamer log lines, bus errors and element messages."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Optional, Union

from egressd.types import EgressError

# noisy gst errors
MSG_WRONG_THREAD = "Called from wrong thread"

# noisy gst warnings
MSG_KEYFRAME = (
    "Could not request a keyframe. Files may not split at the exact location they should"
)
MSG_LATENCY_QUERY = "Latency query failed"
MSG_TAPS = "can't find exact taps"
MSG_INPUT_DISAPPEARED = "Can't copy metadata because input buffer disappeared"
MSG_SKIPPING_SEGMENT = "error reading data -1 (reason: Success), skipping segment"
FN_GST_AUDIO_RESAMPLE_CHECK_DISCONT = "gst_audio_resample_check_discont"

# noisy gst fixmes
MSG_STREAM_START = (
    "stream-start event without group-id. "
    "Consider implementing group-id handling in the upstream elements"
)
MSG_CREATING_STREAM = (
    "Creating random stream-id, consider implementing a deterministic way of creating a stream-id"
)
MSG_AGGREGATE_SUBCLASS = (
    "Subclass should call gst_aggregator_selected_samples() from its aggregate implementation."
)

# rtmp client
CAT_RTMP_CLIENT = "rtmpclient"
FN_SEND_CREATE_STREAM = "send_create_stream"

MSG_CLOCK_PROBLEM = "GStreamer error: clock problem."

ELEMENT_GST_APP_SRC = "GstAppSrc"
ELEMENT_GST_RTMP2_SINK = "GstRtmp2Sink"
ELEMENT_GST_SPLIT_MUX_SINK = "GstSplitMuxSink"
ELEMENT_GST_SRT_SINK = "GstSRTSink"
MSG_STREAMING_NOT_NEGOTIATED = "streaming stopped, reason not-negotiated (-4)"
MSG_MUXER = ":muxer"

MSG_FIRST_SAMPLE_METADATA = "FirstSampleMetadata"
MSG_FRAGMENT_OPENED = "splitmuxsink-fragment-opened"
MSG_FRAGMENT_CLOSED = "splitmuxsink-fragment-closed"
MSG_GST_MULTI_FILE_SINK = "GstMultiFileSink"

FRAGMENT_LOCATION = "location"
FRAGMENT_RUNNING_TIME = "running-time"
MULTI_FILE_SINK_FILENAME = "filename"
MULTI_FILE_SINK_TIMESTAMP = "timestamp"
FIRST_SAMPLE_START_DATE = "StartDate"

IGNORED: frozenset[str] = frozenset(
    {
        MSG_WRONG_THREAD,
        MSG_KEYFRAME,
        MSG_LATENCY_QUERY,
        MSG_TAPS,
        MSG_INPUT_DISAPPEARED,
        MSG_SKIPPING_SEGMENT,
        FN_GST_AUDIO_RESAMPLE_CHECK_DISCONT,
        MSG_STREAM_START,
        MSG_CREATING_STREAM,
        MSG_AGGREGATE_SUBCLASS,
    }
)

# file.c(line): method_name (): /GstPipeline:pipeline/GstBin:bin_name/GstElement:element_name:\nError message
_GST_DEBUG = re.compile(r"(.*?)GstPipeline:pipeline/GstBin:(.*?)/(.*?):([^:]*)(:\n)?(.*)", re.DOTALL)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class GstPipelineError(EgressError):
    """A failure reported by the media pipeline."""

    def __init__(self, message: str = "pipeline error") -> None:
        super().__init__(message)


class DebugLevel(IntEnum):
    NONE = 0
    ERROR = 1
    WARNING = 2
    FIXME = 3
    INFO = 4
    DEBUG = 5
    LOG = 6
    TRACE = 7
    MEMDUMP = 9

    @property
    def label(self) -> Optional[str]:
        """The name used in log lines, or None for a level that is not logged."""
        return _LEVEL_LABELS.get(self)


_LEVEL_LABELS: dict[DebugLevel, str] = {
    DebugLevel.ERROR: "error",
    DebugLevel.WARNING: "warning",
    DebugLevel.FIXME: "fixme",
    DebugLevel.INFO: "info",
    DebugLevel.DEBUG: "debug",
    DebugLevel.LOG: "log",
    DebugLevel.TRACE: "trace",
    DebugLevel.MEMDUMP: "memdump",
}


@dataclass(frozen=True)
class DebugInfo:
    """The parts of a GStreamer error's debug string."""

    element: str
    name: str
    message: str

    @property
    def stream_name(self) -> str:
        """The stream part of a sink name such as ``sink_<stream>``."""
        parts = self.name.split("_")
        if len(parts) < 2:
            raise ValueError(f"no stream name in element name {self.name!r}")
        return parts[1]


def parse_debug_info(debug_string: str) -> DebugInfo:
    """Split a debug string into element type, element name and message."""
    match = _GST_DEBUG.search(debug_string)
    if match is None:
        raise ValueError(f"unrecognized debug string {debug_string!r}")
    return DebugInfo(element=match.group(3), name=match.group(4), message=match.group(6))


def should_ignore(message: str, function: str) -> bool:
    """True for the known noisy messages and functions."""
    return message in IGNORED or function in IGNORED


def format_gst_log(
    category: str,
    level: Union[DebugLevel, int],
    function: str,
    message: str,
) -> Optional[str]:
    """The line to log for a GStreamer debug message, or None to drop it.

    Unlogged levels, noisy messages and the rtmp client category are dropped.
    """
    try:
        label = DebugLevel(level).label
    except ValueError:
        return None
    if label is None or should_ignore(message, function):
        return None
    if category == CAT_RTMP_CLIENT:
        return None
    if function:
        return f"[{category} {label}] {function}: {message}"
    return f"[{category} {label}] {message}"


def rtmp_stream_id(message: str) -> str:
    """The quoted stream id in an rtmp client create-stream message."""
    parts = message.split("'")
    if len(parts) < 2:
        raise ValueError(f"no stream id in {message!r}")
    return parts[1]


def _field(structure: Mapping[str, Any], name: str) -> Any:
    try:
        return structure[name]
    except KeyError:
        raise GstPipelineError(f"missing field {name}") from None


def _string_field(structure: Mapping[str, Any], name: str, what: str) -> str:
    value = _field(structure, name)
    if not isinstance(value, str):
        raise GstPipelineError(f"invalid type for {what}")
    return value


def _uint_field(structure: Mapping[str, Any], name: str, what: str) -> int:
    value = _field(structure, name)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise GstPipelineError(f"invalid type for {what}")
    return value


def get_segment_params(structure: Mapping[str, Any]) -> tuple[str, int]:
    """Location and running time of a split-mux fragment message."""
    location = _string_field(structure, FRAGMENT_LOCATION, "location")
    running_time = _uint_field(structure, FRAGMENT_RUNNING_TIME, "time")
    return location, running_time


def get_image_information(structure: Mapping[str, Any]) -> tuple[str, int]:
    """File name and timestamp of a multi-file sink message."""
    filename = _string_field(structure, MULTI_FILE_SINK_FILENAME, "location")
    timestamp = _uint_field(structure, MULTI_FILE_SINK_TIMESTAMP, "time")
    return filename, timestamp


def get_first_sample_start_date(structure: Mapping[str, Any]) -> datetime:
    """The UTC start date carried, in Unix nanoseconds, by a first-sample message."""
    value = _field(structure, FIRST_SAMPLE_START_DATE)
    if isinstance(value, bool) or not isinstance(value, int):
        raise GstPipelineError("invalid type for start date")
    return _EPOCH + timedelta(microseconds=value // 1000)