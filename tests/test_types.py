import pytest

from egressd.types import (
    CODEC_COMPATIBILITY,
    DEFAULT_AUDIO_CODECS,
    STREAM_OUTPUT_TYPES,
    EgressError,
    MimeType,
    OutputType,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
    is_output_type_compatible_with_codecs,
)


def test_get_map_intersection():
    codecs: dict = {}

    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.UNKNOWN_FILE])
    assert res == {}

    codecs[MimeType.H264] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.OGG])
    assert res == {}

    codecs[MimeType.VP8] = True
    res = get_map_intersection(codecs, CODEC_COMPATIBILITY[OutputType.MP4])
    assert res == {MimeType.H264: True}


def test_get_map_intersection_with_mapping():
    res = get_map_intersection({"a": True, "b": True}, {"a": True, "b": False})
    assert res == {"a": True}


def test_get_output_types_compatible_with_codecs():
    output_types: list = []
    audio_codecs: dict = {}
    video_codecs: dict = {}

    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    output_types += [OutputType.OGG, OutputType.MP4]
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    audio_codecs[MimeType.AAC] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.VP8] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == ""

    video_codecs[MimeType.H264] = True
    output_types.append(OutputType.MP4)
    res = get_output_type_compatible_with_codecs(output_types, audio_codecs, video_codecs)
    assert res == OutputType.MP4


def test_none_codec_set_is_not_checked():
    res = get_output_type_compatible_with_codecs([OutputType.OGG], {MimeType.OPUS}, None)
    assert res is OutputType.OGG


def test_is_output_type_compatible():
    assert is_output_type_compatible_with_codecs(OutputType.WEBM, {MimeType.VP9})
    assert not is_output_type_compatible_with_codecs(OutputType.RTMP, {MimeType.OPUS})
    assert not is_output_type_compatible_with_codecs(OutputType.JSON, {MimeType.AAC})


def test_default_audio_codecs_are_compatible():
    for output_type, codec in DEFAULT_AUDIO_CODECS.items():
        assert is_output_type_compatible_with_codecs(output_type, {codec: True})


def test_websocket_stream_output_takes_raw_audio():
    output_type = STREAM_OUTPUT_TYPES["wss"]
    res = get_output_type_compatible_with_codecs([output_type], {MimeType.RAW_AUDIO: True}, None)
    assert res is OutputType.RAW
    assert str(res) == "audio/x-raw"


def test_egress_error_status():
    assert EgressError("boom").status == 500
    err = EgressError("missing", 404)
    assert err.status == 404
    assert str(err) == "missing"
    with pytest.raises(EgressError):
        raise err