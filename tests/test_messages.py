import base64

import pytest

from linguarelay.streaming.messages import (
    AudioChunk,
    EndSession,
    MessageError,
    ProcessSegment,
    StartRealtime,
    StartSession,
    decode_audio,
    decode_frame,
    error_event,
    parse_command,
    server_event,
)


def test_decode_frame_json_object():
    payload, audio = decode_frame('{"type":"ping"}')
    assert payload == {"type": "ping"}
    assert audio == b""


def test_decode_frame_bytes_json_object():
    payload, audio = decode_frame(b'  {"type":"end_session"}')
    assert payload == {"type": "end_session"}
    assert audio == b""


def test_decode_frame_falls_back_to_audio():
    assert decode_frame(b"\x00\x01\x02") == (None, b"\x00\x01\x02")
    assert decode_frame(b"\xff\xfe{") == (None, b"\xff\xfe{")
    assert decode_frame("{not json") == (None, b"{not json")
    assert decode_frame("[1, 2]") == (None, b"[1, 2]")


def test_parse_start_session_with_defaults():
    cmd = parse_command({"type": "start_session", "data": {"targetLang": "es"}})
    assert isinstance(cmd, StartSession)
    config = cmd.data.to_config()
    assert config.source_language == "auto"
    assert config.target_language == "es"
    assert config.audio_encoding == "LINEAR16"
    assert config.sample_rate == 16000


def test_parse_start_realtime_without_data_defaults_languages():
    cmd = parse_command({"type": "start_realtime"})
    assert isinstance(cmd, StartRealtime)
    config = cmd.data.to_config()
    assert config.source_language == "auto"
    assert config.target_language == "en"


def test_top_level_fields_are_folded_into_data():
    cmd = parse_command({"type": "start_realtime", "sourceLang": "ES", "targetLang": "en"})
    assert cmd.data.to_config().source_language == "es"

    cmd = parse_command({"type": "process_segment", "audio": "AAAA", "segmentId": 7})
    assert isinstance(cmd, ProcessSegment)
    assert cmd.data.segment_id == 7


def test_parse_audio_chunk_and_end_session():
    assert isinstance(parse_command({"type": "audio_chunk", "data": "AAAA"}), AudioChunk)
    assert isinstance(parse_command({"type": "end_session"}), EndSession)


def test_unknown_type_is_rejected():
    with pytest.raises(MessageError) as exc:
        parse_command({"type": "launch_rockets"})
    assert exc.value.code == "unknown_message"


@pytest.mark.parametrize(
    "data",
    [
        {"sourceLang": "en"},
        {"targetLang": "es", "sampleRate": 4000},
        {"targetLang": "es", "audioEncoding": "AAC"},
        {"targetLang": "spanish-latam"},
    ],
)
def test_invalid_session_config(data):
    with pytest.raises(MessageError) as exc:
        parse_command({"type": "start_session", "data": data})
    assert exc.value.code == "invalid_config"
    assert exc.value.message == "Invalid session configuration"


def test_process_segment_requires_audio():
    for payload in ({"type": "process_segment"}, {"type": "process_segment", "data": {"segmentId": 1}}):
        with pytest.raises(MessageError) as exc:
            parse_command(payload)
        assert exc.value.code == "invalid_segment"
        assert exc.value.message == "Audio data is required"


def test_decode_audio():
    assert decode_audio(base64.b64encode(b"pcm").decode()) == b"pcm"
    with pytest.raises(MessageError):
        decode_audio("abc")


def test_server_event_envelope():
    evt = server_event("pong")
    assert evt["type"] == "pong"
    assert evt["timestamp"].endswith("Z")
    assert "data" not in evt
    err = error_event("no_session", "No active session")
    assert err["data"] == {"code": "no_session", "message": "No active session"}
    with pytest.raises(ValueError):
        server_event("bogus")
