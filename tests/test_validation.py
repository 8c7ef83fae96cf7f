import pytest

from club_server import (
    MAX_CHAT_LEN,
    MalformedPayload,
    encode_frame,
    normalize_chat,
    parse_envelope,
    validate_audio_sync,
    validate_environment_patch,
    validate_move,
    validate_room_id,
    validate_shader_index,
    validate_username,
)


def test_parse_envelope_accepts_text_and_bytes():
    assert parse_envelope('{"type":"joinRoom","data":"lobby"}') == ("joinRoom", "lobby")
    assert parse_envelope(b'{"type":"chat message","data":"yo"}') == ("chat message", "yo")
    assert parse_envelope('{"type":"ping"}') == ("ping", None)


@pytest.mark.parametrize("raw, reason", [
    ("{", "invalid_json"),
    ('"just a string"', "invalid_envelope"),
    ('{"data": 1}', "missing_type"),
    ('{"type": 7}', "missing_type"),
    (b"\xff\xfe", "invalid_encoding"),
    ('{"type": "environmentUpdate", "data": {"shaders": {"floor": NaN}}}', "invalid_json"),
    ('{"type": "appearanceUpdate", "data": {"glow": Infinity}}', "invalid_json"),
    ('{"type": "animationUpdate", "data": {"speed": -Infinity}}', "invalid_json"),
    ('{"type": "audioSync", "data": {"timestamp": 1e400, "playing": true, "songId": "a"}}', "invalid_json"),
])
def test_parse_envelope_rejects(raw, reason):
    with pytest.raises(MalformedPayload) as exc:
        parse_envelope(raw)
    assert exc.value.reason == reason


def test_normalize_chat_accepts_both_shapes():
    assert normalize_chat("hello") == "hello"
    assert normalize_chat({"message": "hello"}) == "hello"
    assert len(normalize_chat("x" * (MAX_CHAT_LEN + 50))) == MAX_CHAT_LEN


@pytest.mark.parametrize("payload", ["", {"message": ""}, {"text": "hi"}, 42, None])
def test_normalize_chat_rejects(payload):
    with pytest.raises(MalformedPayload):
        normalize_chat(payload)


def test_validate_move_coerces_numbers():
    out = validate_move({
        "position": {"x": 1, "y": 2.5, "z": -3},
        "rotation": {"x": 0, "y": 0, "z": 0},
        "action": "Jump",
    })
    assert out["position"] == {"x": 1.0, "y": 2.5, "z": -3.0}
    assert isinstance(out["position"]["x"], float)
    assert out["action"] == "Jump"


@pytest.mark.parametrize("payload, reason", [
    ({"position": {"x": 1, "y": 2}, "rotation": {"x": 0, "y": 0, "z": 0}, "action": "Idle"}, "invalid_position"),
    ({"position": {"x": True, "y": 0, "z": 0}, "rotation": {"x": 0, "y": 0, "z": 0}, "action": "Idle"}, "invalid_position"),
    ({"position": {"x": 0, "y": 0, "z": 0}, "rotation": {"x": float("nan"), "y": 0, "z": 0}, "action": "Idle"}, "invalid_rotation"),
    ({"position": {"x": 0, "y": 0, "z": 0}, "rotation": {"x": 0, "y": 0, "z": 0}}, "invalid_action"),
    ({"position": {"x": 10 ** 400, "y": 0, "z": 0}, "rotation": {"x": 0, "y": 0, "z": 0}, "action": "Idle"}, "invalid_position"),
    ([1, 2, 3], "invalid_move"),
])
def test_validate_move_rejects(payload, reason):
    with pytest.raises(MalformedPayload) as exc:
        validate_move(payload)
    assert exc.value.reason == reason


def test_username_and_room_bounds():
    assert validate_username("  Alice ") == "Alice"
    for bad in ("", "   ", "x" * 33, None):
        with pytest.raises(MalformedPayload):
            validate_username(bad)
    assert validate_room_id("lobby") == "lobby"
    for bad in ("", "r" * 65, 3):
        with pytest.raises(MalformedPayload):
            validate_room_id(bad)


def test_shader_index_must_be_int():
    assert validate_shader_index(4) == 4
    for bad in (True, 1.5, "2"):
        with pytest.raises(MalformedPayload):
            validate_shader_index(bad)


def test_audio_sync_shape():
    ok = {"timestamp": 3, "playing": False, "songId": "a", "extra": 1}
    assert validate_audio_sync(ok) == {"timestamp": 3, "playing": False, "songId": "a"}
    with pytest.raises(MalformedPayload):
        validate_audio_sync({"timestamp": 3, "playing": "yes", "songId": "a"})
    for stamp in (float("nan"), float("inf"), 10 ** 400):
        with pytest.raises(MalformedPayload):
            validate_audio_sync({"timestamp": stamp, "playing": True, "songId": "a"})


def test_encode_frame_refuses_non_finite_numbers():
    with pytest.raises(ValueError):
        encode_frame("environmentUpdated", {"shaders": {"floor": float("nan")}})


def test_environment_patch_splits_known_and_unknown():
    patch, ignored = validate_environment_patch({
        "lights": {"light1": 0, "tube": 2.0},
        "shaders": {"floor": 1},
        "weather": "rain",
    })
    assert patch == {"lights": {"light1": 0, "tube": 2}, "shaders": {"floor": 1}}
    assert ignored == ["weather"]


@pytest.mark.parametrize("payload", [
    {"lights": {"light1": "on"}},
    {"lights": {"light1": True}},
    {"lights": [1, 1]},
    {"shaders": "none"},
    {"audioMode": 3},
    "lights off",
])
def test_environment_patch_rejects(payload):
    with pytest.raises(MalformedPayload):
        validate_environment_patch(payload)
