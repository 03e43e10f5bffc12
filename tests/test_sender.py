import json

import pytest

from wsshell.codec import MessageCodec
from wsshell.errors import ConfigurationError
from wsshell.sender import ChunkedSender, split_payload


def build(config, max_frame_size):
    frames = []
    sender = ChunkedSender(MessageCodec(config), frames.append, max_frame_size)
    return sender, frames


def test_small_payload_is_one_frame(config_factory):
    sender, frames = build(config_factory(), 4159)
    assert sender.send("ls -la") == 1
    assert json.loads(frames[0])["data"] == "ls -la\r"


def test_large_payload_is_split_and_reassembles(config_factory):
    sender, frames = build(config_factory(), 50)
    payload = 'say "hi" ' * 20
    count = sender.send(payload)
    assert count == len(frames) > 1
    assert all(len(frame.encode("utf-8")) <= 50 for frame in frames)
    assert "".join(json.loads(frame)["data"] for frame in frames) == payload + "\r"


def test_unterminated_send(config_factory):
    sender, frames = build(config_factory(), 4159)
    sender.send("\x04", terminate=False)
    assert json.loads(frames[0])["data"] == "\x04"


def test_overhead_too_large_sends_nothing(config_factory):
    sender, frames = build(config_factory(), 10)
    with pytest.raises(ConfigurationError):
        sender.send("ls")
    with pytest.raises(ConfigurationError):
        sender.send("QUJD", terminate=False)
    assert frames == []


def test_unterminated_payload_fills_each_frame(config_factory):
    sender, frames = build(config_factory(), 41)
    assert sender.allowance() == 10
    assert sender.send("A" * 25, terminate=False) == 3
    data = [json.loads(frame)["data"] for frame in frames]
    assert data == ["A" * 10, "A" * 10, "A" * 5]


def test_split_payload_respects_encoded_size():
    measure = lambda text: len(json.dumps(text)[1:-1].encode("utf-8"))
    pieces = list(split_payload('a"b"c\\d', 3, measure))
    assert "".join(pieces) == 'a"b"c\\d'
    assert all(measure(piece) <= 3 for piece in pieces)


def test_split_payload_rejects_unfittable_character():
    measure = lambda text: len(text.encode("utf-8")) * 2
    with pytest.raises(ConfigurationError):
        list(split_payload("ab", 1, measure))
    with pytest.raises(ConfigurationError):
        list(split_payload("ab", 0, len))
