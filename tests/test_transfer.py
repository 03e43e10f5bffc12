import base64
import hashlib
import io
import json
import math

from wsshell.transfer import (
    INTERRUPT,
    UPLOAD_ABORT_COMMAND,
    UPLOAD_DECODE_COMMAND,
    UPLOAD_READY_MARKER,
    DecodeWorker,
    TransferEngine,
)

# 40 bytes of template around the payload
PADDED_TEMPLATE = '{"operation":"stdin","data":"$data","p":"xx"}'


def test_upload_fills_frames_then_sends_one_decode_frame(tmp_path, controller_factory):
    controller = controller_factory(
        [UPLOAD_READY_MARKER + "\r\n", "> "], upstream_template=PADDED_TEMPLATE, max_frame_size=100
    )
    assert controller.codec.overhead() == 40
    payload = bytes(i % 251 for i in range(10000))
    source = tmp_path / "blob.bin"
    source.write_bytes(payload)

    result = TransferEngine(controller).upload(str(source), "/tmp/blob.bin")

    encoded = base64.b64encode(payload).decode("ascii")
    expected_chunks = math.ceil(len(encoded) / 60)
    assert result["success"]
    assert result["status"] == "completed"
    assert result["chunks"] == expected_chunks
    assert result["size"] == len(payload)

    data = controller.transport.sent_data()
    opener_end = next(i for i, item in enumerate(data) if item.endswith("\r"))
    opener = "".join(data[: opener_end + 1])
    assert f"head -c {len(encoded)} " in opener
    chunks = data[opener_end + 1 : -1]
    assert chunks == [encoded[offset : offset + 60] for offset in range(0, len(encoded), 60)]
    assert data[-1] == UPLOAD_DECODE_COMMAND + "\r"
    assert all(len(frame.encode("utf-8")) <= 100 for frame in controller.transport.sent)


def test_upload_stops_when_shell_returns_to_prompt(tmp_path, controller_factory):
    controller = controller_factory(["mkdir: cannot create directory '/ro'\r\n> "])
    source = tmp_path / "blob.bin"
    source.write_bytes(b"payload")

    result = TransferEngine(controller).upload(str(source), "/ro/blob.bin")

    assert not result["success"]
    assert result["error"] == "remote did not start collecting (prompt)"
    assert len(controller.transport.sent) == 1


def test_upload_aborts_collection_on_timeout(tmp_path, controller_factory):
    controller = controller_factory()
    source = tmp_path / "blob.bin"
    source.write_bytes(b"payload")

    result = TransferEngine(controller).upload(str(source), "/tmp/blob.bin")

    assert not result["success"]
    data = controller.transport.sent_data()
    assert data[1:] == [INTERRUPT, UPLOAD_ABORT_COMMAND + "\r"]
    assert base64.b64encode(b"payload").decode("ascii") not in "".join(data)


def test_upload_missing_file(tmp_path, controller_factory):
    controller = controller_factory()
    result = TransferEngine(controller).upload(str(tmp_path / "missing"), "/tmp/x")
    assert not result["success"]
    assert "unable to read" in result["error"]
    assert controller.transport.sent == []


def test_download_after_wrapped_echo(tmp_path, controller_factory):
    remote = "/srv/" + "d" * 90 + "/f.bin"
    command = f"cat {remote} | base64 -w 0"
    wrapped = command[:80] + " \r" + command[80:] + "\r\n"
    content = b"wrapped echo download"
    encoded = base64.b64encode(content).decode("ascii")
    controller = controller_factory([wrapped, encoded + "> "])
    target = tmp_path / "f.bin"

    result = TransferEngine(controller).download(str(target), remote)

    assert result["success"], result
    assert result["status"] == "completed"
    assert target.read_bytes() == content


def test_download_with_split_prompt(tmp_path, controller_factory):
    content = b"hello over the websocket, " * 3
    encoded = base64.b64encode(content).decode("ascii")
    controller = controller_factory(
        ["cat /tmp/f | base64 -w 0\r\n", encoded[:48], encoded[48:] + ">", " "]
    )
    target = tmp_path / "nested" / "f.txt"

    result = TransferEngine(controller).download(str(target), "/tmp/f")

    assert result["success"], result
    assert result["status"] == "completed"
    assert result["size"] == len(content)
    assert result["sha256"] == hashlib.sha256(content).hexdigest()
    assert target.read_bytes() == content
    assert controller.transport.sent_data() == ["cat /tmp/f | base64 -w 0\r"]


def test_download_decode_error_keeps_partial_file(tmp_path, controller_factory):
    controller = controller_factory(["cat /tmp/f | base64 -w 0\r\n", "QUJD", "!!!!", "> "])
    target = tmp_path / "f.txt"

    result = TransferEngine(controller).download(str(target), "/tmp/f")

    assert not result["success"]
    assert result["error"].startswith("decode error: malformed base64")
    assert result["bytes_written"] == 3
    assert result["preview"] == "QUJD!!!!"
    assert target.read_bytes() == b"ABC"


def test_decode_worker_reports_truncated_stream():
    handle = io.BytesIO()
    worker = DecodeWorker(handle, depth=2).start()
    worker.write("QUJD")
    worker.write("RE")
    worker.close()
    error = worker.join()
    assert handle.getvalue() == b"ABC"
    assert "truncated" in str(error)


def test_decode_worker_reassembles_unaligned_pieces():
    handle = io.BytesIO()
    worker = DecodeWorker(handle).start()
    for piece in ("QU", "JDR", "EVG\r\n", ""):
        worker.write(piece)
    worker.close()
    assert worker.join() is None
    assert handle.getvalue() == b"ABCDEF"
    assert worker.bytes_written == 6


def test_transfer_logs_events(tmp_path, controller_factory):
    log_file = tmp_path / "session.jsonl"
    controller = controller_factory(["cat /tmp/f | base64 -w 0\r\nQUJD\r\n> "], log_file=str(log_file))
    TransferEngine(controller).download(str(tmp_path / "out"), "/tmp/f")
    events = [json.loads(line) for line in log_file.read_text().splitlines()]
    names = [event.get("event") for event in events]
    assert "transfer_start" in names
    assert "transfer_finished" in names
