import base64
import binascii
import os
import queue
import re
import shlex
import threading
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Optional

from wsshell.config import DEFAULT_QUEUE_DEPTH
from wsshell.errors import DecodeError, LocalIOError
from wsshell.session import SessionController
from wsshell.utils import iso_now, json_line, log_error, resolve_local_path, sha256_file

DOWNLOAD_COMMAND = "cat {remote} | base64 -w 0"

# The opener switches the tty to non-canonical mode so base64 chunks need no
# line breaks, and head stops after exactly ``size`` characters. The marker is
# computed by the shell so the echoed command line never contains it.
UPLOAD_READY_MARKER = "wsshell-ready-42"
UPLOAD_OPEN_COMMAND = (
    '_T={tmp} _R={remote}; mkdir -p "$(dirname "$_R")" && stty -echo -icanon min 1 time 0'
    ' && echo wsshell-ready-$((6*7)) && head -c {size} > "$_T"'
)
UPLOAD_DECODE_COMMAND = 'base64 -d "$_T">"$_R";rm -f "$_T";stty echo icanon'
UPLOAD_ABORT_COMMAND = 'stty echo icanon; rm -f "$_T"'
INTERRUPT = "\x03"

WHITESPACE = re.compile(r"\s+")
PREVIEW_CHARS = 200


@dataclass
class Transfer:
    direction: str
    local_path: str
    remote_path: str
    chunk_size: int


class DecodeWorker:
    """Consumes base64 text from a bounded queue and writes decoded bytes.

    The read loop is the only producer; ``close()`` signals end of stream.
    The worker keeps draining after an error so the producer never blocks.
    """

    def __init__(self, handle: BinaryIO, depth: int = DEFAULT_QUEUE_DEPTH):
        self.handle = handle
        self.queue: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=depth)
        self.bytes_written = 0
        self.error: Optional[Exception] = None
        self.preview = ""
        self._carry = ""
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self) -> "DecodeWorker":
        self._thread.start()
        return self

    def write(self, text: str) -> None:
        self.queue.put(text)

    def close(self) -> None:
        self.queue.put(None)

    def join(self) -> Optional[Exception]:
        self._thread.join()
        return self.error

    def _run(self) -> None:
        while True:
            item = self.queue.get()
            if item is None:
                break
            if len(self.preview) < PREVIEW_CHARS:
                self.preview = (self.preview + item)[:PREVIEW_CHARS]
            if self.error is not None:
                continue
            try:
                self._decode(item)
            except Exception as exc:
                self.error = exc
        if self.error is None and self._carry:
            self.error = DecodeError(f"truncated base64 stream ({len(self._carry)} trailing chars)")
        try:
            self.handle.flush()
        except OSError as exc:
            if self.error is None:
                self.error = LocalIOError(f"flush failed: {exc}")

    def _decode(self, text: str) -> None:
        data = self._carry + WHITESPACE.sub("", text)
        usable = len(data) - len(data) % 4
        self._carry = data[usable:]
        if not usable:
            return
        try:
            chunk = base64.b64decode(data[:usable], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"malformed base64: {exc}") from exc
        try:
            self.handle.write(chunk)
        except OSError as exc:
            raise LocalIOError(f"write failed: {exc}") from exc
        self.bytes_written += len(chunk)


class TransferEngine:
    def __init__(self, controller: SessionController):
        self.controller = controller

    @property
    def chunk_size(self) -> int:
        return self.controller.sender.allowance()

    def _log_transfer(self, transfer: Transfer, payload: Dict[str, Any]) -> None:
        log_file = self.controller.config.log_file
        if not log_file:
            return
        data = {
            "ts": iso_now(),
            "dir": "SYS",
            "direction": transfer.direction,
            "local_path": transfer.local_path,
            "remote_path": transfer.remote_path,
            "chunk_size": transfer.chunk_size,
        }
        data.update(payload)
        json_line(log_file, data)

    def _abort_upload(self) -> None:
        sender = self.controller.sender
        sender.send(INTERRUPT, terminate=False)
        sender.send(UPLOAD_ABORT_COMMAND)
        self.controller.drive(UPLOAD_ABORT_COMMAND, lambda text: None, echo=False)

    def upload(self, local_path: str, remote_path: str) -> Dict[str, Any]:
        """Send a local file to ``remote_path`` as base64.

        An opener command turns echo off and starts collecting exactly the
        encoded length into a temporary file, then prints a ready marker.
        Chunks go out only after the marker is seen, each filling a frame,
        and one trailing command decodes the temporary file into place.
        Success means every frame went out; the decode command's own output
        is returned for display.
        """
        local = resolve_local_path(local_path)
        transfer = Transfer("upload", local, remote_path, self.chunk_size)
        try:
            with open(local, "rb") as handle:
                payload = handle.read()
        except OSError as exc:
            return {"success": False, "error": f"unable to read {local_path}: {exc}"}

        encoded = base64.b64encode(payload).decode("ascii")
        tmp = f"{remote_path}.wsshell_b64_{int(time.time() * 1000)}"
        opener = UPLOAD_OPEN_COMMAND.format(tmp=shlex.quote(tmp), remote=shlex.quote(remote_path), size=len(encoded))
        sender = self.controller.sender
        captured = []

        with self.controller.claim("upload"):
            self._log_transfer(transfer, {"event": "transfer_start", "size": len(payload)})
            sender.send(opener)
            ready = self.controller.await_marker(UPLOAD_READY_MARKER)
            if ready != "ready":
                if ready == "timeout":
                    self._abort_upload()
                self._log_transfer(transfer, {"event": "transfer_aborted", "reason": ready})
                return {
                    "success": False,
                    "error": f"remote did not start collecting ({ready})",
                    "local_path": local,
                    "remote_path": remote_path,
                }

            chunks = sender.send(encoded, terminate=False) if encoded else 0
            sender.send(UPLOAD_DECODE_COMMAND)
            # echo is still off on the remote while the decode command is read
            status = self.controller.drive(UPLOAD_DECODE_COMMAND, captured.append, echo=False)
            self._log_transfer(transfer, {"event": "transfer_finished", "chunks": chunks, "status": status})

        return {
            "success": True,
            "direction": "upload",
            "local_path": local,
            "remote_path": remote_path,
            "size": len(payload),
            "chunks": chunks,
            "status": "completed" if status == "done" else "timed_out",
            "remote_output": "".join(captured),
        }

    def download(self, local_path: str, remote_path: str) -> Dict[str, Any]:
        """Stream ``remote_path`` as base64 into a local file.

        Frames are read on the calling thread; decoding and disk writes run on
        a DecodeWorker so a slow disk never stalls the read loop. A decode
        failure leaves whatever was already written on disk.
        """
        local = resolve_local_path(local_path)
        transfer = Transfer("download", local, remote_path, self.chunk_size)
        command = DOWNLOAD_COMMAND.format(remote=shlex.quote(remote_path))

        with self.controller.claim("download"):
            parent = os.path.dirname(local)
            try:
                if parent:
                    os.makedirs(parent, exist_ok=True)
                handle = open(local, "wb")
            except OSError as exc:
                return {"success": False, "error": f"unable to create {local_path}: {exc}"}

            with handle:
                self._log_transfer(transfer, {"event": "transfer_start"})
                worker = DecodeWorker(handle).start()
                try:
                    self.controller.sender.send(command)
                    status = self.controller.drive(command, worker.write)
                finally:
                    worker.close()
                    decode_error = worker.join()
            self._log_transfer(
                transfer,
                {"event": "transfer_finished", "bytes_written": worker.bytes_written, "error": str(decode_error or "")},
            )

        if decode_error is not None:
            log_error(f"download {remote_path}: {decode_error}")
            return {
                "success": False,
                "error": f"decode error: {decode_error}",
                "local_path": local,
                "remote_path": remote_path,
                "bytes_written": worker.bytes_written,
                "preview": worker.preview,
            }
        return {
            "success": True,
            "direction": "download",
            "local_path": local,
            "remote_path": remote_path,
            "size": worker.bytes_written,
            "sha256": sha256_file(local),
            "status": "completed" if status == "done" else "timed_out",
        }
