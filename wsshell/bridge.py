"""Remote side: serve a PTY-backed bash over a websocket.

Frames from the client are ``{"operation": ..., "data": ...}``. ``stdin``
(or an empty operation) writes data into the terminal, ``resize`` sets the
window size. Terminal output goes back as ``{"operation": "", "data": ...}``.
"""
import argparse
import codecs
import fcntl
import json
import os
import pty
import struct
import subprocess
import sys
import termios
import threading
from typing import Optional, Tuple

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import ServerConnection, serve

from wsshell.utils import log_error

SHELL = "bash"
SHELL_PS1 = "/app # "
READ_SIZE = 4096
WS_PATH = "/ws"


def parse_addr(addr: str) -> Tuple[str, int]:
    host, _, port = addr.rpartition(":")
    return host or "0.0.0.0", int(port)


def set_window_size(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def apply_message(raw, master_fd: int) -> str:
    """Apply one client frame to the terminal and return its operation."""
    try:
        msg = json.loads(raw)
    except ValueError as exc:
        log_error(f"invalid frame: {exc}")
        return "invalid"
    if not isinstance(msg, dict):
        log_error("invalid frame: not an object")
        return "invalid"

    operation = msg.get("operation") or ""
    if operation in ("stdin", ""):
        data = msg.get("data") or ""
        os.write(master_fd, str(data).encode("utf-8"))
    elif operation == "resize":
        try:
            set_window_size(master_fd, int(msg.get("rows", 0)), int(msg.get("cols", 0)))
        except (TypeError, ValueError, OSError) as exc:
            log_error(f"resize failed: {exc}")
    else:
        log_error(f"unknown operation: {operation}")
    return operation


def _take_controlling_tty() -> None:
    # runs in the child after setsid(); stdin is the pty slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyBridge:
    def __init__(self, websocket: ServerConnection, shell: str = SHELL, ps1: str = SHELL_PS1):
        self.websocket = websocket
        self.shell = shell
        self.ps1 = ps1
        self.master_fd: Optional[int] = None
        self.process: Optional[subprocess.Popen] = None

    def start(self) -> None:
        master_fd, slave_fd = pty.openpty()
        env = dict(os.environ, PS1=self.ps1)
        try:
            self.process = subprocess.Popen(
                [self.shell],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
                preexec_fn=_take_controlling_tty,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        self.master_fd = master_fd

    def _pump_output(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                data = os.read(self.master_fd, READ_SIZE)
            except OSError:
                # EIO once the shell exits and the slave side is gone
                break
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            try:
                self.websocket.send(json.dumps({"operation": "", "data": text}))
            except ConnectionClosed as exc:
                log_error(f"websocket write error: {exc}")
                break
        try:
            self.websocket.close()
        except Exception as exc:
            log_error(f"websocket close failed: {exc}")

    def serve(self) -> None:
        pump = threading.Thread(target=self._pump_output, daemon=True)
        pump.start()
        try:
            for message in self.websocket:
                try:
                    apply_message(message, self.master_fd)
                except OSError as exc:
                    log_error(f"pty write error: {exc}")
                    break
        except ConnectionClosed as exc:
            log_error(f"websocket read error: {exc}")
        finally:
            self.close()
            pump.join(timeout=2.0)

    def close(self) -> None:
        if self.process is not None:
            try:
                self.process.kill()
            except OSError:
                pass
            self.process.wait()
            self.process = None
        if self.master_fd is not None:
            try:
                os.close(self.master_fd)
            except OSError:
                pass
            self.master_fd = None


def handle_connection(websocket: ServerConnection) -> None:
    path = websocket.request.path if websocket.request else ""
    if path.split("?", 1)[0] != WS_PATH:
        websocket.close(code=1008, reason="unknown path")
        return

    peer = websocket.remote_address
    log_error(f"new connection from {peer}")
    bridge = PtyBridge(websocket)
    try:
        bridge.start()
    except OSError as exc:
        log_error(f"failed to start {SHELL}: {exc}")
        websocket.close(code=1011, reason=f"failed to start {SHELL}")
        return
    try:
        bridge.serve()
    finally:
        log_error(f"connection from {peer} closed")


def main() -> None:
    parser = argparse.ArgumentParser(description="WebSocket bash server for wsshell")
    parser.add_argument("--addr", default=":8080", help="Service address, host:port (default: :8080)")
    args = parser.parse_args()

    try:
        host, port = parse_addr(args.addr)
    except ValueError:
        parser.error(f"invalid address: {args.addr}")

    log_error(f"WebSocket bash server starting on {args.addr}")
    log_error(f"Connect with: wsshell --url ws://localhost:{port}{WS_PATH}")
    try:
        with serve(handle_connection, host, port) as server:
            server.serve_forever()
    except OSError as exc:
        log_error(f"listen failed: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
