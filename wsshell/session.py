import sys
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from wsshell.codec import MessageCodec
from wsshell.config import HANDSHAKE_TEMPLATE, SessionConfig
from wsshell.errors import ConfigurationError, EncodingDefect, ReadTimeout, SessionBusy, SessionClosed, WsShellError
from wsshell.filter import PromptEchoFilter, prompt_returned
from wsshell.sender import ChunkedSender
from wsshell.utils import iso_now, json_line, log_error, strip_escapes

Writer = Callable[[str], None]
Dispatcher = Callable[[str, "SessionController"], Dict[str, Any]]


def write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class SessionController:
    """Owns the transport and runs commands on the remote shell one at a time.

    Only the thread calling into the controller reads the transport; the
    download decode worker never touches it.
    """

    def __init__(self, config: SessionConfig, transport, out: Optional[Writer] = None):
        self.config = config
        self.transport = transport
        self.out = out or write_stdout
        self.codec = MessageCodec(config)
        self.sender = ChunkedSender(self.codec, transport.send, config.max_frame_size)
        if self.sender.allowance() <= 0:
            raise ConfigurationError(
                f"max size {config.max_frame_size} too small for template overhead {self.codec.overhead()}"
            )
        self.lock = threading.Lock()
        self.active = ""
        self.closed = False

    @property
    def prompt(self) -> str:
        return self.config.prompt

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.config.log_file:
            return
        data = {"ts": iso_now(), "dir": direction}
        data.update(payload)
        json_line(self.config.log_file, data)

    @contextmanager
    def claim(self, what: str) -> Iterator[None]:
        # the protocol is half-duplex: no pipelining of commands or transfers
        if not self.lock.acquire(blocking=False):
            raise SessionBusy(f"session is busy ({self.active})")
        self.active = what
        try:
            yield
        finally:
            self.active = ""
            self.lock.release()

    def read_text(self) -> str:
        return strip_escapes(self.codec.decode(self.transport.read()))

    def drive(self, command: str, on_output: Writer, echo: Optional[bool] = None) -> str:
        """Read frames until the prompt follows ``command``.

        Returns "done" when the prompt was seen and "timeout" when the read
        timed out first, which is taken to mean no more output is coming.
        Closure and other transport failures propagate.
        """
        expect_echo = self.config.echo if echo is None else echo
        flt = PromptEchoFilter(command, self.prompt, echo=expect_echo, limit=self.config.buffer_limit)
        while not flt.done:
            try:
                text = self.read_text()
            except ReadTimeout as exc:
                self._log_session("SYS", {"event": "read_timeout", "command": command, "error": str(exc)})
                return "timeout"
            emitted = flt.feed(text)
            if emitted:
                on_output(emitted)
        return "done"

    def await_marker(self, marker: str) -> str:
        """Read until ``marker`` appears in the output.

        Returns "ready" for the marker, "prompt" when the shell is back at its
        prompt first and "timeout" when no frame arrived in time.
        """
        window = ""
        keep = self.config.buffer_limit + len(marker)
        while True:
            try:
                text = self.read_text()
            except ReadTimeout:
                return "timeout"
            window = (window + text)[-keep:]
            if marker in window:
                return "ready"
            if prompt_returned(window, self.prompt):
                return "prompt"

    def run_command(self, text: str, display: bool = True) -> Dict[str, Any]:
        captured = []

        def collect(chunk: str) -> None:
            captured.append(chunk)
            if display:
                self.out(chunk)

        with self.claim("command"):
            self._log_session("IN", {"event": "command_sent", "command": text})
            frames = self.sender.send(text)
            status = self.drive(text, collect)
            self._log_session("SYS", {"event": "command_finished", "status": status, "frames": frames})

        if display:
            self.out("\r\n" + self.prompt)
        return {
            "success": True,
            "status": "completed" if status == "done" else "timed_out",
            "output": "".join(captured),
            "frames": frames,
        }

    def send_input(self, text: str) -> int:
        """Send ``text`` as remote input without waiting for its output."""
        with self.claim("input"):
            self._log_session("IN", {"event": "input_sent", "text": text})
            return self.sender.send(text)

    def resize(self, rows: int, cols: int) -> None:
        frame = self.codec.encode_resize(rows, cols)
        if not self.sender.fits(frame):
            raise ConfigurationError("resize frame exceeds the max frame size")
        with self.claim("resize"):
            self.transport.send(frame)

    def handshake(self, prompt: Optional[str] = None) -> Dict[str, Any]:
        """Switch the remote prompt to ``prompt`` (default: the configured one)."""
        new_prompt = prompt or self.prompt
        self.config = self.config.with_prompt(new_prompt)
        command = HANDSHAKE_TEMPLATE.format(prompt=new_prompt)
        result = self.run_command(command)
        if result["status"] != "completed":
            log_error("handshake: prompt not seen before read timeout")
        return result

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._log_session("SYS", {"event": "session_close"})
        self.transport.close()

    def interactive_loop(self, lines: Iterable[str], dispatch: Dispatcher) -> int:
        """Feed input lines to the remote shell until input ends, quit or closure.

        Lines starting with "/" go to ``dispatch``; everything else runs as a
        remote command. Returns a process exit status.
        """
        for raw in lines:
            line = raw.rstrip("\r\n")
            if line.startswith("/"):
                result = dispatch(line, self)
                if result.get("quit"):
                    return 0
                if result.get("closed"):
                    return 1
                self.out("\r\n" + self.prompt)
                continue
            try:
                self.run_command(line)
            except SessionClosed:
                self.out("\nconnection closed\n")
                return 1
            except EncodingDefect:
                raise
            except WsShellError as exc:
                self.out(f"\nsend error: {exc}\n{self.prompt}")
        return 0
