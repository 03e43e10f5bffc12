from typing import Optional, Union

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidURI
from websockets.sync.client import ClientConnection, connect

from wsshell.config import CLOSE_TIMEOUT, CONNECT_TIMEOUT, SessionConfig
from wsshell.errors import ReadTimeout, SessionClosed, TransportError
from wsshell.utils import iso_now, json_line, log_error

Frame = Union[str, bytes]


def _close_code(exc: ConnectionClosed) -> int:
    frame = exc.rcvd or exc.sent
    return frame.code if frame is not None else 1006


class WebSocketTransport:
    """One websocket connection. Each call sends or receives exactly one frame."""

    def __init__(
        self,
        connection: ClientConnection,
        read_timeout: Optional[float] = None,
        debug: bool = False,
        log_path: Optional[str] = None,
    ):
        self.connection = connection
        self.read_timeout = read_timeout
        self.debug = debug
        self.log_path = log_path

    @classmethod
    def open(cls, config: SessionConfig) -> "WebSocketTransport":
        try:
            connection = connect(
                config.url,
                open_timeout=CONNECT_TIMEOUT,
                close_timeout=CLOSE_TIMEOUT,
                max_size=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise TransportError(f"dial ws: {exc}") from exc
        transport = cls(connection, read_timeout=config.read_timeout, debug=config.debug, log_path=config.log_file)
        transport._log("SYS", {"event": "connected", "url": config.url})
        return transport

    def _log(self, direction: str, payload: dict) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction}
        data.update(payload)
        json_line(self.log_path, data)

    def send(self, frame: str) -> None:
        if self.debug:
            log_error(f"-> {frame!r}")
        try:
            self.connection.send(frame)
        except ConnectionClosedOK as exc:
            raise SessionClosed(f"connection closed: {exc}", code=_close_code(exc)) from exc
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"send failed: {exc}") from exc
        self._log("IN", {"event": "frame", "frame": frame})

    def read(self) -> Frame:
        try:
            message = self.connection.recv(timeout=self.read_timeout)
        except TimeoutError as exc:
            raise ReadTimeout(f"no frame within {self.read_timeout}s") from exc
        except ConnectionClosedOK as exc:
            self._log("SYS", {"event": "closed", "code": _close_code(exc)})
            raise SessionClosed(code=_close_code(exc)) from exc
        except (ConnectionClosed, OSError) as exc:
            self._log("SYS", {"event": "read_error", "error": str(exc)})
            raise TransportError(f"read error: {exc}") from exc
        if self.debug:
            log_error(f"<- {message!r}")
        self._log("OUT", {"event": "frame", "frame": message if isinstance(message, str) else message.hex()})
        return message

    def close(self, code: int = 1000, reason: str = "") -> None:
        try:
            self.connection.close(code=code, reason=reason)
        except Exception as exc:
            log_error(f"close failed: {exc}")
        self._log("SYS", {"event": "close_sent", "code": code})
