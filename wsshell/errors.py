class WsShellError(Exception):
    """Base class for every error raised by the shell client."""


class ConfigurationError(WsShellError):
    """Malformed template or unusable size settings. Fatal at startup."""


class EncodingDefect(WsShellError):
    """A validated template failed to render; indicates a programming defect."""


class TransportError(WsShellError):
    """The websocket failed while sending or reading a frame."""


class ReadTimeout(TransportError):
    """No frame arrived within the read timeout. Treated as end of output."""


class SessionClosed(TransportError):
    """The remote side closed the connection normally."""

    def __init__(self, message: str = "connection closed", code: int = 1000):
        super().__init__(message)
        self.code = code


class SessionBusy(WsShellError):
    """Another command or transfer already owns the session."""


class LocalIOError(WsShellError):
    pass


class DecodeError(WsShellError):
    pass
