import os
import re
import string
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from wsshell.errors import ConfigurationError

# ========= Static config =========
CONNECT_TIMEOUT = 10
CLOSE_TIMEOUT = 2.0

DEFAULT_MAX_FRAME_SIZE = 4159
DEFAULT_BUFFER_LIMIT = 1024
DEFAULT_READ_TIMEOUT = 60.0
MAX_READ_TIMEOUT = 3600.0
DEFAULT_QUEUE_DEPTH = 64

DEFAULT_PROMPT = "> "
DEFAULT_NEWLINE = "\r"
NEWLINES = ("\r", "\n")

DEFAULT_UPSTREAM_TEMPLATE = '{"operation":"stdin","data":"$data"}'
DEFAULT_DOWNSTREAM_TEMPLATE = "$data"
DEFAULT_RESIZE_TEMPLATE = '{"operation":"resize","rows":$rows,"cols":$cols}'

HANDSHAKE_TEMPLATE = "export PS1='{prompt}' PS2='';unset LS_COLORS; export TERM=xterm-mono"

NEWLINE_ALIASES = {"\\r": "\r", "\\n": "\n", "cr": "\r", "lf": "\n"}


def parse_newline(value: str) -> str:
    # accept the escaped spellings used on command lines
    return NEWLINE_ALIASES.get(value.lower(), value)


# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1b\[(?:[0-9]*;)*[0-9]*[a-zA-Z]")


def template_names(text: str) -> List[str]:
    tmpl = string.Template(text)
    names = []
    for match in tmpl.pattern.finditer(text):
        name = match.group("named") or match.group("braced")
        if name and name not in names:
            names.append(name)
    return names


def _check_template(name: str, text: str, fields: Optional[Tuple[str, ...]] = None) -> None:
    # fields=None accepts any placeholder (downstream templates name JSON keys)
    mapping = defaultdict(str) if fields is None else dict.fromkeys(fields, "")
    try:
        string.Template(text).substitute(mapping)
    except ValueError as exc:
        raise ConfigurationError(f"malformed {name} template: {exc}") from exc
    except KeyError as exc:
        raise ConfigurationError(f"{name} template references unknown field ${exc.args[0]}") from exc
    if fields:
        missing = [key for key in fields if key not in template_names(text)]
        if missing:
            raise ConfigurationError(f"{name} template must reference ${', $'.join(missing)}")


@dataclass(frozen=True)
class SessionConfig:
    """Immutable per-session settings, built once at connect time."""

    url: str
    upstream_template: str = DEFAULT_UPSTREAM_TEMPLATE
    downstream_template: str = DEFAULT_DOWNSTREAM_TEMPLATE
    resize_template: str = DEFAULT_RESIZE_TEMPLATE
    newline: str = DEFAULT_NEWLINE
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    prompt: str = DEFAULT_PROMPT
    echo: bool = True
    buffer_limit: int = DEFAULT_BUFFER_LIMIT
    read_timeout: Optional[float] = DEFAULT_READ_TIMEOUT
    json_escape: bool = True
    handshake: bool = True
    debug: bool = False
    log_file: Optional[str] = None

    def with_prompt(self, prompt: str) -> "SessionConfig":
        return replace(self, prompt=prompt)

    def validate(self) -> "SessionConfig":
        scheme = urlparse(self.url).scheme if self.url else ""
        if scheme not in ("ws", "wss"):
            raise ConfigurationError(f"invalid websocket url: {self.url!r} (expected ws:// or wss://)")
        if self.newline not in NEWLINES:
            raise ConfigurationError("newline must be \\r or \\n")
        if self.max_frame_size <= 0:
            raise ConfigurationError("max frame size must be positive")
        if self.buffer_limit <= 0:
            raise ConfigurationError("buffer limit must be positive")
        if not self.prompt:
            raise ConfigurationError("prompt must not be empty")
        if len(self.prompt) > self.buffer_limit:
            raise ConfigurationError("prompt is longer than the output buffer limit")
        _check_template("upstream", self.upstream_template, fields=("data",))
        _check_template("downstream", self.downstream_template)
        _check_template("resize", self.resize_template, fields=("rows", "cols"))
        return self


# ========= Runtime Configuration =========
class ClientConfig:
    def __init__(self):
        self.URL: str = ""
        self.UPSTREAM_TEMPLATE: str = DEFAULT_UPSTREAM_TEMPLATE
        self.DOWNSTREAM_TEMPLATE: str = DEFAULT_DOWNSTREAM_TEMPLATE
        self.RESIZE_TEMPLATE: str = DEFAULT_RESIZE_TEMPLATE
        self.NEWLINE: str = DEFAULT_NEWLINE
        self.MAX_FRAME_SIZE: int = DEFAULT_MAX_FRAME_SIZE
        self.PROMPT: str = DEFAULT_PROMPT
        self.BUFFER_LIMIT: int = DEFAULT_BUFFER_LIMIT
        self.READ_TIMEOUT: Optional[float] = DEFAULT_READ_TIMEOUT
        self.ECHO: bool = True
        self.JSON_ESCAPE: bool = True
        self.HANDSHAKE: bool = True
        self.DEBUG: bool = False
        self.LOG_FILE: Optional[str] = None

    def load_from_env(self):
        self.URL = os.environ.get("WSSHELL_URL", self.URL)
        self.UPSTREAM_TEMPLATE = os.environ.get("WSSHELL_UP", self.UPSTREAM_TEMPLATE)
        self.DOWNSTREAM_TEMPLATE = os.environ.get("WSSHELL_DATA", self.DOWNSTREAM_TEMPLATE)
        self.RESIZE_TEMPLATE = os.environ.get("WSSHELL_RESIZE", self.RESIZE_TEMPLATE)
        self.PROMPT = os.environ.get("WSSHELL_PROMPT", self.PROMPT)
        self.LOG_FILE = os.environ.get("WSSHELL_LOG_FILE", self.LOG_FILE)

        newline = os.environ.get("WSSHELL_NEWLINE")
        if newline is not None:
            self.NEWLINE = parse_newline(newline)

        max_size = os.environ.get("WSSHELL_MAX")
        if max_size:
            self.MAX_FRAME_SIZE = int(max_size)

        buffer_limit = os.environ.get("WSSHELL_BUFFER_LIMIT")
        if buffer_limit:
            self.BUFFER_LIMIT = int(buffer_limit)

        read_timeout = os.environ.get("WSSHELL_READ_TIMEOUT")
        if read_timeout:
            self.READ_TIMEOUT = float(read_timeout)

        echo_env = os.environ.get("WSSHELL_ECHO")
        if echo_env is not None:
            self.ECHO = echo_env.lower() in ("true", "1", "yes")

        debug_env = os.environ.get("WSSHELL_DEBUG")
        if debug_env is not None:
            self.DEBUG = debug_env.lower() in ("true", "1", "yes")

    def freeze(self) -> SessionConfig:
        read_timeout = self.READ_TIMEOUT
        if read_timeout is not None and read_timeout <= 0:
            read_timeout = None
        elif read_timeout is not None:
            read_timeout = min(read_timeout, MAX_READ_TIMEOUT)
        return SessionConfig(
            url=self.URL,
            upstream_template=self.UPSTREAM_TEMPLATE,
            downstream_template=self.DOWNSTREAM_TEMPLATE,
            resize_template=self.RESIZE_TEMPLATE,
            newline=self.NEWLINE,
            max_frame_size=self.MAX_FRAME_SIZE,
            prompt=self.PROMPT,
            echo=self.ECHO,
            buffer_limit=self.BUFFER_LIMIT,
            read_timeout=read_timeout,
            json_escape=self.JSON_ESCAPE,
            handshake=self.HANDSHAKE,
            debug=self.DEBUG,
            log_file=self.LOG_FILE,
        ).validate()

