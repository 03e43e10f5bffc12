"""Command completion detection.

A command is finished when the remote shell prints its prompt again. The
remote also echoes the command text back before any real output, so the
filter first swallows that echo (ECHOING), then passes output through while
watching for the prompt (STREAMING), and stops at the prompt (DONE).

Transitions are pure: ``step(state, fragment)`` returns the next state and
the text to surface. ``PromptEchoFilter`` is a thin stateful wrapper used by
the read loops.
"""
import enum
import re
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from wsshell.config import DEFAULT_BUFFER_LIMIT
from wsshell.utils import trim_newlines

LINE_BREAK = re.compile(r"\r\n|\n")
NEWLINE_CHARS = "\r\n"


class Phase(enum.Enum):
    ECHOING = "echoing"
    STREAMING = "streaming"
    DONE = "done"


@dataclass(frozen=True)
class FilterState:
    phase: Phase
    command: str
    prompt: str
    limit: int = DEFAULT_BUFFER_LIMIT
    # ECHOING: sliding window of text seen so far.
    # STREAMING: tail held back because it may be the start of the prompt.
    buffer: str = ""
    started: bool = False


def initial_state(command: str, prompt: str, echo: bool = True, limit: int = DEFAULT_BUFFER_LIMIT) -> FilterState:
    phase = Phase.ECHOING if echo else Phase.STREAMING
    return FilterState(phase=phase, command=command, prompt=prompt, limit=limit)


def is_new_output(fragment: str, echo_pending: bool) -> bool:
    """Tell real output apart from a lone prompt redraw.

    Once the echo is gone everything is output. While the echo is still
    pending, text only counts as output when it carries more than its first
    line; that first line is taken to be the (possibly mangled) echo.
    Known to misjudge output that arrives before the echo.
    """
    if not echo_pending:
        return True
    trimmed = trim_newlines(fragment)
    first = LINE_BREAK.split(trimmed, 1)[0]
    return len(trimmed) > len(first)


def prompt_returned(text: str, prompt: str) -> bool:
    """True when ``text`` ends with the prompt on a line of its own.

    A prompt-like tail on the first line is still part of the echo
    ("cat > f" cut after "> ").
    """
    trimmed = trim_newlines(text)
    if not trimmed.endswith(prompt):
        return False
    head = trimmed[: len(trimmed) - len(prompt)]
    return not head or LINE_BREAK.search(head) is not None


def _after_echo(window: str, command: str) -> Optional[str]:
    # text following the first echo of command that ends a line, or None
    if not command:
        return window
    start = 0
    while True:
        idx = window.find(command, start)
        if idx < 0:
            return None
        tail = window[idx + len(command):]
        if not tail or tail[0] in NEWLINE_CHARS:
            return tail
        start = idx + 1


def _holdback(pending: str, prompt: str) -> int:
    keep = 0
    for size in range(min(len(prompt) - 1, len(pending)), 0, -1):
        if pending.endswith(prompt[:size]):
            keep = size
            break
    idx = len(pending) - keep
    while idx > 0 and pending[idx - 1] in NEWLINE_CHARS:
        idx -= 1
    return len(pending) - idx


def _drop_first_line(text: str) -> str:
    parts = LINE_BREAK.split(text.lstrip(NEWLINE_CHARS), 1)
    return parts[1] if len(parts) > 1 else ""


def _step_echoing(state: FilterState, fragment: str) -> Tuple[FilterState, str]:
    window = state.buffer + fragment
    rest = _after_echo(window, state.command)
    if rest is None:
        # the echo can come back mangled (readline wraps long lines with " \r");
        # its first line is taken to be the echo from here on
        if prompt_returned(window, state.prompt):
            trimmed = trim_newlines(window)
            head = trimmed[: len(trimmed) - len(state.prompt)]
            return replace(state, phase=Phase.DONE, buffer=""), trim_newlines(_drop_first_line(head))
        if not is_new_output(window, echo_pending=True):
            return replace(state, buffer=window[-state.limit:]), ""
        rest = _drop_first_line(window)
    streaming = replace(state, phase=Phase.STREAMING, buffer="", started=False)
    return _step_streaming(streaming, rest)


def _step_streaming(state: FilterState, fragment: str) -> Tuple[FilterState, str]:
    pending = state.buffer + fragment
    if not state.started:
        pending = pending.lstrip(NEWLINE_CHARS)

    trimmed = pending.rstrip(NEWLINE_CHARS)
    if trimmed.endswith(state.prompt):
        body = trimmed[: len(trimmed) - len(state.prompt)].rstrip(NEWLINE_CHARS)
        return replace(state, phase=Phase.DONE, buffer=""), body

    split = len(pending) - _holdback(pending, state.prompt)
    emitted, held = pending[:split], pending[split:]
    if len(held) > state.limit:
        overflow = len(held) - state.limit
        emitted, held = emitted + held[:overflow], held[overflow:]
    return replace(state, buffer=held, started=state.started or bool(emitted)), emitted


def step(state: FilterState, fragment: str) -> Tuple[FilterState, str]:
    if state.phase is Phase.DONE or not fragment:
        return state, ""
    if state.phase is Phase.ECHOING:
        return _step_echoing(state, fragment)
    return _step_streaming(state, fragment)


class PromptEchoFilter:
    def __init__(self, command: str, prompt: str, echo: bool = True, limit: int = DEFAULT_BUFFER_LIMIT):
        self.state = initial_state(command, prompt, echo=echo, limit=limit)

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def done(self) -> bool:
        return self.state.phase is Phase.DONE

    def feed(self, fragment: str) -> str:
        self.state, emitted = step(self.state, fragment)
        return emitted
