import json
import re
import string
from collections import defaultdict
from typing import Any, Optional, Pattern, Union

from wsshell.config import SessionConfig
from wsshell.errors import EncodingDefect

Frame = Union[str, bytes]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _compile_extractor(template: str) -> Optional[Pattern]:
    """Turn a downstream template like ``OUT:$data;`` into a matching regex.

    Returns None when the template has no $data placeholder, in which case
    non-JSON frames are passed through as they are.
    """
    tmpl = string.Template(template)
    parts = []
    pos = 0
    has_data = False
    for match in tmpl.pattern.finditer(template):
        parts.append(re.escape(template[pos:match.start()]))
        name = match.group("named") or match.group("braced")
        if match.group("escaped") is not None:
            parts.append(re.escape(tmpl.delimiter))
        elif name == "data" and not has_data:
            parts.append("(?P<data>.*)")
            has_data = True
        else:
            parts.append(".*?")
        pos = match.end()
    parts.append(re.escape(template[pos:]))
    if not has_data:
        return None
    return re.compile("".join(parts), re.DOTALL)


class MessageCodec:
    """Wraps outgoing data in the upstream template and unwraps inbound frames."""

    def __init__(self, config: SessionConfig):
        self.newline = config.newline
        self.json_escape = config.json_escape
        self._upstream = string.Template(config.upstream_template)
        self._downstream = string.Template(config.downstream_template)
        self._resize = string.Template(config.resize_template)
        self._extractor = _compile_extractor(config.downstream_template)

    def escape(self, data: str) -> str:
        if not self.json_escape:
            return data
        return json.dumps(data, ensure_ascii=False)[1:-1]

    def encoded_size(self, data: str) -> int:
        """Bytes that ``data`` occupies once substituted into a frame."""
        return len(self.escape(data).encode("utf-8"))

    def overhead(self, terminated: bool = False) -> int:
        """Frame bytes contributed by the template itself (plus the newline when terminated)."""
        return len(self.encode("", terminate=terminated).encode("utf-8"))

    def _render(self, tmpl: string.Template, **fields: Any) -> str:
        try:
            return tmpl.substitute(**fields)
        except (KeyError, ValueError) as exc:
            raise EncodingDefect(f"template render failed after validation: {exc}") from exc

    def encode(self, data: str, terminate: bool = False) -> str:
        if terminate:
            data += self.newline
        return self._render(self._upstream, data=self.escape(data))

    def encode_resize(self, rows: int, cols: int) -> str:
        return self._render(self._resize, rows=int(rows), cols=int(cols))

    def decode(self, frame: Frame) -> str:
        text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
        try:
            record = json.loads(text)
        except ValueError:
            record = None

        if isinstance(record, dict):
            data = record.get("data")
            if isinstance(data, str):
                return data
            fields = defaultdict(str, {key: _as_text(value) for key, value in record.items()})
            return self._downstream.substitute(fields)

        if self._extractor is not None:
            match = self._extractor.fullmatch(text)
            if match:
                return match.group("data")
        return text
