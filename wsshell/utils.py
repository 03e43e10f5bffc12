import hashlib
import json
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from wsshell.config import ANSI_ESCAPE


def log_error(message: str) -> None:
    print(f"[wsshell] {message}", file=sys.stderr, flush=True)


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def resolve_local_path(path: str) -> str:
    if not path:
        return ""
    expanded = os.path.expanduser(os.path.expandvars(path.strip()))
    return os.path.abspath(expanded)


def strip_escapes(text: str) -> str:
    """Remove ANSI/VT control sequences of the form ESC [ params letter.

    Removal is repeated until nothing matches, so sequences spliced together
    by an earlier removal are caught too and the result is a fixed point.
    """
    if not text:
        return ""
    while True:
        cleaned, count = ANSI_ESCAPE.subn("", text)
        if count == 0:
            return cleaned
        text = cleaned


def trim_newlines(text: str) -> str:
    return text.strip("\r\n")


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for block in iter(lambda: handle.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def json_line(path: Optional[str], payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")
