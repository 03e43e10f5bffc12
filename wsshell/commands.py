from typing import Any, Callable, Dict, List, Optional

from wsshell.errors import EncodingDefect, SessionClosed, WsShellError
from wsshell.session import SessionController
from wsshell.transfer import TransferEngine

TRANSFER_USAGE = {
    "/get": "usage: /get <localpath> <remotepath>",
    "/download": "usage: /download <localpath> <remotepath>",
    "/upload": "usage: /upload <localpath> <remotepath>",
}
QUIT_COMMANDS = {"/quit", "/exit"}


def format_result(name: str, result: Dict[str, Any]) -> str:
    if not result.get("success", False):
        if result.get("usage"):
            return result["usage"]
        return f"{name.lstrip('/')} failed: {result.get('error', 'unknown error')}"

    direction = result.get("direction")
    if direction == "download":
        text = f"downloaded: {result['local_path']} <- {result['remote_path']} ({result['size']} bytes"
        if result.get("sha256"):
            text += f", sha256 {result['sha256'][:16]}"
        text += ")"
    elif direction == "upload":
        text = (
            f"uploaded: {result['local_path']} -> {result['remote_path']} "
            f"({result['size']} bytes in {result['chunks']} chunks)"
        )
        if result.get("remote_output"):
            text = result["remote_output"] + "\r\n" + text
    else:
        return result.get("message", "")

    if result.get("status") == "timed_out":
        text += " [prompt not seen before timeout]"
    return text


def transfer_dispatch(name: str, args: List[str], controller: SessionController) -> Dict[str, Any]:
    if len(args) < 2:
        return {"success": False, "usage": TRANSFER_USAGE[name]}
    local, remote = args[0], args[1]
    engine = TransferEngine(controller)
    if name == "/upload":
        return engine.upload(local, remote)
    return engine.download(local, remote)


def handle_command(
    line: str, controller: SessionController, emit: Optional[Callable[[str], None]] = None
) -> Dict[str, Any]:
    """Run one "/"-prefixed line and print its outcome."""
    emit = emit or controller.out
    parts = line.split()
    name = parts[0] if parts else "/"

    if name in QUIT_COMMANDS:
        controller.close()
        return {"success": True, "quit": True}

    try:
        if name in TRANSFER_USAGE:
            result = transfer_dispatch(name, parts[1:], controller)
        else:
            # anything else is remote input with the leading "/" removed
            frames = controller.send_input(line[1:])
            result = {"success": True, "message": "", "frames": frames}
    except SessionClosed as exc:
        result = {"success": False, "error": str(exc), "closed": True}
    except EncodingDefect:
        raise
    except WsShellError as exc:
        result = {"success": False, "error": str(exc)}

    message = format_result(name, result)
    if message:
        emit("\r\n" + message)
    return result
