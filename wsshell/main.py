import argparse
import io
import os
import shutil
import signal
import sys
import threading

from wsshell.commands import handle_command
from wsshell.config import CLOSE_TIMEOUT, ClientConfig, parse_newline
from wsshell.errors import ConfigurationError, TransportError, WsShellError
from wsshell.session import SessionController
from wsshell.transport import WebSocketTransport
from wsshell.utils import log_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Interactive remote shell over a websocket, with base64 file transfer (/get, /upload, /download)"
    )
    parser.add_argument("--url", help="WebSocket endpoint, ws:// or wss:// (overrides WSSHELL_URL env)")
    parser.add_argument("--up", help="Upstream frame template, $data is replaced by the payload")
    parser.add_argument("--data", help="Downstream data template used when a frame has no string data field")
    parser.add_argument("--resize", help="Resize frame template with $rows and $cols")
    parser.add_argument("--newline", help="New line separator: \\r (default) or \\n")
    parser.add_argument("--max", type=int, help="Maximum payload size per message in bytes (default: 4159)")
    parser.add_argument("--prompt", help="Prompt installed by the handshake and used to detect completion")
    parser.add_argument("--read-timeout", type=float, help="Seconds to wait for a frame before a command counts as finished (0 waits forever)")
    parser.add_argument("--buffer-limit", type=int, help="Characters kept for prompt/echo matching")
    parser.add_argument("--raw", action="store_true", help="Do not JSON-escape data substituted into the upstream template")
    parser.add_argument("--no-echo", action="store_true", help="The remote does not echo commands back")
    parser.add_argument("--no-handshake", action="store_true", help="Do not reconfigure the remote prompt after connecting")
    parser.add_argument("--send-size", action="store_true", help="Send the local terminal size after connecting")
    parser.add_argument("--log-file", help="Append a JSON-lines session log to this file")
    parser.add_argument("--debug", action="store_true", help="Print every frame to stderr")
    return parser


def apply_args(config: ClientConfig, args: argparse.Namespace) -> ClientConfig:
    if args.url: config.URL = args.url
    if args.up: config.UPSTREAM_TEMPLATE = args.up
    if args.data: config.DOWNSTREAM_TEMPLATE = args.data
    if args.resize: config.RESIZE_TEMPLATE = args.resize
    if args.newline: config.NEWLINE = parse_newline(args.newline)
    if args.max is not None: config.MAX_FRAME_SIZE = args.max
    if args.prompt: config.PROMPT = args.prompt
    if args.read_timeout is not None: config.READ_TIMEOUT = args.read_timeout
    if args.buffer_limit is not None: config.BUFFER_LIMIT = args.buffer_limit
    if args.log_file: config.LOG_FILE = args.log_file
    if args.raw: config.JSON_ESCAPE = False
    if args.no_echo: config.ECHO = False
    if args.no_handshake: config.HANDSHAKE = False
    if args.debug: config.DEBUG = True
    return config


def shutdown(controller: SessionController, timeout: float = CLOSE_TIMEOUT) -> None:
    """Best-effort close frame, then exit without unwinding.

    The close runs on its own thread: the interrupted main thread may hold
    the connection's send lock, so closing inline could block forever.
    """

    def _close():
        controller.out("\nclosing")
        controller.close()

    closer = threading.Thread(target=_close, daemon=True)
    closer.start()
    closer.join(timeout=timeout)
    os._exit(0)


def install_signal_handlers(controller: SessionController) -> None:
    def _shutdown(signum, frame):
        shutdown(controller)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _shutdown)


def main() -> None:
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")

    def write(text: str) -> None:
        stdout.write(text)
        stdout.flush()

    # Pre-load from environment
    client_config = ClientConfig()
    client_config.load_from_env()

    parser = build_parser()
    args = parser.parse_args()
    apply_args(client_config, args)

    if not client_config.URL:
        parser.error("--url is required (via --url or WSSHELL_URL env)")
    try:
        session_config = client_config.freeze()
    except ConfigurationError as exc:
        parser.error(str(exc))

    try:
        transport = WebSocketTransport.open(session_config)
    except TransportError as exc:
        log_error(str(exc))
        sys.exit(1)

    try:
        controller = SessionController(session_config, transport, out=write)
    except ConfigurationError as exc:
        transport.close()
        parser.error(str(exc))

    write("[connected]")
    install_signal_handlers(controller)

    try:
        if args.send_size:
            size = shutil.get_terminal_size()
            controller.resize(size.lines, size.columns)
        if session_config.handshake:
            controller.handshake()
        else:
            write("\r\n" + controller.prompt)
    except WsShellError as exc:
        log_error(f"session setup failed: {exc}")
        controller.close()
        sys.exit(1)

    try:
        status = controller.interactive_loop(stdin, handle_command)
    except OSError as exc:
        write(f"\nstdin error: {exc}\n")
        status = 1

    controller.close()
    sys.exit(status)


if __name__ == "__main__":
    main()
