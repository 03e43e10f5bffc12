from typing import Callable, Iterator

from wsshell.codec import MessageCodec
from wsshell.errors import ConfigurationError


def split_payload(data: str, allowed: int, measure: Callable[[str], int]) -> Iterator[str]:
    """Yield consecutive pieces of ``data`` whose encoded size is at most ``allowed``."""
    if allowed <= 0:
        raise ConfigurationError("max size too small for template overhead")
    if measure(data) == len(data):
        # nothing grows when encoded, plain slicing is exact
        for offset in range(0, len(data), allowed):
            yield data[offset:offset + allowed]
        return

    piece = []
    used = 0
    for ch in data:
        cost = measure(ch)
        if cost > allowed:
            raise ConfigurationError(f"max size too small to carry {ch!r}")
        if used + cost > allowed:
            yield "".join(piece)
            piece, used = [], 0
        piece.append(ch)
        used += cost
    if piece:
        yield "".join(piece)


class ChunkedSender:
    def __init__(self, codec: MessageCodec, send_frame: Callable[[str], None], max_frame_size: int):
        self.codec = codec
        self.send_frame = send_frame
        self.max_frame_size = max_frame_size

    def allowance(self) -> int:
        return self.max_frame_size - self.codec.overhead()

    def fits(self, frame: str) -> bool:
        return len(frame.encode("utf-8")) <= self.max_frame_size

    def send(self, payload: str, terminate: bool = True) -> int:
        """Send ``payload`` (plus the newline when ``terminate``) and return the frame count.

        A payload that fits goes out as one frame. Otherwise it is split into
        pieces of ``max_frame_size - overhead`` bytes; the newline travels with
        the last piece. The first send error aborts the remaining pieces.
        """
        allowed = self.allowance()
        if allowed <= 0:
            raise ConfigurationError(
                f"max size {self.max_frame_size} too small for template overhead {self.codec.overhead()}"
            )

        frame = self.codec.encode(payload, terminate=terminate)
        if self.fits(frame):
            self.send_frame(frame)
            return 1

        data = payload + self.codec.newline if terminate else payload
        sent = 0
        for chunk in split_payload(data, allowed, self.codec.encoded_size):
            self.send_frame(self.codec.encode(chunk))
            sent += 1
        return sent
