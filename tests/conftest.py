"""Shared fixtures: an in-memory transport and a config factory."""
import collections
import json

import pytest

from wsshell.config import SessionConfig
from wsshell.errors import ReadTimeout, TransportError
from wsshell.session import SessionController


class FakeTransport:
    """Records sent frames and replays scripted inbound frames.

    An exception instance in the inbound script is raised instead of
    returned. Running out of frames behaves like a read timeout.
    """

    def __init__(self, inbound=None, fail_send=None):
        self.inbound = collections.deque(inbound or [])
        self.sent = []
        self.closed = False
        self.fail_send = fail_send

    def send(self, frame):
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(frame)

    def read(self):
        if not self.inbound:
            raise ReadTimeout("no frame within 0s")
        item = self.inbound.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self, code=1000, reason=""):
        self.closed = True

    def sent_data(self):
        """Payloads of the sent frames, assuming the default JSON template."""
        return [json.loads(frame)["data"] for frame in self.sent]


def make_config(**overrides) -> SessionConfig:
    values = {"url": "ws://localhost:8080/ws", "read_timeout": 0.1}
    values.update(overrides)
    return SessionConfig(**values).validate()


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def output():
    return []


@pytest.fixture
def controller_factory(output):
    def build(inbound=None, fail_send=None, **overrides):
        transport = FakeTransport(inbound, fail_send=fail_send)
        return SessionController(make_config(**overrides), transport, out=output.append)

    return build


@pytest.fixture
def send_error():
    return TransportError("send failed: broken pipe")
