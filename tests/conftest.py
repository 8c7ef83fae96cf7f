import json

import pytest

from club_server import ServerConfig, SyncServer


class FakeWS:
    """Stands in for a websockets server connection; records outgoing frames."""

    def __init__(self, incoming=(), addr=("127.0.0.1", 50000)):
        self.remote_address = addr
        self.incoming = list(incoming)
        self.sent = []
        self.closed_with = None

    async def send(self, frame):
        self.sent.append(json.loads(frame))

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for raw in self.incoming:
            if self.closed_with is not None:
                return
            yield raw

    def events(self, name):
        return [m["data"] for m in self.sent if m["type"] == name]

    def last(self, name):
        found = self.events(name)
        assert found, f"no '{name}' frame sent"
        return found[-1]

    def clear(self):
        self.sent.clear()


class FakeClock:
    def __init__(self, start=1_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


def frame(event, data):
    return json.dumps({"type": event, "data": data})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def server(clock):
    return SyncServer(ServerConfig(), clock=clock)
