"""Shared fixtures for KD3005P tests."""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import korad
from korad import KD3005P, Identity, ProtocolViolation


IDN_REPLY = "KORAD KD3005P V6.6 SN:03379314"


class FakeTransport:
    """Scripted stand-in for SerialTransport.

    ``replies`` are handed out one per read_line(); running out behaves like
    a closed channel. Writes and delays are recorded in ``events`` in the
    order they happen.
    """

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.written = []
        self.events = []
        self.closed = False

    @property
    def is_open(self):
        return not self.closed

    def write_line(self, data):
        self.written.append(data.decode("ascii"))
        self.events.append(("write", data.decode("ascii")))

    def read_line(self):
        if not self.replies:
            raise ProtocolViolation("no data received")
        return self.replies.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def mock_psu(fake_transport, monkeypatch):
    """A KD3005P wired to a FakeTransport, with delays recorded not slept."""
    def fake_delay(seconds):
        fake_transport.events.append(("delay", seconds))

    monkeypatch.setattr(korad, "delay", fake_delay)

    psu = KD3005P("/dev/fake")
    psu._transport = fake_transport
    return psu


@pytest.fixture
def identified_psu(mock_psu):
    """mock_psu with the identity handshake already done."""
    mock_psu._identity = Identity("KORAD", "KD3005P", "V6.6", "SN:03379314")
    return mock_psu
