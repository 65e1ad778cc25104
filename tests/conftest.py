"""Pytest configuration and shared fixtures."""

import json
from unittest.mock import Mock

import pytest

from screenremote.capture import Frame
from screenremote.config import ServerConfig
from screenremote.pacer import FramePacer
from screenremote.quality import AdaptiveController, NetworkQualityEstimator
from screenremote.session import Session, ServerRegistry, SessionManager


SCREEN_INFO = {
    "monitors": [{"id": 0, "name": "Display 1", "width": 1920, "height": 1080, "primary": True}],
    "primaryMonitor": 0,
}


class FakeTransport:
    """Records everything sent; optionally raises on send."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.fail_with = None

    def send(self, data):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)

    def close(self, *_args):
        self.closed = True

    def messages(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def types(self):
        return [("binary" if isinstance(m, bytes) else json.loads(m)["type"]) for m in self.sent]


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback(self)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def outstanding(self):
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    @property
    def last(self):
        return self.timers[-1]


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakePipeline:
    """Returns a fixed-size frame; ``encode_cost`` advances the fake clock per grab."""

    def __init__(self, clock=None, encode_cost=0.0, payload=b"\xff\xd8jpeg-bytes\xff\xd9"):
        self.clock = clock
        self.encode_cost = encode_cost
        self.payload = payload
        self.calls = []
        self.result = "frame"

    def grab_frame(self, monitor, codec, quality):
        self.calls.append((monitor, codec, quality))
        if self.clock is not None:
            self.clock.advance(self.encode_cost)
        if self.result == "frame":
            return Frame(self.payload, 640, 360)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def cfg():
    return ServerConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def pipeline(clock):
    return FakePipeline(clock)


@pytest.fixture
def estimator(cfg):
    return NetworkQualityEstimator.from_config(cfg)


@pytest.fixture
def pacer(pipeline, estimator, clock, timers):
    return FramePacer(pipeline, estimator, AdaptiveController(), clock=clock, timer_factory=timers)


@pytest.fixture
def registry():
    return ServerRegistry()


@pytest.fixture
def actuator():
    return Mock()


@pytest.fixture
def make_manager(cfg, registry, pacer, actuator):
    """Build an opened SessionManager over a FakeTransport."""

    def _make(peer_ip="192.168.1.50", open_session=True):
        transport = FakeTransport()
        manager = SessionManager(
            Session(peer_ip, cfg),
            transport,
            cfg,
            registry,
            pacer,
            actuator,
            lambda: SCREEN_INFO,
        )
        if open_session:
            assert manager.open() is True
            transport.sent.clear()
        return manager, transport

    return _make


@pytest.fixture
def manager(make_manager):
    mgr, _transport = make_manager()
    return mgr


@pytest.fixture
def transport(manager):
    return manager.transport
