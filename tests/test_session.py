"""Tests for the per-client session state machine and the session registry."""

import json
import threading

import pytest

from screenremote.config import AVAILABLE_CODECS, ServerConfig
from screenremote.session import (
    STATE_CLOSED,
    STATE_IDLE,
    STATE_STOPPED,
    STATE_STREAMING,
    Session,
    ServerRegistry,
)


class TestSessionDefaults:
    def test_new_session_is_idle_with_config_defaults(self, cfg):
        s = Session("192.168.1.5", cfg)
        assert s.state == STATE_IDLE
        assert (s.fps, s.quality, s.codec, s.monitor) == (10, 70, "jpeg", 0)
        assert (s.frame_count, s.total_bytes) == (0, 0)
        assert s.pending_timer is None
        assert s.latencies.maxlen == 30

    def test_id_derived_from_peer_and_time(self, cfg):
        s = Session("192.168.1.5", cfg, created_at=1_700_000_000.123)
        assert s.id.startswith("192.168.1.5_")

    def test_ids_unique_within_same_millisecond(self, cfg):
        ids = {Session("10.0.0.1", cfg, created_at=1_800_000_000.0).id for _ in range(5)}
        assert len(ids) == 5

    def test_setters_clamp_to_bounds(self, cfg):
        s = Session("10.0.0.1", cfg)
        s.set_fps(500)
        s.set_quality(5)
        assert s.fps == cfg.max_fps
        assert s.quality == cfg.min_quality


class TestSessionOpen:
    def test_open_sends_connected_then_screen_info(self, make_manager, registry):
        manager, transport = make_manager(open_session=False)
        assert manager.open() is True

        msgs = transport.messages()
        assert [m["type"] for m in msgs] == ["connected", "screen_info"]
        connected = msgs[0]
        assert connected["clientId"] == manager.session.id
        assert connected["availableCodecs"] == AVAILABLE_CODECS
        assert connected["server"]["version"] == "2.0.0"
        assert msgs[1]["primaryMonitor"] == 0
        assert registry.get(manager.session.id) is manager

    def test_open_refused_at_capacity(self, cfg, make_manager, registry):
        cfg.max_clients = 1
        make_manager()
        second, transport = make_manager(open_session=False)
        assert second.open() is False
        assert transport.sent == []
        assert len(registry) == 1


class TestStartStream:
    def test_start_transitions_and_arms_one_timer(self, manager, timers):
        manager.on_control_message({"type": "start_stream", "fps": 10, "quality": 70})
        s = manager.session
        assert s.state == STATE_STREAMING
        assert len(timers.outstanding()) == 1
        assert s.pending_timer is timers.last
        assert timers.last.delay == 0.0

    def test_start_applies_overrides(self, manager):
        manager.on_control_message(
            {"type": "start_stream", "fps": 20, "quality": 80, "codec": "vp9", "monitor": 1, "maxFps": 25}
        )
        s = manager.session
        assert (s.fps, s.quality, s.codec, s.monitor, s.max_fps) == (20, 80, "vp9", 1, 25)

    def test_absent_fields_keep_previous_values(self, manager):
        manager.on_control_message({"type": "start_stream", "fps": 20, "quality": 80, "monitor": 1})
        manager.on_control_message({"type": "stop_stream"})
        manager.on_control_message({"type": "start_stream"})
        s = manager.session
        assert (s.fps, s.quality, s.monitor) == (20, 80, 1)

    def test_monitor_zero_is_an_override(self, manager):
        manager.on_control_message({"type": "start_stream", "monitor": 2})
        manager.on_control_message({"type": "stop_stream"})
        manager.on_control_message({"type": "start_stream", "monitor": 0})
        assert manager.session.monitor == 0

    def test_out_of_range_values_are_clamped(self, manager, cfg):
        manager.on_control_message({"type": "start_stream", "fps": 999, "quality": 100})
        s = manager.session
        assert s.fps == cfg.max_fps
        assert s.quality == cfg.max_quality

    def test_max_fps_cannot_exceed_configured_ceiling(self, manager, cfg):
        manager.on_control_message({"type": "start_stream", "maxFps": 120, "fps": 60})
        assert manager.session.max_fps == cfg.max_fps
        assert manager.session.fps == cfg.max_fps

    def test_lower_max_fps_caps_fps(self, manager):
        manager.on_control_message({"type": "start_stream", "maxFps": 8, "fps": 20})
        assert manager.session.fps == 8

    def test_start_while_streaming_updates_in_place(self, manager, timers):
        manager.on_control_message({"type": "start_stream", "fps": 10})
        first_timer = manager.session.pending_timer
        manager.on_control_message({"type": "start_stream", "fps": 15, "quality": 60})

        s = manager.session
        assert s.pending_timer is first_timer
        assert len(timers.timers) == 1
        assert (s.fps, s.quality) == (15, 60)

    def test_bad_field_type_is_logged_not_raised(self, manager):
        manager.on_control_message({"type": "start_stream", "fps": "fast"})
        assert manager.session.state == STATE_IDLE


class TestStopStream:
    def test_stop_cancels_timer(self, manager, timers):
        manager.on_control_message({"type": "start_stream"})
        timer = manager.session.pending_timer
        manager.on_control_message({"type": "stop_stream"})

        assert manager.session.state == STATE_STOPPED
        assert manager.session.pending_timer is None
        assert timer.cancelled
        assert timers.outstanding() == []

    def test_stop_is_idempotent(self, manager, timers):
        manager.on_control_message({"type": "start_stream"})
        manager.on_control_message({"type": "stop_stream"})
        manager.on_control_message({"type": "stop_stream"})
        assert manager.session.state == STATE_STOPPED
        assert timers.outstanding() == []

    def test_stop_while_idle_stays_idle(self, manager):
        manager.on_control_message({"type": "stop_stream"})
        assert manager.session.state == STATE_IDLE

    def test_restart_after_stop(self, manager, timers):
        manager.on_control_message({"type": "start_stream"})
        manager.on_control_message({"type": "stop_stream"})
        manager.on_control_message({"type": "start_stream"})
        assert manager.session.state == STATE_STREAMING
        assert len(timers.outstanding()) == 1

    def test_at_most_one_timer_for_any_start_stop_sequence(self, manager, timers):
        sequence = ["start_stream", "start_stream", "stop_stream", "start_stream", "stop_stream", "stop_stream"]
        sequence += ["start_stream", "start_stream", "start_stream"]
        for kind in sequence:
            manager.on_control_message({"type": kind})
            outstanding = timers.outstanding()
            assert len(outstanding) <= 1
            if manager.session.state == STATE_STREAMING:
                assert outstanding == [manager.session.pending_timer]
            else:
                assert outstanding == []


class TestUpdateSettings:
    def test_update_does_not_change_state(self, manager):
        manager.on_control_message({"type": "update_settings", "fps": 20, "quality": 50, "codec": "h264"})
        s = manager.session
        assert s.state == STATE_IDLE
        assert (s.fps, s.quality, s.codec) == (20, 50, "h264")

    def test_update_clamps_fps_to_max(self, manager, cfg):
        manager.on_control_message({"type": "update_settings", "fps": 240})
        assert manager.session.fps == cfg.max_fps

    def test_update_monitor(self, manager):
        manager.on_control_message({"type": "update_settings", "monitor": 1})
        assert manager.session.monitor == 1


class TestInputAndQueries:
    def test_mouse_delegated_verbatim(self, manager, actuator):
        data = {"action": "move", "dx": 3, "dy": -2}
        manager.on_control_message({"type": "mouse", "data": data})
        actuator.mouse.assert_called_once_with(data)

    def test_keyboard_delegated_verbatim(self, manager, actuator):
        data = {"action": "type", "text": "hello"}
        manager.on_control_message({"type": "keyboard", "data": data})
        actuator.keyboard.assert_called_once_with(data)

    def test_actuator_failure_does_not_end_session(self, manager, actuator):
        actuator.keyboard.side_effect = ValueError("Unknown key name: 'hyperkey'")
        actuator.mouse.side_effect = RuntimeError("display gone")
        manager.on_control_message({"type": "keyboard", "data": {"action": "press", "key": "hyperkey"}})
        manager.on_control_message({"type": "mouse", "data": {"action": "click"}})
        assert not manager.closed
        assert manager.session.state == STATE_IDLE

    def test_ping_echoes_timestamp_verbatim(self, manager, transport):
        manager.on_control_message({"type": "ping", "timestamp": 1712345678901})
        assert transport.messages() == [{"type": "pong", "timestamp": 1712345678901}]

    def test_ping_with_rtt_records_sample(self, manager):
        manager.on_control_message({"type": "ping", "timestamp": 1, "rtt": 42})
        assert list(manager.session.latencies) == [42.0]

    def test_ping_with_bogus_rtt_is_not_recorded(self, manager):
        manager.on_control_message({"type": "ping", "timestamp": 1, "rtt": "fast"})
        manager.on_control_message({"type": "ping", "timestamp": 2, "rtt": -5})
        manager.on_control_message({"type": "ping", "timestamp": 3, "rtt": float("inf")})
        assert list(manager.session.latencies) == []

    def test_get_screen_info(self, manager, transport):
        manager.on_control_message({"type": "get_screen_info"})
        (msg,) = transport.messages()
        assert msg["type"] == "screen_info"
        assert msg["monitors"][0]["width"] == 1920

    def test_unknown_type_ignored(self, manager, transport):
        manager.on_control_message({"type": "teleport", "where": "mars"})
        assert transport.sent == []
        assert manager.session.state == STATE_IDLE


class TestRawMessages:
    def test_valid_json_dispatched(self, manager, transport):
        manager.on_raw_message(json.dumps({"type": "ping", "timestamp": "abc"}))
        assert transport.messages() == [{"type": "pong", "timestamp": "abc"}]

    @pytest.mark.parametrize("raw", ["{not json", "[]", '"ping"', '{"timestamp": 1}', '{"type": 5}'])
    def test_malformed_dropped_and_connection_kept(self, manager, transport, raw):
        manager.on_raw_message(raw)
        assert transport.sent == []
        assert not transport.closed
        assert not manager.closed

    def test_binary_from_client_ignored(self, manager, transport):
        manager.on_raw_message(b"\x00\x01")
        assert transport.sent == []

    @pytest.mark.parametrize(
        "raw",
        [
            '{"type": "update_settings", "fps": Infinity}',
            '{"type": "update_settings", "quality": NaN}',
            '{"type": "start_stream", "quality": 1e400}',
            '{"type": "start_stream", "maxFps": -1e400}',
            "[" * 100000,
            '{"type": "ping", "nested": ' + "[" * 100000,
        ],
    )
    def test_hostile_payloads_keep_session_open(self, manager, transport, registry, raw):
        manager.on_raw_message(raw)
        assert not manager.closed
        assert not transport.closed
        assert registry.get(manager.session.id) is manager
        assert manager.session.state == STATE_IDLE
        assert (manager.session.fps, manager.session.quality) == (10, 70)

    def test_session_still_serves_after_hostile_payload(self, manager, transport):
        manager.on_raw_message('{"type": "start_stream", "quality": 1e400}')
        manager.on_raw_message('{"type": "ping", "timestamp": 3}')
        assert transport.messages() == [{"type": "pong", "timestamp": 3}]


class TestClose:
    def test_close_cancels_timer_and_deregisters(self, manager, registry, timers, transport):
        manager.on_control_message({"type": "start_stream"})
        timer = manager.session.pending_timer
        manager.close("test")

        assert manager.session.state == STATE_CLOSED
        assert manager.session.pending_timer is None
        assert timer.cancelled
        assert registry.get(manager.session.id) is None
        assert transport.closed

    def test_close_from_any_state(self, make_manager):
        idle, _ = make_manager()
        stopped, _ = make_manager()
        stopped.on_control_message({"type": "start_stream"})
        stopped.on_control_message({"type": "stop_stream"})
        for mgr in (idle, stopped):
            mgr.close()
            assert mgr.session.state == STATE_CLOSED

    def test_close_runs_once_under_concurrency(self, manager, registry, monkeypatch):
        removals = []
        original_remove = registry.remove
        monkeypatch.setattr(registry, "remove", lambda sid: removals.append(sid) or original_remove(sid))

        threads = [threading.Thread(target=manager.close, args=("race",)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert removals == [manager.session.id]

    def test_messages_after_close_ignored(self, manager, transport, timers):
        manager.close()
        manager.on_control_message({"type": "start_stream"})
        manager.on_control_message({"type": "ping", "timestamp": 1})
        assert manager.session.state == STATE_CLOSED
        assert timers.timers == []
        assert transport.sent == []


class TestServerRegistry:
    class _Stub:
        def __init__(self, sid):
            self.session = type("S", (), {"id": sid})()
            self.closed_with = None

        def close(self, reason):
            self.closed_with = reason

    def test_add_get_remove(self):
        reg = ServerRegistry()
        stub = self._Stub("a")
        assert reg.add(stub) is True
        assert reg.get("a") is stub
        assert len(reg) == 1
        assert reg.remove("a") is stub
        assert reg.remove("a") is None
        assert len(reg) == 0

    def test_limit_enforced(self):
        reg = ServerRegistry()
        assert reg.add(self._Stub("a"), limit=2)
        assert reg.add(self._Stub("b"), limit=2)
        assert not reg.add(self._Stub("c"), limit=2)
        assert len(reg) == 2

    def test_close_all_fans_out(self):
        reg = ServerRegistry()
        stubs = [self._Stub(str(i)) for i in range(3)]
        for s in stubs:
            reg.add(s)
        reg.close_all("shutdown")
        assert all(s.closed_with == "shutdown" for s in stubs)

    def test_concurrent_adds_respect_limit(self):
        reg = ServerRegistry()
        results = []

        def worker(i):
            results.append(reg.add(self._Stub(f"s{i}"), limit=5))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert results.count(True) == 5
        assert len(reg) == 5


def test_session_uses_config_bounds():
    cfg = ServerConfig(min_quality=20, max_quality=60, quality=50)
    s = Session("10.1.1.1", cfg)
    assert (s.min_quality, s.max_quality) == (20, 60)
