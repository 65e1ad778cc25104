import contextlib
import logging
import math
import threading
import time
from collections import deque

from screenremote import protocol
from screenremote.config import AVAILABLE_CODECS, LATENCY_HISTORY_SIZE, ServerConfig
from screenremote.quality import clamp


STATE_IDLE = "idle"
STATE_STREAMING = "streaming"
STATE_STOPPED = "stopped"
STATE_CLOSED = "closed"

_id_lock = threading.Lock()
_last_id_ms = 0


def _unique_id_ms(created_at: float) -> int:
    """Creation time in ms, bumped when two sessions land in the same millisecond."""
    global _last_id_ms
    with _id_lock:
        ms = max(int(created_at * 1000), _last_id_ms + 1)
        _last_id_ms = ms
        return ms


class Session:
    """Server-side state for one connected controller."""

    def __init__(self, peer_ip: str, cfg: ServerConfig, created_at: float | None = None):
        created_at = time.time() if created_at is None else created_at
        self.id = f"{peer_ip}_{_unique_id_ms(created_at)}"
        self.ip = peer_ip
        self.created_at = created_at
        self.state = STATE_IDLE

        self.fps = cfg.fps
        self.quality = cfg.quality
        self.codec = cfg.codec
        self.monitor = cfg.monitor

        self.min_fps = cfg.min_fps
        self.max_fps = cfg.max_fps
        self.min_quality = cfg.min_quality
        self.max_quality = cfg.max_quality

        self.frame_count = 0
        self.total_bytes = 0
        self.latencies = deque(maxlen=LATENCY_HISTORY_SIZE)
        self.avg_latency = 0.0
        self.last_frame_time = None
        self.pending_timer = None

        # Serializes control messages and pacing ticks; re-entrant because a failing tick
        # closes the session from inside the lock.
        self.lock = threading.RLock()
        # Keeps a frame_meta/payload pair contiguous on the wire.
        self.send_lock = threading.Lock()

    @property
    def streaming(self) -> bool:
        return self.state == STATE_STREAMING

    def set_fps(self, fps) -> None:
        self.fps = clamp(int(fps), self.min_fps, self.max_fps)

    def set_quality(self, quality) -> None:
        self.quality = clamp(int(quality), self.min_quality, self.max_quality)

    def set_max_fps(self, max_fps, ceiling: int) -> None:
        self.max_fps = clamp(int(max_fps), self.min_fps, ceiling)
        self.fps = clamp(self.fps, self.min_fps, self.max_fps)

    def avg_frame_kb(self) -> float:
        if not self.frame_count:
            return 0.0
        return self.total_bytes / self.frame_count / 1024


class ServerRegistry:
    """Process-wide table of live sessions keyed by session id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}

    def add(self, manager, limit: int | None = None) -> bool:
        """Insert ``manager``; refuse (False) when ``limit`` sessions are already live."""
        with self._lock:
            if limit is not None and len(self._sessions) >= limit:
                return False
            self._sessions[manager.session.id] = manager
            return True

    def remove(self, session_id: str):
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str):
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self) -> list:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def close_all(self, reason: str) -> None:
        for manager in self.snapshot():
            with contextlib.suppress(Exception):
                manager.close(reason)


class SessionManager:
    """Drives one session from handshake to teardown.

    The transport must expose ``send(str | bytes)`` and ``close()``; a websocket
    connection satisfies both.
    """

    def __init__(self, session, transport, cfg, registry, pacer, actuator, screen_info_provider):
        self.session = session
        self.transport = transport
        self.cfg = cfg
        self.registry = registry
        self.pacer = pacer
        self.actuator = actuator
        self.screen_info_provider = screen_info_provider
        self._closed = False

        self._handlers = {
            protocol.MSG_START_STREAM: self._handle_start_stream,
            protocol.MSG_STOP_STREAM: self._handle_stop_stream,
            protocol.MSG_UPDATE_SETTINGS: self._handle_update_settings,
            protocol.MSG_MOUSE: self._handle_mouse,
            protocol.MSG_KEYBOARD: self._handle_keyboard,
            protocol.MSG_PING: self._handle_ping,
            protocol.MSG_GET_SCREEN_INFO: self._handle_get_screen_info,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- transport helpers ----

    def send(self, data) -> None:
        with self.session.send_lock:
            self.transport.send(data)

    def send_frame(self, meta: str, payload: bytes) -> None:
        with self.session.send_lock:
            self.transport.send(meta)
            self.transport.send(payload)

    # ---- lifecycle ----

    def open(self) -> bool:
        """Register the session and greet the client.

        Returns False without sending anything when the server is at capacity.
        """
        if not self.registry.add(self, self.cfg.max_clients):
            logging.warning(
                "[SESSION] Rejected %s: %d clients already connected", self.session.ip, self.cfg.max_clients
            )
            return False
        logging.info("[SESSION] Client connected: %s (ID: %s)", self.session.ip, self.session.id)
        self.send(protocol.connected_message(self.session.id, self.cfg.server_info(), AVAILABLE_CODECS))
        self.send(protocol.screen_info_message(self.screen_info_provider()))
        return True

    def close(self, reason: str = "transport closed") -> None:
        """Tear the session down. Safe to call from any thread, any number of times."""
        s = self.session
        with s.lock:
            if self._closed:
                return
            self._closed = True
            self.pacer.cancel(s)
            s.state = STATE_CLOSED
        self.registry.remove(s.id)
        with contextlib.suppress(Exception):
            self.transport.close()
        logging.info(
            "[SESSION] Client disconnected: %s (%s) — %d frames, %.2f KB/frame",
            s.id,
            reason,
            s.frame_count,
            s.avg_frame_kb(),
        )

    # ---- inbound ----

    def on_raw_message(self, raw) -> None:
        if isinstance(raw, (bytes, bytearray)):
            logging.debug("[SESSION] %s: ignoring binary message (%d bytes)", self.session.id, len(raw))
            return
        try:
            msg = protocol.decode_message(raw)
        except protocol.ProtocolError as e:
            logging.warning("[SESSION] %s: dropping malformed message: %s", self.session.id, e)
            return
        self.on_control_message(msg)

    def on_control_message(self, msg: dict) -> None:
        handler = self._handlers.get(msg.get("type"))
        if handler is None:
            logging.debug("[SESSION] %s: ignoring unknown message type %r", self.session.id, msg.get("type"))
            return

        with self.session.lock:
            if self._closed:
                return
            try:
                handler(msg)
            except (TypeError, ValueError, OverflowError) as e:
                logging.warning("[SESSION] %s: bad %s message: %s", self.session.id, msg.get("type"), e)

    def _apply_settings(self, msg: dict) -> None:
        s = self.session
        if msg.get("fps") is not None:
            s.set_fps(msg["fps"])
        if msg.get("quality") is not None:
            s.set_quality(msg["quality"])
        if msg.get("codec"):
            s.codec = str(msg["codec"])
        if msg.get("monitor") is not None:
            s.monitor = int(msg["monitor"])

    def _handle_start_stream(self, msg: dict) -> None:
        s = self.session
        if s.streaming:
            self._handle_update_settings(msg)
            return

        if msg.get("maxFps") is not None:
            s.set_max_fps(msg["maxFps"], self.cfg.max_fps)
        self._apply_settings(msg)
        s.state = STATE_STREAMING
        logging.info(
            "[SESSION] Starting stream for %s — codec=%s quality=%d fps=%d monitor=%d",
            s.id,
            s.codec,
            s.quality,
            s.fps,
            s.monitor,
        )
        self.pacer.start(self)

    def _handle_stop_stream(self, _msg: dict) -> None:
        s = self.session
        self.pacer.cancel(s)
        if s.state == STATE_STREAMING:
            s.state = STATE_STOPPED
            logging.info("[SESSION] Stopping stream for %s", s.id)

    def _handle_update_settings(self, msg: dict) -> None:
        s = self.session
        self._apply_settings(msg)
        logging.info(
            "[SESSION] Updated settings for %s: codec=%s quality=%d fps=%d monitor=%d",
            s.id,
            s.codec,
            s.quality,
            s.fps,
            s.monitor,
        )

    def _handle_mouse(self, msg: dict) -> None:
        try:
            self.actuator.mouse(msg.get("data") or {})
        except Exception as e:
            logging.error("[INPUT] %s: mouse control error: %s", self.session.id, e)

    def _handle_keyboard(self, msg: dict) -> None:
        try:
            self.actuator.keyboard(msg.get("data") or {})
        except Exception as e:
            logging.error("[INPUT] %s: keyboard control error: %s", self.session.id, e)

    def _handle_ping(self, msg: dict) -> None:
        rtt = msg.get("rtt")
        if isinstance(rtt, (int, float)) and not isinstance(rtt, bool) and math.isfinite(rtt) and rtt >= 0:
            self.pacer.estimator.record_sample(self.session, rtt)
        self.send(protocol.pong_message(msg.get("timestamp")))

    def _handle_get_screen_info(self, _msg: dict) -> None:
        self.send(protocol.screen_info_message(self.screen_info_provider()))
