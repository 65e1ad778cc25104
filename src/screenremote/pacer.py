import logging
import threading
import time

from websockets.exceptions import ConnectionClosed

from screenremote import protocol
from screenremote.config import ADAPT_EVERY_N_FRAMES, STATS_EVERY_N_FRAMES


class PacingTimer:
    """A single scheduled pacing tick.

    The callback receives the timer itself so a tick can tell whether it is still the
    session's current one.
    """

    def __init__(self, delay: float, callback):
        self._timer = threading.Timer(delay, callback, args=(self,))
        self._timer.daemon = True

    def start(self):
        self._timer.start()

    def cancel(self):
        self._timer.cancel()


class FramePacer:
    """Self-rescheduling capture → encode → send loop for streaming sessions.

    Each tick subtracts its own capture/encode time from the frame interval so the
    output cadence tracks the session's target fps.
    """

    def __init__(self, pipeline, estimator, controller, clock=time.monotonic, timer_factory=PacingTimer):
        self.pipeline = pipeline
        self.estimator = estimator
        self.controller = controller
        self.clock = clock
        self.timer_factory = timer_factory

    def start(self, manager) -> None:
        s = manager.session
        with s.lock:
            # A gap spent stopped is not network latency.
            s.last_frame_time = None
            self.schedule(manager, 0.0)

    def schedule(self, manager, delay: float) -> None:
        """Arm the next tick ``delay`` seconds from now, replacing any pending one."""
        s = manager.session
        with s.lock:
            if not s.streaming:
                return
            self.cancel(s)
            timer = self.timer_factory(delay, lambda t: self.tick(manager, t))
            s.pending_timer = timer
            timer.start()

    def cancel(self, session) -> None:
        with session.lock:
            timer = session.pending_timer
            session.pending_timer = None
            if timer is not None:
                timer.cancel()

    def tick(self, manager, timer=None) -> None:
        s = manager.session
        with s.lock:
            if timer is not None and s.pending_timer is not timer:
                # Cancelled or superseded while waiting for the lock.
                return
            s.pending_timer = None
            if not s.streaming:
                return

            start = self.clock()
            try:
                frame = self.pipeline.grab_frame(s.monitor, s.codec, s.quality)
            except Exception as e:
                logging.error("[PACER] %s: capture pipeline error: %s", s.id, e)
                frame = None

            if frame is not None and not self._emit(manager, frame):
                return

            if s.streaming:
                elapsed_ms = (self.clock() - start) * 1000
                delay_ms = max(0.0, (1000.0 / s.fps) - elapsed_ms)
                self.schedule(manager, delay_ms / 1000)

    def _emit(self, manager, frame) -> bool:
        """Send one frame pair and update session stats. False if the session went away."""
        s = manager.session
        meta = protocol.frame_meta_message(frame, s.quality, s.fps, self.estimator.classify(s))
        try:
            manager.send_frame(meta, frame.data)
        except (ConnectionClosed, OSError) as e:
            logging.info("[PACER] %s: frame send failed (%s) — closing session", s.id, e)
            manager.close("send failed")
            return False

        s.frame_count += 1
        s.total_bytes += frame.size

        now = self.clock()
        if s.last_frame_time is not None:
            self.estimator.record_sample(s, (now - s.last_frame_time) * 1000)
        s.last_frame_time = now

        if s.frame_count % ADAPT_EVERY_N_FRAMES == 0:
            self.controller.adjust(s, self.estimator.classify(s))

        if s.frame_count % STATS_EVERY_N_FRAMES == 0:
            logging.info(
                "[PACER] Client %s: %d frames, avg %.2f KB/frame, quality: %s, latency: %.0fms",
                s.id,
                s.frame_count,
                s.avg_frame_kb(),
                self.estimator.classify(s),
                s.avg_latency,
            )
        return True
