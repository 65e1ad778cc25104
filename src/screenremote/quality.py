import logging

from screenremote.config import (
    LATENCY_FAIR_MS,
    LATENCY_GOOD_MS,
    LATENCY_POOR_MS,
)


QUALITY_EXCELLENT = "excellent"
QUALITY_GOOD = "good"
QUALITY_FAIR = "fair"
QUALITY_POOR = "poor"
QUALITY_UNKNOWN = "unknown"

# label -> (quality delta, fps delta)
ADAPT_STEPS = {
    QUALITY_EXCELLENT: (5, 1),
    QUALITY_GOOD: (0, 0),
    QUALITY_FAIR: (-10, -2),
    QUALITY_POOR: (-20, -2),
    QUALITY_UNKNOWN: (0, 0),
}


def clamp(value, low, high):
    return max(low, min(value, high))


class NetworkQualityEstimator:
    """Classifies a session's recent latency samples.

    The history lives on the session (a bounded deque); the estimator only reads and
    appends to it, so two sessions never share state.
    """

    def __init__(self, good_ms=LATENCY_GOOD_MS, fair_ms=LATENCY_FAIR_MS, poor_ms=LATENCY_POOR_MS, enabled=True):
        self.good_ms = good_ms
        self.fair_ms = fair_ms
        self.poor_ms = poor_ms
        self.enabled = enabled

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.latency_good_ms, cfg.latency_fair_ms, cfg.latency_poor_ms, cfg.network_monitoring)

    def record_sample(self, session, latency_ms: float) -> None:
        # deque(maxlen=...) evicts the oldest sample on overflow
        session.latencies.append(float(latency_ms))
        session.avg_latency = self.average(session)

    def average(self, session) -> float:
        if not session.latencies:
            return 0.0
        return sum(session.latencies) / len(session.latencies)

    def classify(self, session) -> str:
        if not self.enabled or not session.latencies:
            return QUALITY_UNKNOWN

        avg = self.average(session)
        if avg < self.good_ms:
            return QUALITY_EXCELLENT
        if avg < self.fair_ms:
            return QUALITY_GOOD
        if avg < self.poor_ms:
            return QUALITY_FAIR
        return QUALITY_POOR


class AdaptiveController:
    """Nudges a session's quality and fps targets toward what the network can carry."""

    def __init__(self, enabled=True):
        self.enabled = enabled

    def adjust(self, session, label: str) -> tuple[int, int]:
        """Apply the step for ``label`` and return the new ``(quality, fps)``.

        Unknown labels (including ``unknown`` itself) leave the targets alone.
        """
        if not self.enabled:
            return session.quality, session.fps

        dq, dfps = ADAPT_STEPS.get(label, (0, 0))
        old = (session.quality, session.fps)
        session.quality = clamp(session.quality + dq, session.min_quality, session.max_quality)
        session.fps = clamp(session.fps + dfps, session.min_fps, session.max_fps)

        if (session.quality, session.fps) != old:
            logging.debug(
                "[ADAPT] %s: network %s — quality %d→%d, fps %d→%d",
                session.id,
                label,
                old[0],
                session.quality,
                old[1],
                session.fps,
            )
        return session.quality, session.fps
