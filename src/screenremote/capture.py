import io
import logging

import mss
import mss.exception
from PIL import Image

from screenremote.config import AVAILABLE_CODECS


FALLBACK_SCREEN_SIZE = (1920, 1080)
STILL_IMAGE_CODEC = "jpeg"


class Frame:
    """One encoded frame ready to go on the wire."""

    __slots__ = ("codec", "data", "height", "size", "width")

    def __init__(self, data: bytes, width: int, height: int, codec: str = STILL_IMAGE_CODEC):
        self.data = data
        self.width = width
        self.height = height
        self.size = len(data)
        self.codec = codec

    def __repr__(self):
        return f"Frame({self.width}x{self.height}, {self.size} bytes, {self.codec})"


class ScreenCapture:
    """Raw screen grabs through mss.

    mss handles are not shareable between threads and every pacing tick runs on its own
    timer thread, so each call opens a short-lived handle.
    """

    def monitors(self) -> list[dict]:
        with mss.mss() as sct:
            # index 0 is the union of all monitors
            return [dict(m) for m in sct.monitors[1:]]

    def grab(self, monitor_id: int) -> Image.Image:
        with mss.mss() as sct:
            physical = sct.monitors[1:]
            if not physical:
                raise mss.exception.ScreenShotError("No monitors detected")
            if not (0 <= monitor_id < len(physical)):
                logging.warning("[CAPTURE] Monitor %s not found — using primary", monitor_id)
                monitor_id = 0
            shot = sct.grab(physical[monitor_id])
        return Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")


class JpegEncoder:
    def __init__(self, resize: tuple[int, int] | None = None):
        self.resize = resize

    def encode(self, image: Image.Image, quality: int) -> Frame:
        if self.resize:
            image = image.copy()
            image.thumbnail(self.resize)
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=int(quality))
        return Frame(buf.getvalue(), image.width, image.height, STILL_IMAGE_CODEC)


class FramePipeline:
    """Capture + encode for one pacing tick.

    Every advertised codec is served by the JPEG still-image path; the frame reports the
    codec that was actually used.
    """

    def __init__(self, capture=None, encoder=None):
        self.capture = capture or ScreenCapture()
        self.encoder = encoder or JpegEncoder()
        self._warned_codecs = set()

    @classmethod
    def from_config(cls, cfg):
        resize = (cfg.resize_width, cfg.resize_height) if cfg.resize_enabled else None
        return cls(ScreenCapture(), JpegEncoder(resize))

    def grab_frame(self, monitor: int, codec: str, quality: int) -> Frame | None:
        if codec not in AVAILABLE_CODECS and codec not in self._warned_codecs:
            self._warned_codecs.add(codec)
            logging.warning("[CAPTURE] Unknown codec '%s', falling back to JPEG", codec)

        try:
            image = self.capture.grab(monitor)
            return self.encoder.encode(image, quality)
        except Exception as e:
            logging.error("[CAPTURE] Frame capture failed (monitor %s): %s", monitor, e)
            return None


def screen_info(capture) -> dict:
    """Describe the attached monitors for ``screen_info`` replies."""
    try:
        mons = capture.monitors()
    except (mss.exception.ScreenShotError, OSError) as e:
        logging.error("[CAPTURE] Error getting screen info: %s", e)
        mons = []

    if not mons:
        width, height = FALLBACK_SCREEN_SIZE
        return {
            "monitors": [{"id": 0, "name": "Primary Display", "width": width, "height": height, "primary": True}],
            "primaryMonitor": 0,
        }

    return {
        "monitors": [
            {
                "id": i,
                "name": m.get("name") or f"Display {i + 1}",
                "width": m["width"],
                "height": m["height"],
                "primary": i == 0,
            }
            for i, m in enumerate(mons)
        ],
        "primaryMonitor": 0,
    }


def primary_screen_size(info: dict) -> tuple[int, int]:
    for mon in info.get("monitors", []):
        if mon.get("primary"):
            return int(mon["width"]), int(mon["height"])
    return FALLBACK_SCREEN_SIZE
