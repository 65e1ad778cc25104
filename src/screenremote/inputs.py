import logging


try:
    from pynput.keyboard import Controller as KeyCtl
    from pynput.keyboard import Key
    from pynput.mouse import Button
    from pynput.mouse import Controller as MouseCtl

    HAVE_PYNPUT = True
except Exception:
    HAVE_PYNPUT = False


BUTTON_NAMES = ("left", "middle", "right")

# Client key names (lower-cased) -> pynput Key attribute names
KEY_NAMES = {
    "enter": "enter",
    "return": "enter",
    "backspace": "backspace",
    "tab": "tab",
    "escape": "esc",
    "esc": "esc",
    "space": "space",
    "delete": "delete",
    "insert": "insert",
    "home": "home",
    "end": "end",
    "pageup": "page_up",
    "page_up": "page_up",
    "pagedown": "page_down",
    "page_down": "page_down",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "shift": "shift",
    "control": "ctrl",
    "ctrl": "ctrl",
    "alt": "alt",
    "command": "cmd",
    "cmd": "cmd",
    "super": "cmd",
    "capslock": "caps_lock",
    "caps_lock": "caps_lock",
    "printscreen": "print_screen",
    "audio_mute": "media_volume_mute",
    "audio_vol_down": "media_volume_down",
    "audio_vol_up": "media_volume_up",
    "audio_play": "media_play_pause",
    "audio_next": "media_next",
    "audio_prev": "media_previous",
    **{f"f{i}": f"f{i}" for i in range(1, 13)},
}


def resolve_key(name):
    """Map a client key name to something pynput can press.

    Single characters pass through unchanged; named keys resolve to ``Key`` members.
    """
    if not isinstance(name, str) or not name:
        raise ValueError(f"Invalid key name: {name!r}")
    if len(name) == 1:
        return name
    attr = KEY_NAMES.get(name.lower())
    if attr is None or not hasattr(Key, attr):
        raise ValueError(f"Unknown key name: {name!r}")
    return getattr(Key, attr)


def _button(name):
    name = name or "left"
    if name not in BUTTON_NAMES:
        raise ValueError(f"Unknown mouse button: {name!r}")
    return getattr(Button, name)


class InputActuator:
    """Performs the OS-level mouse and keyboard actions a controller asks for.

    ``screen_size`` is the primary screen ``(width, height)`` used to scale normalized
    pointer coordinates.
    """

    def __init__(self, screen_size=(1920, 1080), mouse=None, keyboard=None):
        if (mouse is None or keyboard is None) and not HAVE_PYNPUT:
            raise RuntimeError("pynput not available; input injection disabled")
        self.screen_size = screen_size
        self._mouse = mouse if mouse is not None else MouseCtl()
        self._keys = keyboard if keyboard is not None else KeyCtl()

    def mouse(self, data: dict) -> None:
        action = data.get("action")

        if action == "move":
            if data.get("normalized"):
                width, height = self.screen_size
                self._mouse.position = (round(float(data["x"]) * width), round(float(data["y"]) * height))
            else:
                self._mouse.move(int(data.get("dx", 0)), int(data.get("dy", 0)))
        elif action == "click":
            self._mouse.click(_button(data.get("button")), 2 if data.get("double") else 1)
        elif action == "scroll":
            dx = round(data.get("dx") or 0)
            dy = round(data.get("dy") or 0)
            if dx or dy:
                self._mouse.scroll(dx, dy)
        elif action == "drag_start":
            self._mouse.press(_button(data.get("button")))
        elif action == "drag_end":
            self._mouse.release(_button(data.get("button")))
        else:
            logging.debug("[INPUT] Ignoring mouse action %r", action)

    def keyboard(self, data: dict) -> None:
        action = data.get("action")

        if action == "press":
            key = resolve_key(data.get("key"))
            modifiers = [resolve_key(m) for m in data.get("modifiers") or []]
            with self._keys.pressed(*modifiers):
                self._keys.tap(key)
        elif action == "down":
            self._keys.press(resolve_key(data.get("key")))
        elif action == "up":
            self._keys.release(resolve_key(data.get("key")))
        elif action == "type":
            text = data.get("text")
            if not isinstance(text, str):
                raise ValueError("keyboard type action needs a 'text' string")
            self._keys.type(text)
        else:
            logging.debug("[INPUT] Ignoring keyboard action %r", action)


class DisabledInputActuator:
    """Stand-in when no input backend could be loaded; every request is logged and dropped."""

    def mouse(self, data: dict) -> None:
        logging.debug("[INPUT] Input injection unavailable — dropping mouse %r", data.get("action"))

    def keyboard(self, data: dict) -> None:
        logging.debug("[INPUT] Input injection unavailable — dropping keyboard %r", data.get("action"))
