"""JSON message helpers for the session (WebSocket) and discovery (UDP) protocols."""

import json
import time


# Client -> server
MSG_START_STREAM = "start_stream"
MSG_STOP_STREAM = "stop_stream"
MSG_UPDATE_SETTINGS = "update_settings"
MSG_MOUSE = "mouse"
MSG_KEYBOARD = "keyboard"
MSG_PING = "ping"
MSG_GET_SCREEN_INFO = "get_screen_info"

# Server -> client
MSG_CONNECTED = "connected"
MSG_HEARTBEAT = "heartbeat"
MSG_FRAME_META = "frame_meta"
MSG_SCREEN_INFO = "screen_info"
MSG_PONG = "pong"

# Discovery
MSG_DISCOVER = "discover"
MSG_SERVER_INFO = "server_info"
DISCOVERY_SERVICE = "screen_remote"


class ProtocolError(ValueError):
    """Raised for payloads that are not a JSON object with a string ``type``."""


def now_ms() -> int:
    return int(time.time() * 1000)


def _reject_constant(name):
    raise ProtocolError(f"non-finite number {name} not allowed")


def decode_message(raw) -> dict:
    """Decode one text (or UTF-8 bytes) message into a dict carrying a ``type`` key."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"not UTF-8: {e}") from e
    try:
        msg = json.loads(raw, parse_constant=_reject_constant)
    except (TypeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    except RecursionError as e:
        raise ProtocolError("JSON nested too deeply") from e
    if not isinstance(msg, dict):
        raise ProtocolError("message is not a JSON object")
    if not isinstance(msg.get("type"), str):
        raise ProtocolError("message has no 'type'")
    return msg


def encode_message(msg_type: str, **fields) -> str:
    return json.dumps({"type": msg_type, **fields})


def connected_message(client_id: str, server: dict, codecs) -> str:
    return encode_message(
        MSG_CONNECTED,
        message=f"Welcome to {server.get('name', 'Screen Remote Server')} v{server.get('version', '')}",
        server=server,
        clientId=client_id,
        availableCodecs=list(codecs),
    )


def heartbeat_message(network_quality: str, avg_latency: float) -> str:
    return encode_message(MSG_HEARTBEAT, networkQuality=network_quality, avgLatency=avg_latency)


def frame_meta_message(frame, quality: int, fps: int, network_quality: str) -> str:
    return encode_message(
        MSG_FRAME_META,
        width=frame.width,
        height=frame.height,
        size=frame.size,
        codec=frame.codec,
        timestamp=now_ms(),
        quality=quality,
        fps=fps,
        networkQuality=network_quality,
    )


def screen_info_message(info: dict) -> str:
    return encode_message(
        MSG_SCREEN_INFO,
        monitors=info.get("monitors", []),
        primaryMonitor=info.get("primaryMonitor", 0),
    )


def pong_message(timestamp) -> str:
    return encode_message(MSG_PONG, timestamp=timestamp)


def server_info_message(ip: str, hostname: str, port: int, version: str, capabilities) -> bytes:
    return encode_message(
        MSG_SERVER_INFO,
        service=DISCOVERY_SERVICE,
        ip=ip,
        hostname=hostname,
        port=port,
        version=version,
        capabilities=list(capabilities),
    ).encode("utf-8")
