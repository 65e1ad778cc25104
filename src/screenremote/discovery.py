import contextlib
import logging
import socket
import threading

import psutil

from screenremote import protocol


DISCOVERY_RECV_SIZE = 2048
DISCOVERY_POLL_SECS = 0.5

VIRTUAL_IFACE_MARKERS = (
    "virtualbox",
    "vmware",
    "hyper-v",
    "vethernet",
    "vboxnet",
    "radmin",
    "vpn",
    "tun",
    "tap",
)


def get_local_ip() -> str:
    """First non-loopback IPv4 address on a physical-looking interface."""
    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        logging.debug("[DISCOVERY] Interface enumeration failed: %s", e)
        return "127.0.0.1"

    for name, addrs in interfaces.items():
        normalized = name.lower()
        if any(marker in normalized for marker in VIRTUAL_IFACE_MARKERS):
            continue
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return "127.0.0.1"


def parse_discovery_request(data: bytes) -> bool:
    """True if ``data`` is a well-formed ``discover`` request."""
    try:
        msg = protocol.decode_message(data)
    except protocol.ProtocolError:
        return False
    return msg["type"] == protocol.MSG_DISCOVER


class DiscoveryResponder(threading.Thread):
    """Answers LAN broadcast ``discover`` datagrams with this server's identity.

    Stateless: nothing is kept per request, so any request rate is tolerated.
    """

    def __init__(self, cfg, ip: str | None = None, hostname: str | None = None):
        super().__init__(name="discovery", daemon=True)
        self.cfg = cfg
        self.ip = ip or get_local_ip()
        self.hostname = hostname or socket.gethostname()
        self.sock = None
        self._running = True

    def bind(self) -> socket.socket:
        """Open the UDP socket. Raises OSError if the port cannot be bound."""
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            s.bind((self.cfg.bind_address, self.cfg.discovery_port))
            s.settimeout(DISCOVERY_POLL_SECS)
        except OSError:
            s.close()
            raise
        self.sock = s
        return s

    @property
    def port(self) -> int | None:
        return self.sock.getsockname()[1] if self.sock else None

    def announcement(self) -> bytes:
        return protocol.server_info_message(
            self.ip,
            self.hostname,
            self.cfg.port,
            self.cfg.version,
            self.cfg.capabilities,
        )

    def handle_datagram(self, data: bytes, addr) -> bytes | None:
        """Reply payload for one datagram, or None when it should be dropped."""
        if not parse_discovery_request(data):
            logging.debug("[DISCOVERY] Dropping malformed/unknown datagram from %s", addr)
            return None
        logging.info("[DISCOVERY] Discovery request from %s:%d", addr[0], addr[1])
        return self.announcement()

    def run(self):
        if self.sock is None:
            try:
                self.bind()
            except OSError as e:
                logging.error("[DISCOVERY] Failed to bind UDP %d: %s", self.cfg.discovery_port, e)
                return

        logging.info("[DISCOVERY] UDP discovery listening on %s:%d", self.cfg.bind_address, self.port)
        while self._running:
            try:
                data, addr = self.sock.recvfrom(DISCOVERY_RECV_SIZE)
            except TimeoutError:
                continue
            except OSError:
                break

            try:
                reply = self.handle_datagram(data, addr)
                if reply is not None:
                    self.sock.sendto(reply, addr)
                    logging.debug("[DISCOVERY] Sent discovery response to %s:%d", addr[0], addr[1])
            except Exception as e:
                logging.warning("[DISCOVERY] Error answering %s: %s", addr, e)

        with contextlib.suppress(Exception):
            self.sock.close()

    def stop(self):
        self._running = False
        with contextlib.suppress(Exception):
            if self.sock:
                self.sock.close()
