#!/usr/bin/env python3
import argparse
import contextlib
import logging
import os
import signal
import socket
import sys
import threading
import time

import psutil
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from screenremote import protocol
from screenremote.capture import FramePipeline, ScreenCapture, primary_screen_size, screen_info
from screenremote.config import METRICS_LOG_INTERVAL_SECS, build_config
from screenremote.discovery import DiscoveryResponder
from screenremote.inputs import DisabledInputActuator, InputActuator
from screenremote.pacer import FramePacer
from screenremote.quality import AdaptiveController, NetworkQualityEstimator
from screenremote.session import Session, ServerRegistry, SessionManager


WS_CLOSE_TRY_AGAIN_LATER = 1013
WS_MAX_MESSAGE_SIZE = 1_048_576
MAIN_LOOP_POLL_SECS = 0.2
HEARTBEAT_POLL_SECS = 1.0


class HostState:
    def __init__(self):
        self.cfg = None
        self.registry = ServerRegistry()
        self.pipeline = None
        self.estimator = None
        self.controller = None
        self.pacer = None
        self.actuator = None
        self.screen_info = None
        self.ws_server = None
        self.discovery = None
        self.should_terminate = False
        self.shutdown_lock = threading.Lock()
        self.shutdown_reason = None
        self.started_at = 0.0
        self.last_metric_log = 0.0


host_state = HostState()


def _make_actuator(info):
    try:
        return InputActuator(primary_screen_size(info))
    except Exception as e:
        logging.warning("[INPUT] %s — remote input disabled.", e)
        return DisabledInputActuator()


def build_runtime(cfg, pipeline=None, actuator=None, capture=None, timer_factory=None):
    """Wire the collaborators for a server run into ``host_state``."""
    host_state.cfg = cfg
    host_state.registry = ServerRegistry()
    host_state.should_terminate = False
    host_state.shutdown_reason = None
    host_state.screen_info = screen_info(capture or ScreenCapture())
    host_state.pipeline = pipeline or FramePipeline.from_config(cfg)
    host_state.estimator = NetworkQualityEstimator.from_config(cfg)
    host_state.controller = AdaptiveController(cfg.adaptive_enabled)
    pacer_kwargs = {"timer_factory": timer_factory} if timer_factory else {}
    host_state.pacer = FramePacer(host_state.pipeline, host_state.estimator, host_state.controller, **pacer_kwargs)
    host_state.actuator = actuator or _make_actuator(host_state.screen_info)
    return host_state


def connection_handler(websocket):
    """Runs on the websocket server's per-connection thread for the connection's lifetime."""
    remote = websocket.remote_address
    peer_ip = remote[0] if remote else "unknown"

    session = Session(peer_ip, host_state.cfg)
    manager = SessionManager(
        session,
        websocket,
        host_state.cfg,
        host_state.registry,
        host_state.pacer,
        host_state.actuator,
        lambda: host_state.screen_info,
    )

    if not manager.open():
        with contextlib.suppress(Exception):
            websocket.close(WS_CLOSE_TRY_AGAIN_LATER, "server busy")
        return

    reason = "transport closed"
    try:
        for message in websocket:
            manager.on_raw_message(message)
    except ConnectionClosed as e:
        reason = f"connection lost ({e})"
    except Exception as e:
        logging.error("[SESSION] %s: connection error: %s", session.id, e)
        reason = f"error: {e}"
    finally:
        manager.close(reason)


def send_heartbeat(manager) -> None:
    s = manager.session
    with s.lock:
        label, avg_latency = host_state.estimator.classify(s), s.avg_latency
    msg = protocol.heartbeat_message(label, avg_latency)
    try:
        manager.send(msg)
    except (ConnectionClosed, OSError) as e:
        logging.info("[HEARTBEAT] %s unreachable (%s) — closing session", s.id, e)
        manager.close("heartbeat failed")


def broadcast_heartbeats():
    for manager in host_state.registry.snapshot():
        try:
            send_heartbeat(manager)
        except Exception as e:
            logging.debug(f"Heartbeat to {manager.session.id} failed: {e}")


def log_performance_metrics(now=None):
    """Log a process health line at most once per METRICS_LOG_INTERVAL_SECS."""
    now = time.time() if now is None else now
    if now - host_state.last_metric_log < METRICS_LOG_INTERVAL_SECS:
        return
    host_state.last_metric_log = now

    sessions = host_state.registry.snapshot()
    if not sessions:
        return

    streaming = sum(1 for m in sessions if m.session.streaming)
    frames = sum(m.session.frame_count for m in sessions)
    try:
        ps = psutil.Process(os.getpid())
        cpu = ps.cpu_percent(interval=None)
        mem_mb = ps.memory_info().rss / (1024 * 1024)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        cpu, mem_mb = 0.0, 0.0

    logging.info(
        f"[PERF] Uptime: {now - host_state.started_at:.1f}s | Sessions: {len(sessions)} "
        f"| Streaming: {streaming} | Frames: {frames} | CPU: {cpu:.1f}% | Mem: {mem_mb:.0f}MB"
    )


def heartbeat_manager():
    last_beat = time.time()
    while not host_state.should_terminate:
        time.sleep(HEARTBEAT_POLL_SECS)
        now = time.time()

        try:
            log_performance_metrics(now)
        except Exception as e:
            logging.debug(f"Performance metrics logging failed: {e}")

        if now - last_beat < host_state.cfg.heartbeat_interval:
            continue
        last_beat = now
        broadcast_heartbeats()


def trigger_shutdown(reason: str):
    with host_state.shutdown_lock:
        if host_state.should_terminate:
            return
        host_state.should_terminate = True
        host_state.shutdown_reason = reason
        logging.critical("FATAL/STOP: %s -- closing sessions and listeners.", reason)


def stop_all():
    host_state.should_terminate = True
    host_state.registry.close_all("server shutdown")

    if host_state.ws_server:
        with contextlib.suppress(Exception):
            host_state.ws_server.shutdown()
        host_state.ws_server = None
    if host_state.discovery:
        host_state.discovery.stop()
        host_state.discovery = None


def _signal_handler(signum, _frame):
    logging.info("Signal %s received, shutting down…", signum)
    with host_state.shutdown_lock:
        host_state.should_terminate = True


def _initialize_sockets(cfg):
    """Bind the discovery and websocket listeners. Returns True on success, False on error."""
    try:
        host_state.discovery = DiscoveryResponder(cfg)
        host_state.discovery.bind()
    except OSError as e:
        trigger_shutdown(f"Discovery socket error: {e}")
        return False

    try:
        host_state.ws_server = serve(
            connection_handler,
            cfg.bind_address,
            cfg.port,
            compression=None,
            max_size=WS_MAX_MESSAGE_SIZE,
        )
    except OSError as e:
        trigger_shutdown(f"WebSocket socket error: {e}")
        return False

    return True


def _start_server_threads():
    host_state.discovery.start()
    threading.Thread(target=host_state.ws_server.serve_forever, name="websocket", daemon=True).start()
    threading.Thread(target=heartbeat_manager, name="heartbeat", daemon=True).start()


def _log_banner(cfg):
    ip = host_state.discovery.ip if host_state.discovery else cfg.bind_address
    logging.info("%s v%s starting", cfg.server_name, cfg.version)
    logging.info("Server IP: %s | Hostname: %s", ip, socket.gethostname())
    logging.info("WebSocket server: ws://%s:%d", ip, cfg.port)
    logging.info("UDP discovery: port %d", cfg.discovery_port)
    monitors = host_state.screen_info["monitors"]
    logging.info("Detected %d monitor(s):", len(monitors))
    for mon in monitors:
        logging.info(
            "   - %s: %dx%d%s", mon["name"], mon["width"], mon["height"], " (Primary)" if mon["primary"] else ""
        )
    logging.info(
        "Adaptive quality: %s | Network monitoring: %s | Max clients: %d",
        "on" if cfg.adaptive_enabled else "off",
        "on" if cfg.network_monitoring else "off",
        cfg.max_clients,
    )


def core_main(cfg, use_signals=True, **runtime) -> int:
    if use_signals:
        try:
            for _sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(_sig, _signal_handler)
        except Exception:
            pass

    build_runtime(cfg, **runtime)
    host_state.started_at = time.time()

    if not _initialize_sockets(cfg):
        stop_all()
        logging.critical("Stopped due to error: %s", host_state.shutdown_reason)
        return 1

    _log_banner(cfg)
    _start_server_threads()
    logging.info("Server ready! Waiting for connections… (Ctrl+C to quit)")

    exit_code = 0
    try:
        while not host_state.should_terminate:
            time.sleep(MAIN_LOOP_POLL_SECS)
    except KeyboardInterrupt:
        logging.info("KeyboardInterrupt — shutting down…")
    finally:
        reason = host_state.shutdown_reason
        stop_all()
        if reason:
            logging.critical("Stopped due to error: %s", reason)
            exit_code = 1
        else:
            logging.info("Shutdown complete.")
    return exit_code


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Screen Remote host: stream this screen to a LAN controller")
    p.add_argument("--config", default=None, help="JSON file with server settings.")
    p.add_argument(
        "--bind-address",
        default=None,
        help="IP address to bind server sockets to. Default: 0.0.0.0 (all interfaces). "
        "There is no authentication: anyone who can reach the port can view and control this screen.",
    )
    p.add_argument("--port", type=int, default=None, help="WebSocket session port (default 9090).")
    p.add_argument("--discovery-port", type=int, default=None, help="UDP discovery port (default 9091).")
    p.add_argument("--fps", type=int, default=None, help="Default frames per second.")
    p.add_argument("--quality", type=int, default=None, help="Default JPEG quality (1-100).")
    p.add_argument("--max-clients", type=int, default=None)
    p.add_argument("--no-adaptive", action="store_true", help="Disable adaptive quality/fps.")
    p.add_argument("--debug", action="store_true")
    return p.parse_args(argv)


def config_from_args(args):
    return build_config(
        args.config,
        bind_address=args.bind_address,
        port=args.port,
        discovery_port=args.discovery_port,
        fps=args.fps,
        quality=args.quality,
        max_clients=args.max_clients,
        adaptive_enabled=False if args.no_adaptive else None,
    )


def main():
    args = parse_args()

    logging.basicConfig(
        level=(logging.DEBUG if args.debug else logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)

    try:
        cfg = config_from_args(args)
    except ValueError as e:
        logging.critical("Invalid configuration: %s", e)
        sys.exit(2)

    rc = core_main(cfg, use_signals=True)
    sys.exit(rc)


if __name__ == "__main__":
    main()
