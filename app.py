#!/usr/bin/env python3
import argparse
import json
import logging
import os
import platform
import socket
import sys
from dataclasses import dataclass
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import yaml
import urllib3

from prometheus_client import (
    CollectorRegistry,
    GCCollector,
    Info,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from inception_exporter import DEFAULT_NAMESPACE, InceptionExporter

__version__ = "0.2.0"

PROGRAM = "prometheus_inception_exporter"

CONFIG_PATH = os.environ.get("INCEPTION_CONFIG", "/etc/prometheus/inception.yml")
LISTEN_ADDRESS = os.environ.get("INCEPTION_LISTEN", ":9142")
METRICS_PATH = os.environ.get("INCEPTION_METRICS_PATH", "/metrics")
NAMESPACE = os.environ.get("INCEPTION_NAMESPACE", DEFAULT_NAMESPACE)
PROMETHEUS_ADDRESS = os.environ.get("INCEPTION_PROMETHEUS_ADDRESS", "http://localhost:9090")
DEFAULT_TIMEOUT = os.environ.get("INCEPTION_TIMEOUT", "5")
LOG_LEVEL = os.environ.get("INCEPTION_LOG_LEVEL", "info")

LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_FORMATS = ("text", "json")

LANDING_PAGE = """<html>
<head><title>Prometheus Inception Exporter</title></head>
<body>
<h1>Prometheus Inception Exporter</h1>
<p><a href='{metrics_path}'>Metrics</a></p>
</body>
</html>
"""

logger = logging.getLogger(PROGRAM)


@dataclass(frozen=True)
class Settings:
    listen_address: str
    metrics_path: str
    namespace: str
    prometheus_address: str
    username: str
    password: str
    timeout: float
    insecure_skip_verify: bool
    log_level: str
    log_format: str

    @property
    def listen_host_port(self) -> Tuple[str, int]:
        return parse_listen_address(self.listen_address)


def parse_listen_address(addr: str) -> Tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"listen address must be host:port (got {addr!r})")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"listen port must be an integer (got {port!r})") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"listen port out of range (got {port_num})")
    return host.strip("[]"), port_num


def _load_config(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return cfg


def _parse_timeout(raw: Any) -> float:
    try:
        timeout = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"timeout must be a number of seconds (got {raw!r})") from None
    if timeout <= 0:
        raise ValueError(f"timeout must be positive (got {timeout})")
    return timeout


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def _arg_parser() -> argparse.ArgumentParser:
    # Defaults are None so explicit flags can be told apart from config values
    p = argparse.ArgumentParser(
        prog=PROGRAM,
        description="Export the scrape health of a Prometheus server's targets.",
    )
    p.add_argument("--version", action="store_true", help="Print version information.")
    p.add_argument("--config.file", dest="config_file", default=None,
                   help=f"YAML config file (default: {CONFIG_PATH}).")
    p.add_argument("--web.listen-address", dest="listen_address", default=None,
                   help=f"Address to listen on for web interface and telemetry (default: {LISTEN_ADDRESS}).")
    p.add_argument("--web.telemetry-path", dest="metrics_path", default=None,
                   help=f"Path under which to expose metrics (default: {METRICS_PATH}).")
    p.add_argument("--namespace", dest="namespace", default=None,
                   help=f"Namespace for metrics (default: {NAMESPACE}).")
    p.add_argument("--prometheus.address", dest="prometheus_address", default=None,
                   help=f"HTTP API address of Prometheus instance (default: {PROMETHEUS_ADDRESS}).")
    p.add_argument("--prometheus.basic_auth.username", dest="username", default=None,
                   help="Username of Prometheus instance.")
    p.add_argument("--prometheus.basic_auth.password", dest="password", default=None,
                   help="Password of Prometheus instance.")
    p.add_argument("--prometheus.insecure-skip-verify", dest="insecure_skip_verify",
                   action="store_true", default=None,
                   help="Skip TLS certificate verification for the Prometheus API.")
    p.add_argument("--timeout", dest="timeout", default=None,
                   help=f"Timeout in seconds for getting states from Prometheus (default: {DEFAULT_TIMEOUT}).")
    p.add_argument("--log.level", dest="log_level", default=None, choices=LOG_LEVELS,
                   help=f"Only log messages with the given severity or above (default: {LOG_LEVEL}).")
    p.add_argument("--log.format", dest="log_format", default=None, choices=LOG_FORMATS,
                   help="Log output format (default: text).")
    return p


def load_settings(args: argparse.Namespace) -> Settings:
    """Merge built-in/env defaults, the YAML config file and CLI flags."""
    cfg = _load_config(args.config_file or CONFIG_PATH)
    prom = cfg.get("prometheus", {}) or {}
    if not isinstance(prom, dict):
        raise ValueError("config key 'prometheus' must be a mapping")

    log_level = str(_first(args.log_level, cfg.get("log_level"), LOG_LEVEL)).strip().lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"log level must be debug|info|warning|error (got {log_level!r})")

    log_format = str(_first(args.log_format, cfg.get("log_format"), "text")).strip().lower()
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log format must be text|json (got {log_format!r})")

    metrics_path = str(_first(args.metrics_path, cfg.get("metrics_path"), METRICS_PATH))
    if not metrics_path.startswith("/"):
        raise ValueError(f"metrics path must start with '/' (got {metrics_path!r})")

    listen_address = str(_first(args.listen_address, cfg.get("listen_address"), LISTEN_ADDRESS))
    parse_listen_address(listen_address)

    return Settings(
        listen_address=listen_address,
        metrics_path=metrics_path,
        namespace=str(_first(args.namespace, cfg.get("namespace"), NAMESPACE)),
        prometheus_address=str(_first(args.prometheus_address, prom.get("address"), PROMETHEUS_ADDRESS)),
        username=str(_first(args.username, prom.get("username"), "")),
        password=str(_first(args.password, prom.get("password"), "")),
        timeout=_parse_timeout(_first(args.timeout, cfg.get("timeout"), DEFAULT_TIMEOUT)),
        insecure_skip_verify=bool(_first(args.insecure_skip_verify, prom.get("insecure_skip_verify"), False)),
        log_level=log_level,
        log_format=log_format,
    )


class _JsonFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, log_format: str = "text") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s  %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z"))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


def version_info() -> Dict[str, str]:
    return {"version": __version__, "python_version": platform.python_version()}


def build_registry(exporter: InceptionExporter) -> CollectorRegistry:
    registry = CollectorRegistry()
    build = Info(f"{PROGRAM}_build", f"A metric with a constant '1' value labeled by version of {PROGRAM}.",
                 registry=registry)
    build.info(version_info())
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)
    registry.register(exporter)
    return registry


def _http_response(start_response, status: str, headers: List[Tuple[str, str]], body: bytes):
    start_response(status, headers)
    return [body]


def make_app(registry: CollectorRegistry, metrics_path: str = METRICS_PATH):
    landing = LANDING_PAGE.format(metrics_path=metrics_path).encode("utf-8")

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "/")

        if path == metrics_path:
            try:
                output = generate_latest(registry)
            except Exception as e:
                logger.exception("rendering metrics failed")
                return _http_response(
                    start_response,
                    "500 Internal Server Error",
                    [("Content-Type", "text/plain; charset=utf-8")],
                    f"rendering metrics failed: {e}\n".encode("utf-8"),
                )
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", CONTENT_TYPE_LATEST)],
                output,
            )

        if path == "/":
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", "text/html; charset=utf-8")],
                landing,
            )

        if path == "/health":
            return _http_response(
                start_response,
                "200 OK",
                [("Content-Type", "text/plain; charset=utf-8")],
                b"ok\n",
            )

        return _http_response(
            start_response,
            "404 Not Found",
            [("Content-Type", "text/plain; charset=utf-8")],
            b"not found\n",
        )

    return app


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _ThreadingWSGIServerV6(_ThreadingWSGIServer):
    address_family = socket.AF_INET6


class _DualStackWSGIServer(_ThreadingWSGIServerV6):
    def server_bind(self):
        # Accept IPv4-mapped connections too, like Go's ":port"
        self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()


def _server_for(host: str) -> Tuple[str, type]:
    if not host:
        if socket.has_ipv6:
            return "::", _DualStackWSGIServer
        return "", _ThreadingWSGIServer
    if ":" in host:
        return host, _ThreadingWSGIServerV6
    return host, _ThreadingWSGIServer


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def main(argv: Optional[List[str]] = None) -> int:
    parser = _arg_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"{PROGRAM}, version {__version__} (python {platform.python_version()})")
        return 0

    try:
        settings = load_settings(args)
    except (OSError, ValueError, yaml.YAMLError) as e:
        parser.error(str(e))
    setup_logging(settings.log_level, settings.log_format)

    logger.info("Starting %s %s", PROGRAM, __version__)
    logger.info("Build context (python=%s, implementation=%s, platform=%s)",
                platform.python_version(), platform.python_implementation(), platform.platform())

    if settings.insecure_skip_verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    exporter = InceptionExporter(
        uri=settings.prometheus_address,
        username=settings.username,
        password=settings.password,
        timeout=settings.timeout,
        namespace=settings.namespace,
        verify=not settings.insecure_skip_verify,
    )
    registry = build_registry(exporter)

    wsgi_app = make_app(registry, settings.metrics_path)
    host, port = settings.listen_host_port
    host, server_class = _server_for(host)
    try:
        try:
            httpd = make_server(host, port, wsgi_app, server_class=server_class, handler_class=_QuietHandler)
        except OSError as e:
            if server_class is not _DualStackWSGIServer:
                raise
            # IPv6 disabled on this host
            logger.warning("Dual-stack listen failed (%s), falling back to IPv4", e)
            httpd = make_server("", port, wsgi_app, server_class=_ThreadingWSGIServer,
                                handler_class=_QuietHandler)
    except OSError as e:
        logger.critical("Cannot listen on %s: %s", settings.listen_address, e)
        return 1

    logger.info("Listening on %s", settings.listen_address)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
