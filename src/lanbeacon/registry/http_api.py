"""
HTTP API for the network registry

- RegistryHTTPHandler: POST /api/register, GET /api/devices, GET /healthz
- start_registry_server: launches an IPv4, IPv6 or dual-stack server in a daemon thread
- BeaconClient: thin HTTP client matching the API shape
"""

import contextlib
import json
import socket
import sys
import threading
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

from .network import InvalidAddress, derive_network_key, select_source_address
from .service_registry import NetworkRegistry


REGISTER_PATH = "/api/register"
DEVICES_PATH = "/api/devices"
HEALTH_PATH = "/healthz"

# Registrations are two short strings; anything larger is refused unread
MAX_BODY_BYTES = 64 * 1024


class BadRequest(Exception):
    """Client error detected while decoding a request."""


class PayloadTooLarge(BadRequest):
    """Declared request body exceeds MAX_BODY_BYTES."""


def _make_handler(registry: NetworkRegistry, use_forwarded_for: bool):
    """Create a handler class bound to the given registry instance."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            # Request lines are logged by the handlers themselves
            pass

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _error(self, message: str, status: int):
            self._json_response({"error": message}, status=status)

        def _path(self) -> str:
            return self.path.split("?", 1)[0].rstrip("/")

        def _source_address(self) -> str:
            return select_source_address(
                self.client_address[0],
                self.headers.get("X-Forwarded-For"),
                use_forwarded_for,
            )

        def _read_body(self) -> bytes:
            # Always drained so error replies are not lost to a connection reset
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                return b""
            if length > MAX_BODY_BYTES:
                raise PayloadTooLarge(
                    f"Request body of {length} bytes exceeds {MAX_BODY_BYTES} bytes"
                )
            return self.rfile.read(length) if length > 0 else b""

        def _read_registration(self, raw: bytes) -> Dict[str, str]:
            content_type = self.headers.get("Content-Type", "")
            if content_type.split(";", 1)[0].strip().lower() != "application/json":
                raise BadRequest("Please send json")

            if not raw:
                raise BadRequest("Please send a request body")
            try:
                data = json.loads(raw.decode())
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise BadRequest(f"Invalid JSON: {exc}") from None

            if not isinstance(data, dict):
                raise BadRequest("Request body must be a JSON object")
            for field in ("name", "url"):
                if not isinstance(data.get(field), str):
                    raise BadRequest(f"Field '{field}' must be a string")
            return {"name": data["name"], "url": data["url"]}

        def _method_not_allowed(self):
            self._error("Method Not Allowed", status=405)

        def _dispatch(self, method: str):
            try:
                raw = self._read_body()
            except PayloadTooLarge as exc:
                # The rest of the body stays unread, so the connection can't be reused
                self.close_connection = True
                return self._error(str(exc), status=413)
            path = self._path()
            if path == REGISTER_PATH:
                if method != "POST":
                    return self._method_not_allowed()
                return self._handle_register(raw)
            if path == DEVICES_PATH:
                if method != "GET":
                    return self._method_not_allowed()
                return self._handle_devices()
            if path == HEALTH_PATH:
                if method != "GET":
                    return self._method_not_allowed()
                return self._json_response({
                    "status": "ok",
                    "networks": len(registry),
                    "instances": registry.instance_count(),
                })
            self._error("not found", status=404)

        def _handle_register(self, raw: bytes):
            try:
                payload = self._read_registration(raw)
            except BadRequest as exc:
                return self._error(str(exc), status=400)

            address = self._source_address()
            try:
                registry.announce(address, payload["name"], payload["url"])
            except InvalidAddress as exc:
                print(f"[server] rejected register request: {exc}", file=sys.stderr)
                return self._error(str(exc), status=400)

            print(
                f"[server] register {payload['url']} from {derive_network_key(address)}",
                file=sys.stderr,
            )
            self._json_response({})

        def _handle_devices(self):
            address = self._source_address()
            try:
                instances = registry.list_instances(address)
            except InvalidAddress as exc:
                print(f"[server] rejected list request: {exc}", file=sys.stderr)
                return self._error(str(exc), status=400)

            print(f"[server] list request from {derive_network_key(address)}", file=sys.stderr)
            self._json_response([i.to_dict() for i in instances])

        def do_GET(self):
            self._dispatch("GET")

        def do_POST(self):
            self._dispatch("POST")

        def do_PUT(self):
            self._dispatch("PUT")

        def do_DELETE(self):
            self._dispatch("DELETE")

    return RegistryHTTPHandler


class IPv6HTTPServer(ThreadingHTTPServer):
    address_family = socket.AF_INET6


class DualStackHTTPServer(IPv6HTTPServer):
    """Listens on "::" and accepts IPv4 clients as ::ffff:a.b.c.d."""

    def server_bind(self):
        # Not every platform allows clearing V6ONLY; fall back to IPv6 only
        with contextlib.suppress(OSError, AttributeError):
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        return super().server_bind()


def _server_class(host: str) -> type[ThreadingHTTPServer]:
    if host in ("", "::"):
        return DualStackHTTPServer
    if ":" in host:
        return IPv6HTTPServer
    return ThreadingHTTPServer


def start_registry_server(
    registry: NetworkRegistry,
    host: str = "::",
    port: int = 80,
    use_forwarded_for: bool = False,
) -> ThreadingHTTPServer:
    """Start the HTTP API in a daemon thread and return the server.

    An IPv6 *host* gets an IPv6 socket; the wildcard ``"::"`` (or ``""``)
    serves IPv4 and IPv6 clients on one dual-stack socket.
    """
    handler = _make_handler(registry, use_forwarded_for)
    server = _server_class(host)((host or "::", port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class BeaconClient:
    """Thin HTTP client for announcing to and listing from a registry."""

    def __init__(self, base_url: str, timeout: float = 10):
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _open(self, request: urllib.request.Request) -> Any:
        with self._opener.open(request, timeout=self._timeout) as resp:
            return json.loads(resp.read().decode() or "null")

    def announce(self, name: str, url: str) -> bool:
        body = json.dumps({"name": name, "url": url}).encode()
        request = urllib.request.Request(
            f"{self._base}{REGISTER_PATH}",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            self._open(request)
            return True
        except (urllib.error.URLError, OSError):
            return False

    def list_instances(self) -> List[Dict[str, str]]:
        try:
            data = self._open(urllib.request.Request(f"{self._base}{DEVICES_PATH}"))
        except (urllib.error.URLError, OSError):
            return []
        return data or []

    def health(self) -> Optional[Dict[str, Any]]:
        try:
            return self._open(urllib.request.Request(f"{self._base}{HEALTH_PATH}"))
        except (urllib.error.URLError, OSError):
            return None
