"""Plugin side of the host protocol.

A plugin executable hands its tile to :func:`main`. Invoked with the single
argument ``plugin-meta`` it prints its metadata and exits; any other
invocation serves the tile over a loopback socket until the orchestrator
disconnects.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import socket
import sys
import threading
import traceback
from typing import Any, Dict, IO, Mapping, Optional, Sequence

from ..log import configure_logging
from .contract import CAPABILITY_METHODS, BackupRestorer, Meta
from .errors import (
    CAPABILITY_NOT_FOUND,
    HANDSHAKE_REJECTED,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    REMOTE_CALL_FAILED,
    PluginError,
)
from .handshake import HANDSHAKE, PLUGIN_META_ARG, HandshakeConfig, handshake_line, rejection_line
from .registry import PluginRegistry
from .wire import DEFAULT_MAX_MESSAGE_BYTES, decode, dump_message, encode, error_response

logger = logging.getLogger(__name__)

ACCEPT_TIMEOUT_ENV = "CFOPS_PLUGIN_ACCEPT_TIMEOUT"
DEFAULT_ACCEPT_TIMEOUT = 60.0

NOT_A_PLUGIN_MESSAGE = (
    "This binary is a cfops plugin. It is not meant to be executed directly.\n"
    "Run the cfops command instead, or pass '%s' to print the plugin metadata.\n" % PLUGIN_META_ARG
)


def is_meta_invocation(args: Sequence[str]) -> bool:
    return len(args) == 1 and args[0] == PLUGIN_META_ARG


def emit_meta(meta: Meta, stream: IO[str]) -> None:
    stream.write(meta.to_json() + "\n")
    stream.flush()


def _accept_timeout_from_env(environ: Mapping[str, str]) -> float:
    raw = environ.get(ACCEPT_TIMEOUT_ENV, "").strip()
    if raw:
        try:
            return max(0.1, float(raw))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", ACCEPT_TIMEOUT_ENV, raw)
    return DEFAULT_ACCEPT_TIMEOUT


class PluginServer:
    """Serves every registry entry to exactly one orchestrator connection."""

    def __init__(
        self,
        registry: PluginRegistry,
        handshake: HandshakeConfig = HANDSHAKE,
        *,
        host: str = "127.0.0.1",
        accept_timeout: Optional[float] = None,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.registry = registry
        self.handshake = handshake
        self.host = host
        self.max_message_bytes = max_message_bytes
        self._environ = os.environ if environ is None else environ
        self.accept_timeout = accept_timeout or _accept_timeout_from_env(self._environ)
        self._stdout = stdout
        self._stderr = stderr
        self._handshaken = False

    @property
    def stdout(self) -> IO[str]:
        return self._stdout or sys.stdout

    @property
    def stderr(self) -> IO[str]:
        return self._stderr or sys.stderr

    def _announce(self, line: str) -> None:
        self.stdout.write(line + "\n")
        self.stdout.flush()

    def _cookie_ok(self) -> bool:
        return self._environ.get(self.handshake.magic_cookie_key) == self.handshake.magic_cookie_value

    def serve(self) -> int:
        """Run until the orchestrator disconnects; returns the exit status."""
        if not self._cookie_ok():
            self._announce(rejection_line("magic cookie mismatch"))
            self.stderr.write(NOT_A_PLUGIN_MESSAGE)
            self.stderr.flush()
            return 1

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.bind((self.host, 0))
            listener.listen(1)
            listener.settimeout(self.accept_timeout)
            host, port = listener.getsockname()[:2]
            logger.debug("Plugin host listening on %s:%s (serving %s)", host, port, self.registry.names())
            self._announce(handshake_line(self.handshake, f"{host}:{port}"))
            try:
                conn, _addr = listener.accept()
            except socket.timeout:
                logger.error("No orchestrator connected within %.1fs; exiting", self.accept_timeout)
                return 1
        finally:
            listener.close()

        conn.settimeout(None)
        with conn:
            try:
                return self._serve_connection(conn)
            except KeyboardInterrupt:
                logger.info("Interrupted; shutting down plugin host")
                return 0
            except OSError as exc:
                logger.error("Connection to orchestrator failed: %s", exc)
                return 1

    def _serve_connection(self, conn: socket.socket) -> int:
        """Answer requests in order until EOF or a rejected handshake."""
        reader = conn.makefile("rb")
        try:
            while True:
                line = reader.readline(self.max_message_bytes + 1)
                if not line:
                    logger.debug("Orchestrator closed the connection")
                    return 0
                if len(line) > self.max_message_bytes:
                    logger.error("Request exceeds %d bytes; closing connection", self.max_message_bytes)
                    return 1
                try:
                    message = json.loads(line.decode("utf-8"))
                    if not isinstance(message, dict):
                        raise ValueError("expected a JSON object")
                except ValueError as exc:
                    conn.sendall(self._dump(error_response(None, PARSE_ERROR, f"Parse error: {exc}")))
                    continue
                response = self.handle_request(message)
                conn.sendall(self._dump(response))
                error = response.get("error")
                if error and error.get("code") == HANDSHAKE_REJECTED:
                    return 1
        finally:
            reader.close()

    def _dump(self, response: Dict[str, Any]) -> bytes:
        try:
            return dump_message(response, self.max_message_bytes)
        except (PluginError, TypeError, ValueError) as exc:
            logger.error("Cannot encode response: %s", exc)
            return dump_message(error_response(response.get("id"), REMOTE_CALL_FAILED, f"unencodable result: {exc}"))

    def handle_request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        req_id = message.get("id")
        method = message.get("method")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            params = {}

        if method == "handshake":
            return self._handle_handshake(req_id, params)
        if not self._handshaken:
            return error_response(req_id, HANDSHAKE_REJECTED, "handshake required before other requests")
        if method == "ping":
            return {"id": req_id, "result": {"pong": True}}
        if method == "dispense":
            return self._handle_dispense(req_id, params)
        if method == "call":
            return self._handle_call(req_id, params)
        return error_response(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _handle_handshake(self, req_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.handshake.matches(params):
            logger.warning("Rejecting orchestrator handshake: descriptor mismatch")
            return error_response(req_id, HANDSHAKE_REJECTED, "handshake descriptor mismatch")
        self._handshaken = True
        return {
            "id": req_id,
            "result": {"protocol_version": self.handshake.protocol_version, "plugins": self.registry.names()},
        }

    def _served(self, name: Any) -> Optional[BackupRestorer]:
        entry = self.registry.get(str(name or ""))
        if entry is None or entry.impl is None:
            return None
        return entry.server()

    def _handle_dispense(self, req_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        if self._served(name) is None:
            return error_response(req_id, CAPABILITY_NOT_FOUND, f"unknown plugin name: {name}")
        return {"id": req_id, "result": {"name": name, "methods": list(CAPABILITY_METHODS)}}

    def _handle_call(self, req_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        function = str(params.get("function") or "")
        impl = self._served(name)
        if impl is None:
            return error_response(req_id, CAPABILITY_NOT_FOUND, f"unknown plugin name: {name}")
        if function not in CAPABILITY_METHODS:
            return error_response(req_id, METHOD_NOT_FOUND, f"Method not found: {name}.{function}")
        args = decode(params.get("args") or [])
        kwargs = decode(params.get("kwargs") or {})
        try:
            result = getattr(impl, function)(*args, **kwargs)
        except Exception as exc:
            logger.exception("Plugin %s failed in %s", name, function)
            return error_response(
                req_id,
                REMOTE_CALL_FAILED,
                f"{type(exc).__name__}: {exc}",
                {"type": type(exc).__name__, "traceback": traceback.format_exc()},
            )
        if isinstance(result, Meta):
            result = result.to_dict()
        return {"id": req_id, "result": encode(result)}


def start(
    plugin: BackupRestorer,
    *,
    argv: Optional[Sequence[str]] = None,
    handshake: HandshakeConfig = HANDSHAKE,
    registry: Optional[PluginRegistry] = None,
    stdout: Optional[IO[str]] = None,
    **server_options: Any,
) -> int:
    """Register ``plugin`` and run it in metadata or serve mode.

    Returns the process exit status instead of exiting so callers (and tests)
    decide when the process ends.
    """
    registry = registry if registry is not None else PluginRegistry()
    meta = plugin.get_meta()
    registry.register(meta.name, plugin)

    args = list(sys.argv[1:] if argv is None else argv)
    if is_meta_invocation(args):
        emit_meta(meta, stdout or sys.stdout)
        return 0
    server = PluginServer(registry, handshake, stdout=stdout, **server_options)
    return server.serve()


def _exit_on_sigterm(signum, frame) -> None:
    raise SystemExit(0)


def main(plugin: BackupRestorer, **kwargs: Any) -> None:
    """Process entry point for plugin executables."""
    configure_logging(default="WARNING")
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _exit_on_sigterm)
    sys.exit(start(plugin, **kwargs))


__all__ = ["PluginServer", "start", "main", "is_meta_invocation", "emit_meta", "ACCEPT_TIMEOUT_ENV"]
