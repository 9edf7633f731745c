"""Newline-delimited JSON-RPC framing shared by plugin and orchestrator.

One JSON object per line in each direction. Requests carry ``id``, ``method``
and ``params``; responses carry the same ``id`` and either ``result`` or
``error`` (``{"code", "message", "data"}``).
"""

from __future__ import annotations

import base64
import json
import logging
import socket
import threading
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional

from .errors import ConnectionLost, PluginError, PluginTimeout, RemoteCallFailure, error_for_code

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_BYTES = 16 * 1024 * 1024


def encode(obj: Any) -> Any:
    """Turn values into something ``json.dumps`` accepts."""
    if isinstance(obj, (bytes, bytearray)):
        return {"__bytes__": base64.b64encode(bytes(obj)).decode("ascii")}
    if is_dataclass(obj) and not isinstance(obj, type):
        return encode(asdict(obj))
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [encode(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): encode(v) for k, v in obj.items()}
    return obj


def decode(obj: Any) -> Any:
    if isinstance(obj, dict) and set(obj) == {"__bytes__"}:
        return base64.b64decode(obj["__bytes__"])
    if isinstance(obj, list):
        return [decode(v) for v in obj]
    if isinstance(obj, dict):
        return {k: decode(v) for k, v in obj.items()}
    return obj


def dump_message(payload: Dict[str, Any], max_bytes: int = DEFAULT_MAX_MESSAGE_BYTES) -> bytes:
    data = (json.dumps(encode(payload), separators=(",", ":")) + "\n").encode("utf-8")
    if len(data) > max_bytes:
        raise PluginError(f"message too large ({len(data)} bytes, limit {max_bytes})")
    return data


def read_message(reader: BinaryIO, max_bytes: int = DEFAULT_MAX_MESSAGE_BYTES) -> Optional[Dict[str, Any]]:
    """Read one message; ``None`` on a clean EOF."""
    line = reader.readline(max_bytes + 1)
    if not line:
        return None
    if len(line) > max_bytes:
        raise ConnectionLost(f"message exceeds {max_bytes} bytes")
    try:
        message = json.loads(line.decode("utf-8"))
    except ValueError as exc:
        raise ConnectionLost(f"malformed message: {exc}") from exc
    if not isinstance(message, dict):
        raise ConnectionLost("malformed message: expected a JSON object")
    return message


def error_response(req_id: Any, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"id": req_id, "error": error}


class RpcConnection:
    """Client side of a plugin connection.

    Requests are strictly sequential: the lock is held from send until the
    matching response has been read, so responses never interleave.
    """

    def __init__(
        self,
        sock: socket.socket,
        *,
        plugin: Optional[str] = None,
        timeout: Optional[float] = None,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self.plugin = plugin
        self.timeout = timeout
        self.max_message_bytes = max_message_bytes
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._lock = threading.Lock()
        self._req_id = 0
        self._closed = False
        self._close_reason = "connection closed"

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        *,
        plugin: Optional[str] = None,
        timeout: Optional[float] = None,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> "RpcConnection":
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock, plugin=plugin, timeout=timeout, max_message_bytes=max_message_bytes)

    @property
    def closed(self) -> bool:
        return self._closed

    def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        phase: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        with self._lock:
            if self._closed:
                raise ConnectionLost(self._close_reason, plugin=self.plugin, phase=phase)
            self._req_id += 1
            req_id = self._req_id
            try:
                payload = dump_message(
                    {"id": req_id, "method": method, "params": params or {}},
                    self.max_message_bytes,
                )
            except PluginError as exc:
                raise exc.bind(plugin=self.plugin, phase=phase)
            except (TypeError, ValueError) as exc:
                raise PluginError(
                    f"cannot encode '{method}' request: {exc}", plugin=self.plugin, phase=phase
                ) from exc
            effective = self.timeout if timeout is None else timeout
            try:
                self._sock.settimeout(effective)
                self._sock.sendall(payload)
                response = read_message(self._reader, self.max_message_bytes)
            except socket.timeout as exc:
                self._shutdown(f"no response to '{method}' within {effective:.2f}s")
                raise PluginTimeout(self._close_reason, plugin=self.plugin, phase=phase) from exc
            except ConnectionLost as exc:
                self._shutdown(exc.message)
                raise exc.bind(plugin=self.plugin, phase=phase)
            except OSError as exc:
                self._shutdown(f"transport error: {exc}")
                raise ConnectionLost(self._close_reason, plugin=self.plugin, phase=phase) from exc
            if response is None:
                self._shutdown("plugin closed the connection")
                raise ConnectionLost(self._close_reason, plugin=self.plugin, phase=phase)
            if response.get("id") != req_id:
                self._shutdown(f"out-of-order response id {response.get('id')!r} (expected {req_id})")
                raise ConnectionLost(self._close_reason, plugin=self.plugin, phase=phase)

        error = response.get("error")
        if error is not None:
            raise self._error(error, phase)
        return decode(response.get("result"))

    def _error(self, error: Any, phase: Optional[str]) -> PluginError:
        if not isinstance(error, dict):
            error = {"message": str(error)}
        cls = error_for_code(error.get("code"))
        message = str(error.get("message") or "remote error")
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        if issubclass(cls, RemoteCallFailure):
            return cls(
                message,
                plugin=self.plugin,
                phase=phase,
                remote_type=data.get("type"),
                remote_traceback=data.get("traceback"),
            )
        return cls(message, plugin=self.plugin, phase=phase)

    def _shutdown(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        logger.debug("Closing connection to plugin %s: %s", self.plugin, reason)
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        for closer in (self._reader.close, self._sock.close):
            try:
                closer()
            except OSError:
                pass

    def close(self) -> None:
        self._shutdown("connection closed")


__all__ = [
    "encode",
    "decode",
    "dump_message",
    "read_message",
    "error_response",
    "RpcConnection",
    "DEFAULT_MAX_MESSAGE_BYTES",
]
