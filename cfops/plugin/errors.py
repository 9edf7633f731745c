"""Error taxonomy for plugin hosting.

Every failure the caller can observe is one of the classes below. Each error
remembers which plugin failed and in which phase so operators can tell a
plugin that never started apart from one that broke halfway through a backup.
"""

from __future__ import annotations

from typing import Dict, Optional, Type

PHASE_SPAWN = "spawn"
PHASE_HANDSHAKE = "handshake"
PHASE_DISPENSE = "dispense"
PHASE_CALL = "call"
PHASE_METADATA = "metadata"

# JSON-RPC error codes; the first two follow the JSON-RPC 2.0 reserved range.
PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
REMOTE_CALL_FAILED = -32000
HANDSHAKE_REJECTED = -32001
CAPABILITY_NOT_FOUND = -32002


class PluginError(RuntimeError):
    """Base class for plugin host failures."""

    default_phase: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        plugin: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.plugin = plugin
        self.phase = phase or self.default_phase

    def __str__(self) -> str:
        prefix = []
        if self.plugin:
            prefix.append(f"plugin '{self.plugin}'")
        if self.phase:
            prefix.append(f"[{self.phase}]")
        if not prefix:
            return self.message
        return f"{' '.join(prefix)}: {self.message}"

    def bind(self, *, plugin: Optional[str] = None, phase: Optional[str] = None) -> "PluginError":
        """Fill in plugin/phase if they are not known yet and return ``self``."""
        if plugin and not self.plugin:
            self.plugin = plugin
        if phase and not self.phase:
            self.phase = phase
        return self


class HandshakeMismatch(PluginError):
    """Protocol version or magic cookie disagreement."""

    default_phase = PHASE_HANDSHAKE


class SubprocessSpawnFailure(PluginError):
    """The plugin executable is missing, not executable, or failed to start."""

    default_phase = PHASE_SPAWN


class ConnectionLost(PluginError):
    """The transport broke before or during a call."""


class PluginTimeout(ConnectionLost):
    """A blocking step exceeded its timeout; the connection is no longer usable."""


class CapabilityNotFound(PluginError):
    """Dispense requested a name the serving process does not know."""

    default_phase = PHASE_DISPENSE


class RemoteCallFailure(PluginError):
    """The plugin's own operation raised; propagated opaquely."""

    default_phase = PHASE_CALL

    def __init__(
        self,
        message: str,
        *,
        plugin: Optional[str] = None,
        phase: Optional[str] = None,
        remote_type: Optional[str] = None,
        remote_traceback: Optional[str] = None,
    ) -> None:
        super().__init__(message, plugin=plugin, phase=phase)
        self.remote_type = remote_type
        self.remote_traceback = remote_traceback


_CODE_MAP: Dict[int, Type[PluginError]] = {
    HANDSHAKE_REJECTED: HandshakeMismatch,
    CAPABILITY_NOT_FOUND: CapabilityNotFound,
    REMOTE_CALL_FAILED: RemoteCallFailure,
}


def error_for_code(code: Optional[int]) -> Type[PluginError]:
    """Map a JSON-RPC error code onto an error class."""
    if code is None:
        return RemoteCallFailure
    return _CODE_MAP.get(int(code), RemoteCallFailure)


__all__ = [
    "PluginError",
    "HandshakeMismatch",
    "SubprocessSpawnFailure",
    "ConnectionLost",
    "PluginTimeout",
    "CapabilityNotFound",
    "RemoteCallFailure",
    "error_for_code",
    "PHASE_SPAWN",
    "PHASE_HANDSHAKE",
    "PHASE_DISPENSE",
    "PHASE_CALL",
    "PHASE_METADATA",
    "PARSE_ERROR",
    "METHOD_NOT_FOUND",
    "REMOTE_CALL_FAILED",
    "HANDSHAKE_REJECTED",
    "CAPABILITY_NOT_FOUND",
]
