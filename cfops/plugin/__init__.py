"""Plugin host: the contract, handshake, registry and both process roles."""

from .client import PluginCaller, PluginSession, call
from .contract import CAPABILITY_METHODS, BackupRestorer, Meta
from .discovery import DiscoveredPlugin, discover_plugins, find_plugin, read_meta
from .errors import (
    CapabilityNotFound,
    ConnectionLost,
    HandshakeMismatch,
    PluginError,
    PluginTimeout,
    RemoteCallFailure,
    SubprocessSpawnFailure,
)
from .handshake import HANDSHAKE, PLUGIN_META_ARG, PLUGIN_SERVE_ARG, HandshakeConfig
from .proxy import RemoteBackupRestorer
from .registry import BackupRestorePlugin, PluginRegistry
from .server import PluginServer, main, start

__all__ = [
    "BackupRestorer",
    "Meta",
    "CAPABILITY_METHODS",
    "HandshakeConfig",
    "HANDSHAKE",
    "PLUGIN_META_ARG",
    "PLUGIN_SERVE_ARG",
    "PluginRegistry",
    "BackupRestorePlugin",
    "PluginServer",
    "start",
    "main",
    "PluginCaller",
    "PluginSession",
    "RemoteBackupRestorer",
    "call",
    "DiscoveredPlugin",
    "discover_plugins",
    "find_plugin",
    "read_meta",
    "PluginError",
    "HandshakeMismatch",
    "SubprocessSpawnFailure",
    "ConnectionLost",
    "PluginTimeout",
    "CapabilityNotFound",
    "RemoteCallFailure",
]
