from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .contract import BackupRestorer
from .proxy import RemoteBackupRestorer
from .wire import RpcConnection

logger = logging.getLogger(__name__)


@dataclass
class BackupRestorePlugin:
    """Adapter between a registry name and the capability behind it.

    On the serving side ``impl`` is the real tile. On the dispensing side it is
    ``None`` and only :meth:`client` is used to build the proxy.
    """

    impl: Optional[BackupRestorer] = None

    def server(self) -> BackupRestorer:
        if self.impl is None:
            raise LookupError("no implementation registered to serve")
        return self.impl

    def client(self, connection: RpcConnection, name: str, *, timeout: Optional[float] = None) -> BackupRestorer:
        return RemoteBackupRestorer(connection, name, timeout=timeout)


class PluginRegistry:
    """Name -> capability adapter map owned by one plugin or orchestrator instance.

    Entries are never removed. Registering an existing name replaces it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, BackupRestorePlugin] = {}

    def register(self, name: str, capability: Optional[BackupRestorer]) -> BackupRestorePlugin:
        name = str(name or "").strip()
        if not name:
            raise ValueError("plugin name must be a non-empty string")
        previous = self._entries.get(name)
        if previous is not None and previous.impl is not None and previous.impl is not capability:
            logger.warning("Plugin '%s' registered twice; the last registration wins", name)
        logger.debug("Registering plugin %s: %r", name, capability)
        entry = BackupRestorePlugin(impl=capability)
        self._entries[name] = entry
        return entry

    def all_entries(self) -> Dict[str, BackupRestorePlugin]:
        return dict(self._entries)

    def get(self, name: str) -> Optional[BackupRestorePlugin]:
        return self._entries.get(name)

    def names(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


__all__ = ["PluginRegistry", "BackupRestorePlugin"]
