from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from ..observability import metrics
from .contract import BackupRestorer, Meta
from .errors import PHASE_CALL, PluginError
from .wire import RpcConnection

logger = logging.getLogger(__name__)


class RemoteBackupRestorer(BackupRestorer):
    """Forwards every capability call to a plugin process.

    Calls block until the plugin answers. Transport failures surface as
    ``ConnectionLost``; exceptions raised inside the plugin surface as
    ``RemoteCallFailure``.
    """

    def __init__(self, connection: RpcConnection, name: str, *, timeout: Optional[float] = None):
        self._connection = connection
        self._name = name
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._name

    def _invoke(self, function: str, *args: Any, **kwargs: Any) -> Any:
        params = {"name": self._name, "function": function, "args": list(args), "kwargs": kwargs}
        start = time.monotonic()
        outcome = "ok"
        try:
            return self._connection.request("call", params, phase=PHASE_CALL, timeout=self._timeout)
        except PluginError as exc:
            outcome = type(exc).__name__
            logger.debug("Call %s.%s failed: %s", self._name, function, exc)
            raise
        finally:
            metrics.record_call(self._name, function, outcome, time.monotonic() - start)

    def get_meta(self) -> Meta:
        return Meta.from_dict(self._invoke("get_meta"))

    def setup(self, settings: Dict[str, Any]) -> None:
        self._invoke("setup", settings)

    def backup(self, destination: str, **options: Any) -> Any:
        return self._invoke("backup", destination, **options)

    def restore(self, source: str, **options: Any) -> Any:
        return self._invoke("restore", source, **options)

    def __repr__(self) -> str:
        return f"RemoteBackupRestorer(name={self._name!r})"


__all__ = ["RemoteBackupRestorer"]
