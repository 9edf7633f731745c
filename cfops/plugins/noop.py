"""Reference tile plugin that backs up nothing.

It writes a small JSON marker into the destination on backup and reads it
back on restore, which makes it handy for exercising the plugin host end to
end. Copy this module when writing a real tile plugin.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from cfops.plugin import BackupRestorer, Meta, main as serve_plugin

logger = logging.getLogger(__name__)

TILE_NAME = "noop-tile"
MARKER_FILE = "noop-tile.json"


class NoopTile(BackupRestorer):
    """Keeps per-process counters so tests can tell sessions apart."""

    def __init__(self, name: str = TILE_NAME) -> None:
        self._meta = Meta(
            name=name,
            role="backup-restore",
            display_name="No-op tile",
            description="Writes a marker file instead of backing anything up",
        )
        self.settings: Dict[str, Any] = {}
        self.calls = 0

    def get_meta(self) -> Meta:
        return self._meta

    def setup(self, settings: Dict[str, Any]) -> None:
        self.settings = dict(settings or {})

    def backup(self, destination: str, **options: Any) -> Dict[str, Any]:
        self.calls += 1
        target = Path(destination)
        target.mkdir(parents=True, exist_ok=True)
        marker = target / MARKER_FILE
        payload = {"tile": self._meta.name, "options": options, "pid": os.getpid()}
        marker.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
        logger.info("Wrote %s", marker)
        return {"artifact": str(marker), "calls": self.calls, "settings": self.settings}

    def restore(self, source: str, **options: Any) -> Dict[str, Any]:
        self.calls += 1
        marker = Path(source) / MARKER_FILE
        if not marker.exists():
            raise FileNotFoundError(f"no {MARKER_FILE} in {source}")
        payload = json.loads(marker.read_text(encoding="utf-8"))
        return {"restored": payload, "calls": self.calls}


def main() -> None:
    serve_plugin(NoopTile())


if __name__ == "__main__":
    main()
