"""The backup/restore contract every tile plugin implements."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping

# Methods a remote caller may invoke on a dispensed capability.
CAPABILITY_METHODS = ("get_meta", "setup", "backup", "restore")


@dataclass(frozen=True)
class Meta:
    """Self-description of a tile plugin."""

    name: str
    role: str = ""
    display_name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name or not str(self.name).strip():
            raise ValueError("plugin meta requires a non-empty name")

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def to_json(self) -> str:
        """Single-line JSON form used by metadata mode."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Meta":
        if not isinstance(data, Mapping):
            raise ValueError("plugin meta must be a JSON object")
        return cls(
            name=str(data.get("name") or "").strip(),
            role=str(data.get("role") or ""),
            display_name=str(data.get("display_name") or ""),
            description=str(data.get("description") or ""),
        )

    @classmethod
    def from_json(cls, text: str) -> "Meta":
        return cls.from_dict(json.loads(text))


class BackupRestorer(ABC):
    """Capability interface shared by concrete tiles and their remote proxies.

    ``backup`` and ``restore`` take tile-specific keyword options (hosts,
    credentials, ...) that this package passes through untouched.
    """

    @abstractmethod
    def get_meta(self) -> Meta:
        """Return the plugin metadata; must not have side effects."""

    def setup(self, settings: Dict[str, Any]) -> None:
        """Receive tile settings before a backup or restore."""
        return None

    @abstractmethod
    def backup(self, destination: str, **options: Any) -> Any:
        """Write the tile's backup into ``destination``."""

    @abstractmethod
    def restore(self, source: str, **options: Any) -> Any:
        """Restore the tile from a backup stored in ``source``."""


__all__ = ["Meta", "BackupRestorer", "CAPABILITY_METHODS"]
