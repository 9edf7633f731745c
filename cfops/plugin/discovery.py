"""Find tile plugins on disk by asking each candidate for its metadata."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .contract import Meta
from .errors import PHASE_DISPENSE, PHASE_METADATA, CapabilityNotFound, PluginError, SubprocessSpawnFailure
from .handshake import PLUGIN_META_ARG

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredPlugin:
    path: Path
    meta: Meta

    @property
    def name(self) -> str:
        return self.meta.name


def meta_command(path: Path) -> List[str]:
    if path.suffix == ".py":
        return [sys.executable, str(path), PLUGIN_META_ARG]
    return [str(path), PLUGIN_META_ARG]


def is_candidate(path: Path) -> bool:
    if not path.is_file() or path.name.startswith((".", "_")):
        return False
    return path.suffix == ".py" or os.access(path, os.X_OK)


def read_meta(path: str | os.PathLike[str], timeout: float = 10.0) -> Meta:
    """Run ``path`` in metadata mode and parse the line it prints."""
    plugin_path = Path(path)
    label = plugin_path.name
    try:
        completed = subprocess.run(
            meta_command(plugin_path),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except OSError as exc:
        raise SubprocessSpawnFailure(f"cannot start {plugin_path}: {exc.strerror or exc}", plugin=label) from exc
    except subprocess.TimeoutExpired as exc:
        raise PluginError(
            f"no metadata within {timeout:.1f}s", plugin=label, phase=PHASE_METADATA
        ) from exc
    if completed.returncode != 0:
        detail = (completed.stderr or "").strip().splitlines()
        raise PluginError(
            f"metadata mode exited with status {completed.returncode}"
            + (f": {detail[-1]}" if detail else ""),
            plugin=label,
            phase=PHASE_METADATA,
        )
    lines = [line for line in completed.stdout.splitlines() if line.strip()]
    if not lines:
        raise PluginError("metadata mode printed nothing", plugin=label, phase=PHASE_METADATA)
    try:
        return Meta.from_json(lines[0])
    except ValueError as exc:
        raise PluginError(f"invalid metadata: {exc}", plugin=label, phase=PHASE_METADATA) from exc


def discover_plugins(directory: str | os.PathLike[str], timeout: float = 10.0) -> List[DiscoveredPlugin]:
    """Return every plugin in ``directory`` that answers metadata mode, by name."""
    root = Path(directory)
    if not root.is_dir():
        logger.debug("Plugin directory %s not found; no plugins discovered", root)
        return []
    found: dict[str, DiscoveredPlugin] = {}
    for path in sorted(root.iterdir()):
        if not is_candidate(path):
            continue
        try:
            meta = read_meta(path, timeout=timeout)
        except PluginError as exc:
            logger.warning("Skipping %s: %s", path, exc)
            continue
        if meta.name in found:
            logger.warning(
                "Plugin %s provided by both %s and %s; using %s",
                meta.name,
                found[meta.name].path,
                path,
                path,
            )
        found[meta.name] = DiscoveredPlugin(path=path, meta=meta)
    return [found[name] for name in sorted(found)]


def find_plugin(
    directory: str | os.PathLike[str],
    name: str,
    timeout: float = 10.0,
    plugins: Optional[List[DiscoveredPlugin]] = None,
) -> DiscoveredPlugin:
    candidates = plugins if plugins is not None else discover_plugins(directory, timeout=timeout)
    for plugin in candidates:
        if plugin.name == name:
            return plugin
    known = ", ".join(p.name for p in candidates) or "none"
    raise CapabilityNotFound(f"no plugin provides tile '{name}' (available: {known})", plugin=name, phase=PHASE_DISPENSE)


__all__ = ["DiscoveredPlugin", "read_meta", "discover_plugins", "find_plugin"]
