from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

if sys.version_info < (3, 10):
    pytest.exit("cfops requires Python 3.10+", returncode=0)

from cfops.config import HostingConfig  # noqa: E402
from cfops.plugin import PluginCaller, PluginRegistry, PluginSession  # noqa: E402

FIXTURE_PLUGINS = Path(__file__).resolve().parent / "fixtures" / "plugins"


@pytest.fixture
def fixture_plugin():
    def _path(name: str) -> Path:
        path = FIXTURE_PLUGINS / f"{name}.py"
        assert path.exists(), path
        return path

    return _path


@pytest.fixture
def hosting() -> HostingConfig:
    return HostingConfig(startup_timeout_seconds=20, kill_grace_seconds=2, accept_timeout_seconds=20)


@pytest.fixture
def caller(hosting):
    with PluginCaller(PluginRegistry(), hosting=hosting) as plugin_caller:
        yield plugin_caller


@pytest.fixture
def spawned_sessions(monkeypatch):
    """Record every session that reaches spawn, even ones that never return."""
    sessions: list[PluginSession] = []
    original = PluginSession.spawn

    def _spawn(self):
        sessions.append(self)
        return original(self)

    monkeypatch.setattr(PluginSession, "spawn", _spawn)
    return sessions
