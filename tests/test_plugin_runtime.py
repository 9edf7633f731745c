import io
import json
import socket
import subprocess
import sys
import threading

import pytest

from cfops.plugin import HANDSHAKE, PLUGIN_META_ARG, Meta, PluginRegistry, PluginServer, start
from cfops.plugin.errors import (
    CAPABILITY_NOT_FOUND,
    HANDSHAKE_REJECTED,
    METHOD_NOT_FOUND,
    REMOTE_CALL_FAILED,
    CapabilityNotFound,
    HandshakeMismatch,
)
from cfops.plugin.handshake import parse_handshake_line, split_address
from cfops.plugin.server import is_meta_invocation
from cfops.plugin.wire import RpcConnection
from cfops.plugins.noop import NoopTile


class BrokenTile(NoopTile):
    def backup(self, destination, **options):
        raise OSError("no space left on device")


def _server(tile=None):
    registry = PluginRegistry()
    tile = tile or NoopTile()
    registry.register(tile.get_meta().name, tile)
    return PluginServer(registry, HANDSHAKE, environ={})


def _handshaken(tile=None):
    server = _server(tile)
    response = server.handle_request({"id": 1, "method": "handshake", "params": HANDSHAKE.to_dict()})
    assert response["result"]["plugins"] == [server.registry.names()[0]]
    return server


@pytest.mark.parametrize(
    "args, expected",
    [
        ([PLUGIN_META_ARG], True),
        ([], False),
        (["plugin"], False),
        ([PLUGIN_META_ARG, "extra"], False),
        (["--plugin-meta"], False),
    ],
)
def test_meta_invocation_needs_exactly_the_flag(args, expected):
    assert is_meta_invocation(args) is expected


def test_metadata_mode_prints_meta_without_listening(monkeypatch):
    def _no_sockets(*args, **kwargs):
        raise AssertionError("metadata mode must not open sockets")

    monkeypatch.setattr(socket, "socket", _no_sockets)
    out = io.StringIO()
    registry = PluginRegistry()

    status = start(NoopTile(), argv=[PLUGIN_META_ARG], registry=registry, stdout=out)

    assert status == 0
    meta = Meta.from_json(out.getvalue())
    assert meta.name == "noop-tile"
    assert out.getvalue().count("\n") == 1
    assert "noop-tile" in registry


def test_serve_mode_without_cookie_rejects():
    out, err = io.StringIO(), io.StringIO()
    status = start(NoopTile(), argv=["plugin"], stdout=out, stderr=err, environ={})

    assert status == 1
    assert json.loads(out.getvalue())["handshake"] == "rejected"
    assert "not meant to be executed directly" in err.getvalue()


def test_requests_before_handshake_are_rejected():
    server = _server()
    response = server.handle_request({"id": 7, "method": "dispense", "params": {"name": "noop-tile"}})
    assert response["id"] == 7
    assert response["error"]["code"] == HANDSHAKE_REJECTED


def test_handshake_with_wrong_descriptor_is_rejected():
    server = _server()
    params = dict(HANDSHAKE.to_dict(), protocol_version=HANDSHAKE.protocol_version + 1)
    response = server.handle_request({"id": 1, "method": "handshake", "params": params})
    assert response["error"]["code"] == HANDSHAKE_REJECTED


def test_dispense_unknown_name():
    server = _handshaken()
    response = server.handle_request({"id": 2, "method": "dispense", "params": {"name": "missing-tile"}})
    assert response["error"]["code"] == CAPABILITY_NOT_FOUND

    response = server.handle_request({"id": 3, "method": "dispense", "params": {"name": "noop-tile"}})
    assert response["result"]["name"] == "noop-tile"
    assert "backup" in response["result"]["methods"]


def test_call_dispatches_to_the_tile(tmp_path):
    server = _handshaken()
    response = server.handle_request(
        {
            "id": 4,
            "method": "call",
            "params": {"name": "noop-tile", "function": "backup", "args": [str(tmp_path)], "kwargs": {"full": "yes"}},
        }
    )
    assert response["result"]["calls"] == 1
    assert (tmp_path / "noop-tile.json").exists()

    response = server.handle_request(
        {"id": 5, "method": "call", "params": {"name": "noop-tile", "function": "get_meta"}}
    )
    assert response["result"]["name"] == "noop-tile"


def test_call_reports_plugin_exceptions():
    server = _handshaken(BrokenTile())
    response = server.handle_request(
        {"id": 6, "method": "call", "params": {"name": "noop-tile", "function": "backup", "args": ["/nowhere"]}}
    )
    error = response["error"]
    assert error["code"] == REMOTE_CALL_FAILED
    assert error["data"]["type"] == "OSError"
    assert "no space left" in error["message"]


def test_only_capability_methods_are_callable():
    server = _handshaken()
    response = server.handle_request(
        {"id": 8, "method": "call", "params": {"name": "noop-tile", "function": "__init__"}}
    )
    assert response["error"]["code"] == METHOD_NOT_FOUND
    response = server.handle_request({"id": 9, "method": "shutdown"})
    assert response["error"]["code"] == METHOD_NOT_FOUND


def test_ping_after_handshake():
    server = _handshaken()
    assert server.handle_request({"id": 10, "method": "ping"})["result"] == {"pong": True}


def test_metadata_mode_is_repeatable(fixture_plugin):
    path = fixture_plugin("noop_tile_plugin")
    outputs = []
    for _ in range(3):
        completed = subprocess.run(
            [sys.executable, str(path), PLUGIN_META_ARG],
            capture_output=True,
            text=True,
            timeout=30,
        )
        assert completed.returncode == 0, completed.stderr
        outputs.append(completed.stdout)

    assert len(set(outputs)) == 1
    assert json.loads(outputs[0])["name"] == "noop-tile"


class _LineStream(io.StringIO):
    """StringIO that signals once the first line has been written."""

    def __init__(self):
        super().__init__()
        self.ready = threading.Event()

    def write(self, text):
        written = super().write(text)
        if "\n" in self.getvalue():
            self.ready.set()
        return written


def _serve_in_thread(tile, environ):
    out = _LineStream()
    outcome = {}

    def _run():
        outcome["status"] = start(tile, argv=["plugin"], stdout=out, environ=environ, accept_timeout=10)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    assert out.ready.wait(10), "server never announced its address"
    address = parse_handshake_line(out.getvalue().splitlines()[0], HANDSHAKE)
    return thread, outcome, address


def test_serve_mode_answers_over_a_socket(tmp_path):
    thread, outcome, address = _serve_in_thread(NoopTile(), HANDSHAKE.cookie_env())
    host, port = split_address(address)
    conn = RpcConnection.connect(host, port, plugin="noop-tile", timeout=10)
    try:
        assert conn.request("handshake", HANDSHAKE.to_dict())["plugins"] == ["noop-tile"]
        assert conn.request("ping") == {"pong": True}
        assert conn.request("dispense", {"name": "noop-tile"})["name"] == "noop-tile"
        result = conn.request(
            "call",
            {"name": "noop-tile", "function": "backup", "args": [str(tmp_path)], "kwargs": {"full": True}},
        )
        assert result["calls"] == 1
        with pytest.raises(CapabilityNotFound):
            conn.request("dispense", {"name": "elastic-runtime"})
    finally:
        conn.close()

    thread.join(10)
    assert not thread.is_alive()
    assert outcome["status"] == 0
    assert (tmp_path / "noop-tile.json").exists()


def test_serve_mode_drops_a_mismatched_orchestrator():
    thread, outcome, address = _serve_in_thread(NoopTile(), HANDSHAKE.cookie_env())
    host, port = split_address(address)
    conn = RpcConnection.connect(host, port, plugin="noop-tile", timeout=10)
    try:
        with pytest.raises(HandshakeMismatch):
            conn.request("handshake", {**HANDSHAKE.to_dict(), "protocol_version": 2})
    finally:
        conn.close()

    thread.join(10)
    assert outcome["status"] == 1
