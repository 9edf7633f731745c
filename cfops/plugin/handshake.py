from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import HandshakeMismatch

# Bumped only when the framing below changes incompatibly.
CORE_PROTOCOL_VERSION = 1

PLUGIN_META_ARG = "plugin-meta"
PLUGIN_SERVE_ARG = "plugin"

NETWORK = "tcp"
PROTOCOL = "jsonrpc"


@dataclass(frozen=True)
class HandshakeConfig:
    """Protocol version plus magic cookie both sides must agree on.

    This keeps an orchestrator from talking to an incompatible or unrelated
    executable. It is not an authentication mechanism.
    """

    protocol_version: int
    magic_cookie_key: str
    magic_cookie_value: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_version": self.protocol_version,
            "magic_cookie_key": self.magic_cookie_key,
            "magic_cookie_value": self.magic_cookie_value,
        }

    def matches(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        return payload == self.to_dict()

    def cookie_env(self) -> Dict[str, str]:
        return {self.magic_cookie_key: self.magic_cookie_value}


HANDSHAKE = HandshakeConfig(
    protocol_version=1,
    magic_cookie_key="CFOPS_PLUGIN_MAGIC_COOKIE",
    magic_cookie_value="a3f8c7b1e4d25f9064c1b7d8e2a9f3c5",
)


def handshake_line(handshake: HandshakeConfig, address: str) -> str:
    """The line a serving plugin writes to stdout once it is listening."""
    return json.dumps(
        {
            "core_protocol_version": CORE_PROTOCOL_VERSION,
            "protocol_version": handshake.protocol_version,
            "network": NETWORK,
            "address": address,
            "protocol": PROTOCOL,
        },
        separators=(",", ":"),
    )


def rejection_line(reason: str) -> str:
    return json.dumps({"handshake": "rejected", "reason": reason}, separators=(",", ":"))


def parse_handshake_line(line: str, handshake: HandshakeConfig, *, plugin: Optional[str] = None) -> str:
    """Validate a plugin's handshake line and return the address to dial."""
    text = (line or "").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        raise HandshakeMismatch(
            f"unrecognized handshake line {text[:80]!r}; is this a cfops plugin?",
            plugin=plugin,
        ) from None
    if not isinstance(payload, dict):
        raise HandshakeMismatch(f"unrecognized handshake line {text[:80]!r}", plugin=plugin)
    if payload.get("handshake") == "rejected":
        reason = payload.get("reason") or "rejected by plugin"
        raise HandshakeMismatch(f"plugin rejected handshake: {reason}", plugin=plugin)
    core = payload.get("core_protocol_version")
    if core != CORE_PROTOCOL_VERSION:
        raise HandshakeMismatch(
            f"incompatible core protocol version {core!r} (expected {CORE_PROTOCOL_VERSION})",
            plugin=plugin,
        )
    version = payload.get("protocol_version")
    if version != handshake.protocol_version:
        raise HandshakeMismatch(
            f"incompatible plugin protocol version {version!r} (expected {handshake.protocol_version})",
            plugin=plugin,
        )
    if payload.get("network") != NETWORK or payload.get("protocol") != PROTOCOL:
        raise HandshakeMismatch(
            f"unsupported transport {payload.get('network')!r}/{payload.get('protocol')!r}",
            plugin=plugin,
        )
    address = payload.get("address")
    if not isinstance(address, str) or ":" not in address:
        raise HandshakeMismatch(f"invalid plugin address {address!r}", plugin=plugin)
    return address


def split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host, int(port)


__all__ = [
    "HandshakeConfig",
    "HANDSHAKE",
    "CORE_PROTOCOL_VERSION",
    "PLUGIN_META_ARG",
    "PLUGIN_SERVE_ARG",
    "handshake_line",
    "rejection_line",
    "parse_handshake_line",
    "split_address",
]
