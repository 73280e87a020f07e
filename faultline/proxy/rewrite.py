"""
Byte-level rewrite rules for relayed traffic.

Membership protocols announce their own listening address inside payloads;
if a peer learns a node's real inter-node port it will bypass the partition
proxy. A rewrite rule patches those announcements in flight so every peer
keeps dialing through the proxy.

Rules only see bytes. ``AddressAnnouncementRule`` matches a small header
shape, not a protocol frame:

    marker | host_len (u8) | host (ASCII, host_len bytes) | port (u16, big-endian)

and only rewrites when the whole field is present, the length is within
bounds, every host byte is a legal hostname character and the announced
address is one the rule was told to map. Everything else passes through
untouched.

TCP gives no message boundaries, so a field may be split across reads.
``StreamRewriter`` holds back the unconsumed tail a rule reports and
prepends it to the next chunk.
"""

from __future__ import annotations

import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from faultline.datastructures.type_aliases import Endpoint

MAX_HOST_LENGTH = 253
PORT_WIDTH = 2

_HOST_BYTES = frozenset((string.ascii_letters + string.digits + ".-:_").encode("ascii"))


class RewriteRule(Protocol):
    """Transforms a relayed byte stream.

    ``rewrite`` returns the output for ``buffer[:consumed]`` and ``consumed``.
    Bytes past ``consumed`` are offered again with the next chunk. With
    ``final=True`` the rule must consume everything.
    """

    def rewrite(self, buffer: bytes, final: bool = False) -> tuple[bytes, int]: ...


@dataclass(frozen=True, slots=True)
class FunctionRule:
    """Adapts a plain ``(bytes) -> bytes`` function applied per chunk."""

    function: Callable[[bytes], bytes]

    def rewrite(self, buffer: bytes, final: bool = False) -> tuple[bytes, int]:
        return self.function(buffer), len(buffer)


def encode_announcement(marker: bytes, endpoint: Endpoint) -> bytes:
    """Encode ``endpoint`` as an address announcement field."""
    host, port = endpoint
    host_bytes = host.encode("ascii")
    if not 1 <= len(host_bytes) <= MAX_HOST_LENGTH:
        raise ValueError(f"Host length out of bounds: {host!r}")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"Port out of range: {port}")
    return marker + bytes([len(host_bytes)]) + host_bytes + port.to_bytes(PORT_WIDTH, "big")


def decode_announcement(marker: bytes, data: bytes) -> Endpoint | None:
    """Decode the first well-formed announcement field in ``data``."""
    start = data.find(marker)
    while start != -1:
        endpoint, _ = _parse_field(marker, data, start)
        if endpoint is not None:
            return endpoint
        start = data.find(marker, start + 1)
    return None


def _parse_field(
    marker: bytes, data: bytes, start: int
) -> tuple[Endpoint | None, int]:
    """Parse a field at ``start``.

    Returns ``(endpoint, end)`` for a structurally valid field, ``(None, -1)``
    when the bytes cannot be a field and ``(None, 0)`` when more bytes are
    needed to decide.
    """
    length_at = start + len(marker)
    if length_at >= len(data):
        return None, 0
    host_len = data[length_at]
    if not 1 <= host_len <= MAX_HOST_LENGTH:
        return None, -1
    host_start = length_at + 1
    end = host_start + host_len + PORT_WIDTH
    available_host = data[host_start : min(end - PORT_WIDTH, len(data))]
    if any(byte not in _HOST_BYTES for byte in available_host):
        return None, -1
    if end > len(data):
        return None, 0
    host = data[host_start : host_start + host_len].decode("ascii")
    port = int.from_bytes(data[end - PORT_WIDTH : end], "big")
    return (host, port), end


@dataclass(slots=True)
class AddressAnnouncementRule:
    """Rewrites announced addresses found in ``mapping``."""

    marker: bytes
    mapping: Mapping[Endpoint, Endpoint]
    rewrites: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if not self.marker:
            raise ValueError("Announcement marker must not be empty")

    def rewrite(self, buffer: bytes, final: bool = False) -> tuple[bytes, int]:
        marker = self.marker
        out = bytearray()
        pos = 0
        while True:
            start = buffer.find(marker, pos)
            if start == -1:
                safe_end = len(buffer) if final else len(buffer) - self._marker_prefix_tail(buffer, pos)
                out += buffer[pos:safe_end]
                return bytes(out), safe_end

            endpoint, end = _parse_field(marker, buffer, start)
            if end == 0:
                if final:
                    out += buffer[pos:]
                    return bytes(out), len(buffer)
                out += buffer[pos:start]
                return bytes(out), start
            if end == -1:
                out += buffer[pos : start + 1]
                pos = start + 1
                continue

            out += buffer[pos:start]
            replacement = self.mapping.get(endpoint) if endpoint is not None else None
            if replacement is None:
                out += buffer[start:end]
            else:
                out += encode_announcement(marker, replacement)
                self.rewrites += 1
            pos = end

    def _marker_prefix_tail(self, buffer: bytes, pos: int) -> int:
        """Length of the longest suffix of ``buffer[pos:]`` that starts the marker."""
        longest = min(len(self.marker) - 1, len(buffer) - pos)
        for size in range(longest, 0, -1):
            if self.marker.startswith(buffer[len(buffer) - size :]):
                return size
        return 0


class StreamRewriter:
    """Applies a rule to a chunked stream, carrying partial matches over."""

    __slots__ = ("rule", "_pending")

    def __init__(self, rule: RewriteRule) -> None:
        self.rule = rule
        self._pending = b""

    def feed(self, chunk: bytes) -> bytes:
        data = self._pending + chunk
        out, consumed = self.rule.rewrite(data, final=False)
        self._pending = data[consumed:]
        return out

    def flush(self) -> bytes:
        if not self._pending:
            return b""
        out, _ = self.rule.rewrite(self._pending, final=True)
        self._pending = b""
        return out

    @property
    def pending(self) -> int:
        return len(self._pending)
