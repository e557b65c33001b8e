"""SAE J1939 socket addresses and their textual ``[IFACE:][NAME|SA][,PGN]`` form."""

from __future__ import annotations

import socket
import string
from dataclasses import dataclass, replace

J1939_NO_NAME = 0
J1939_NO_ADDR = 0xFF
J1939_IDLE_ADDR = 0xFE
J1939_NO_PGN = 0x40000

J1939_PGN_MAX = 0x3FFFF
J1939_PGN_PDU1_MAX = 0x3FF00
J1939_PGN_REQUEST = 0x0EA00
J1939_PGN_ADDRESS_CLAIMED = 0x0EE00
J1939_PGN_ADDRESS_COMMANDED = 0x0FED8

IFNAMSIZ = 16

_U8 = 0xFF
_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class J1939Address:
    """A J1939 socket address: interface index, 64 bit NAME, source address and PGN."""

    ifindex: int = 0
    name: int = J1939_NO_NAME
    addr: int = J1939_NO_ADDR
    pgn: int = J1939_NO_PGN

    @property
    def interface(self) -> str:
        """The interface name, or an empty string for 'any interface'."""
        if not self.ifindex:
            return ""
        return _ifname(self.ifindex) or ""

    def sockaddr(self) -> tuple[str, int, int, int]:
        """Return the address tuple used by Python's J1939 sockets."""
        return (self.interface, self.name, self.pgn, self.addr)


def _digit(ch: str) -> int | None:
    if ch.isascii() and ch.isalnum():
        return int(ch, 36)
    return None


def _strtoul(text: str, base: int = 0) -> tuple[int, int]:
    """Parse a leading unsigned integer; return ``(value, characters consumed)``.

    Nothing consumed means no number was found. Base 0 detects ``0x`` and
    octal prefixes.
    """
    n = len(text)
    i = 0
    while i < n and text[i] in " \t\n\v\f\r":
        i += 1
    negative = False
    if i < n and text[i] in "+-":
        negative = text[i] == "-"
        i += 1
    has_hex_after_prefix = i + 2 < n and text[i + 2] in string.hexdigits
    if base in (0, 16) and text[i:i + 2].lower() == "0x" and has_hex_after_prefix:
        base = 16
        i += 2
    elif base == 0:
        base = 8 if text[i:i + 1] == "0" else 10
    start = i
    value = 0
    while i < n:
        d = _digit(text[i])
        if d is None or d >= base:
            break
        value = value * base + d
        i += 1
    if i == start:
        return 0, 0
    return (-value if negative else value), i


def _ifname(ifindex: int) -> str | None:
    try:
        return socket.if_indextoname(ifindex)
    except (OSError, OverflowError, ValueError):
        return None


def _nametoindex(name: str) -> int:
    try:
        return socket.if_nametoindex(name)
    except OSError:
        return 0


def _ifindex(text: str) -> int:
    """Resolve a numeric interface index or an interface name; 0 if unknown."""
    value, used = _strtoul(text, 0)
    if used == len(text):
        return value
    try:
        names = socket.if_nameindex()
    except OSError:
        return 0
    for index, name in names:
        if name == text:
            return index
    return 0


def parse_canaddr(spec: str, address: J1939Address | None = None) -> J1939Address:
    """Apply ``[IFACE][:[SA][,[PGN][,NAME]]]`` to ``address``; empty fields keep their value."""
    if address is None:
        address = J1939Address()
    changes: dict[str, int] = {}

    iface, colon, rest = spec.partition(":")
    if iface:
        changes["ifindex"] = _nametoindex(iface)

    if colon:
        fields = rest.split(",")
        for key, mask, field in zip(("addr", "pgn", "name"), (_U8, _U32, _U64), fields):
            if field:
                changes[key] = _strtoul(field, 0)[0] & mask

    return replace(address, **changes)


def str2addr(text: str) -> J1939Address:
    """Parse ``[IFACE:][NAME|SA][,PGN]``; two hex digits denote a source address."""
    ifindex = 0
    colon = text.find(":")
    if colon >= 0:
        if colon >= IFNAMSIZ:
            raise ValueError(f"interface name too long in {text!r}")
        ifindex = _ifindex(text[:colon])
        rest = text[colon + 1:]
    else:
        ifindex = _ifindex(text)
        if ifindex:
            return J1939Address(ifindex=ifindex)
        rest = text

    address = J1939Address(ifindex=ifindex)
    value, used = _strtoul(rest, 16)
    if not used:
        return address
    if used == 2:
        address = replace(address, addr=value & _U8)
    else:
        address = replace(address, name=value & _U64)

    tail = rest[used:]
    if not tail:
        return address
    pgn, used = _strtoul(tail[1:], 16)
    if used:
        address = replace(address, pgn=pgn & _U32)
    return address


def addr2str(address: J1939Address) -> str:
    """Render an address as ``[IFACE:]NAME[.SA]|SA|-[,PGN]``."""
    parts = []
    if address.ifindex:
        ifname = _ifname(address.ifindex)
        parts.append(f"{ifname}:" if ifname else f"#{address.ifindex}:")
    if address.name:
        parts.append(f"{address.name:016x}")
        if address.pgn == J1939_PGN_ADDRESS_CLAIMED:
            parts.append(f".{address.addr:02x}")
    elif address.addr <= 0xFE:
        parts.append(f"{address.addr:02x}")
    else:
        parts.append("-")
    if address.pgn <= J1939_PGN_MAX:
        parts.append(f",{address.pgn:05x}")
    return "".join(parts)