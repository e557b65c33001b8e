"""ISO 15765-2 (ISO-TP) socket options and their command line forms."""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass, replace

from .frame import CAN_EFF_FLAG
from .j1939addr import _strtoul

AF_CAN = getattr(socket, "AF_CAN", 29)
CAN_ISOTP = getattr(socket, "CAN_ISOTP", 6)
SOL_CAN_ISOTP = 106

CAN_ISOTP_OPTS = 1
CAN_ISOTP_RECV_FC = 2
CAN_ISOTP_TX_STMIN = 3
CAN_ISOTP_RX_STMIN = 4
CAN_ISOTP_LL_OPTS = 5

CAN_ISOTP_LISTEN_MODE = 0x001
CAN_ISOTP_EXTEND_ADDR = 0x002
CAN_ISOTP_TX_PADDING = 0x004
CAN_ISOTP_RX_PADDING = 0x008
CAN_ISOTP_CHK_PAD_LEN = 0x010
CAN_ISOTP_CHK_PAD_DATA = 0x020
CAN_ISOTP_HALF_DUPLEX = 0x040
CAN_ISOTP_FORCE_TXSTMIN = 0x080
CAN_ISOTP_FORCE_RXSTMIN = 0x100
CAN_ISOTP_RX_EXT_ADDR = 0x200
CAN_ISOTP_WAIT_TX_DONE = 0x400
CAN_ISOTP_SF_BROADCAST = 0x800

NO_CAN_ID = 0xFFFFFFFF

_U8 = 0xFF
_U32 = 0xFFFFFFFF


class OptionError(ValueError):
    """Raised when a command line option value cannot be understood."""


@dataclass(frozen=True)
class IsotpOptions:
    """General ISO-TP socket options; ``force_tx_stmin`` is set separately."""

    flags: int = 0
    frame_txtime: int = 0
    ext_address: int = 0
    txpad_content: int = 0
    rxpad_content: int = 0
    rx_ext_address: int = 0
    force_tx_stmin: int = 0

    def pack(self) -> bytes:
        """Return the kernel's binary layout of these options."""
        return struct.pack(
            "=IIBBBB",
            self.flags & _U32,
            self.frame_txtime & _U32,
            self.ext_address & _U8,
            self.txpad_content & _U8,
            self.rxpad_content & _U8,
            self.rx_ext_address & _U8,
        )


@dataclass(frozen=True)
class FlowControlOptions:
    """Flow control parameters sent to the data source."""

    bs: int = 0
    stmin: int = 0
    wftmax: int = 0

    def pack(self) -> bytes:
        """Return the kernel's binary layout of these options."""
        return struct.pack("=BBB", self.bs & _U8, self.stmin & _U8, self.wftmax & _U8)


@dataclass(frozen=True)
class LinkLayerOptions:
    """CAN FD link layer options."""

    mtu: int = 0
    tx_dl: int = 0
    tx_flags: int = 0

    def pack(self) -> bytes:
        """Return the kernel's binary layout of these options."""
        return struct.pack("=BBB", self.mtu & _U8, self.tx_dl & _U8, self.tx_flags & _U8)


def parse_can_id(text: str) -> int:
    """Parse a hexadecimal CAN ID; more than 7 digits selects an extended ID."""
    can_id = _strtoul(text, 16)[0] & _U32
    if len(text) > 7:
        can_id |= CAN_EFF_FLAG
    return can_id


def _scan_hex_pair(text: str) -> list[int]:
    first, used = _strtoul(text, 16)
    if not used:
        return []
    rest = text[used:]
    if not rest.startswith(":"):
        return [first & _U8]
    second, used = _strtoul(rest[1:], 16)
    return [first & _U8, second & _U8] if used else [first & _U8]


def parse_ext_address(text: str, opts: IsotpOptions) -> IsotpOptions:
    """Apply ``<addr>[:<rxaddr>]`` extended addressing to ``opts``."""
    values = _scan_hex_pair(text)
    if len(values) == 1:
        return replace(opts, ext_address=values[0], flags=opts.flags | CAN_ISOTP_EXTEND_ADDR)
    if len(values) == 2:
        return replace(
            opts,
            ext_address=values[0],
            rx_ext_address=values[1],
            flags=opts.flags | CAN_ISOTP_EXTEND_ADDR | CAN_ISOTP_RX_EXT_ADDR,
        )
    raise OptionError(f"incorrect extended addr values '{text}'.")


def parse_padding(text: str, opts: IsotpOptions) -> IsotpOptions:
    """Apply ``[tx]:[rx]`` padding bytes to ``opts``."""
    values = _scan_hex_pair(text)
    if len(values) == 1:
        return replace(opts, txpad_content=values[0], flags=opts.flags | CAN_ISOTP_TX_PADDING)
    if len(values) == 2:
        return replace(
            opts,
            txpad_content=values[0],
            rxpad_content=values[1],
            flags=opts.flags | CAN_ISOTP_TX_PADDING | CAN_ISOTP_RX_PADDING,
        )
    if text.startswith(":"):
        rx, used = _strtoul(text[1:], 16)
        if used:
            return replace(opts, rxpad_content=rx & _U8, flags=opts.flags | CAN_ISOTP_RX_PADDING)
    raise OptionError(f"incorrect padding values '{text}'.")


_PAD_CHECKS = {
    "l": CAN_ISOTP_CHK_PAD_LEN,
    "c": CAN_ISOTP_CHK_PAD_DATA,
    "a": CAN_ISOTP_CHK_PAD_LEN | CAN_ISOTP_CHK_PAD_DATA,
}


def parse_pad_check(text: str, opts: IsotpOptions) -> IsotpOptions:
    """Enable rx padding checks for (l)ength, (c)ontent or (a)ll."""
    mode = text[:1]
    if mode not in _PAD_CHECKS:
        raise OptionError(f"unknown padding check option '{mode}'.")
    return replace(opts, flags=opts.flags | _PAD_CHECKS[mode])


def parse_link_layer(text: str) -> LinkLayerOptions:
    """Parse ``<mtu>:<tx_dl>:<tx_flags>`` in decimal."""
    values = []
    rest = text
    for position in range(3):
        if position:
            if not rest.startswith(":"):
                break
            rest = rest[1:]
        value, used = _strtoul(rest, 10)
        if not used:
            break
        values.append(value & _U8)
        rest = rest[used:]
    if len(values) != 3:
        raise OptionError(f"unknown link layer options '{text}'.")
    return LinkLayerOptions(*values)


def open_isotp_socket(
    interface: str,
    tx_id: int,
    rx_id: int,
    opts: IsotpOptions,
    fcopts: FlowControlOptions | None = None,
    llopts: LinkLayerOptions | None = None,
) -> socket.socket:
    """Open an ISO-TP socket with the given options, bound to ``interface``."""
    sock = socket.socket(AF_CAN, socket.SOCK_DGRAM, CAN_ISOTP)
    try:
        sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_OPTS, opts.pack())
        if fcopts is not None:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_RECV_FC, fcopts.pack())
        if llopts is not None and llopts.tx_dl:
            try:
                sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_LL_OPTS, llopts.pack())
            except OSError as exc:
                raise OSError(exc.errno, f"link layer sockopt: {exc.strerror}") from exc
        if opts.flags & CAN_ISOTP_FORCE_TXSTMIN:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_TX_STMIN, struct.pack("=I", opts.force_tx_stmin & _U32))
        sock.bind((interface, rx_id, tx_id))
    except BaseException:
        sock.close()
        raise
    return sock