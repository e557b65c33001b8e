"""CAN frames and their compact ASCII representation (``<can_id>#<data>``)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TextIO

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000

CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_ERR_MASK = 0x1FFFFFFF

CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64
CAN_MAX_RAW_DLC = 15

CAN_MTU = 16
CANFD_MTU = 72

CANFD_BRS = 0x01
CANFD_ESI = 0x02

CANID_DELIM = "#"
CC_DLC_DELIM = "_"
DATA_SEPARATOR = "."

_HEX_UPPER = "0123456789ABCDEF"

_DLC2LEN = (0, 1, 2, 3, 4, 5, 6, 7, 8, 12, 16, 20, 24, 32, 48, 64)

_LEN2DLC = (
    (0, 1, 2, 3, 4, 5, 6, 7, 8)
    + (9,) * 4
    + (10,) * 4
    + (11,) * 4
    + (12,) * 4
    + (13,) * 8
    + (14,) * 16
    + (15,) * 16
)


class FrameFormatError(ValueError):
    """Raised when a textual CAN frame or hex string cannot be parsed."""


@dataclass
class CanFrame:
    """A Classical CAN or CAN FD frame.

    ``length`` is the data length code's payload length; it defaults to the
    length of ``data``. RTR frames carry a length without any data bytes.
    """

    can_id: int = 0
    data: bytes = b""
    length: int | None = None
    flags: int = 0
    len8_dlc: int = 0
    fd: bool = False

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        if len(self.data) > CANFD_MAX_DLEN:
            raise ValueError(f"payload of {len(self.data)} bytes exceeds {CANFD_MAX_DLEN}")
        if self.length is None:
            self.length = len(self.data)

    def payload(self, count: int | None = None) -> bytes:
        """Return ``count`` payload bytes (default ``length``), zero padded."""
        if count is None:
            count = self.length
        return self.data[:count].ljust(count, b"\x00")

    @property
    def is_extended(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)

    @property
    def is_error(self) -> bool:
        return bool(self.can_id & CAN_ERR_FLAG)

    @property
    def mtu(self) -> int:
        return CANFD_MTU if self.fd else CAN_MTU

    @property
    def maxdlen(self) -> int:
        return CANFD_MAX_DLEN if self.fd else CAN_MAX_DLEN


def can_fd_dlc2len(dlc: int) -> int:
    """Return the payload length for a raw data length code."""
    return _DLC2LEN[dlc & 0x0F]


def can_fd_len2dlc(length: int) -> int:
    """Map a payload length to the smallest fitting data length code."""
    if length > CANFD_MAX_DLEN:
        return 0xF
    return _LEN2DLC[length]


def asc2nibble(c: str) -> int:
    """Return the value of one ASCII hex character, or 16 if it is not one."""
    if len(c) == 1:
        if "0" <= c <= "9":
            return ord(c) - ord("0")
        if "A" <= c <= "F":
            return ord(c) - ord("A") + 10
        if "a" <= c <= "f":
            return ord(c) - ord("a") + 10
    return 16


def hexstring2data(arg: str, maxdlen: int) -> bytes:
    """Convert an even-length hex string into ``maxdlen`` bytes, zero padded."""
    if not arg or len(arg) % 2 or len(arg) > maxdlen * 2:
        raise FrameFormatError(f"invalid hex string length in {arg!r}")
    out = bytearray(maxdlen)
    for pos, (hi_c, lo_c) in enumerate(zip(arg[::2], arg[1::2])):
        hi, lo = asc2nibble(hi_c), asc2nibble(lo_c)
        if hi > 0x0F or lo > 0x0F:
            raise FrameFormatError(f"non-hex character in {arg!r}")
        out[pos] = (hi << 4) | lo
    return bytes(out)


def parse_canframe(cs: str) -> CanFrame:
    """Parse a compact frame string such as ``123#1122`` or ``123##1AABB``."""
    n = len(cs)

    def at(i: int) -> str:
        return cs[i] if i < n else ""

    if n < 4:
        raise FrameFormatError(f"frame string too short: {cs!r}")

    if at(3) == CANID_DELIM:
        digits = 3
    elif at(8) == CANID_DELIM:
        digits = 8
    else:
        raise FrameFormatError(f"missing CAN id delimiter in {cs!r}")

    can_id = 0
    for ch in cs[:digits]:
        nibble = asc2nibble(ch)
        if nibble > 0x0F:
            raise FrameFormatError(f"invalid CAN id in {cs!r}")
        can_id = (can_id << 4) | nibble
    if digits == 8 and not can_id & CAN_ERR_FLAG:
        can_id |= CAN_EFF_FLAG
    idx = digits + 1

    if at(idx) in ("R", "r"):
        can_id |= CAN_RTR_FLAG
        length = 0
        len8_dlc = 0
        idx += 1
        if at(idx):
            value = asc2nibble(at(idx))
            idx += 1
            if value <= CAN_MAX_DLEN:
                length = value
                if value == CAN_MAX_DLEN and at(idx) == CC_DLC_DELIM:
                    raw = asc2nibble(at(idx + 1))
                    if CAN_MAX_DLEN < raw <= CAN_MAX_RAW_DLC:
                        len8_dlc = raw
        return CanFrame(can_id=can_id, length=length, len8_dlc=len8_dlc)

    fd = False
    flags = 0
    maxdlen = CAN_MAX_DLEN
    if at(idx) == CANID_DELIM:
        fd = True
        maxdlen = CANFD_MAX_DLEN
        flags = asc2nibble(at(idx + 1))
        if flags > 0x0F:
            raise FrameFormatError(f"invalid CAN FD flags in {cs!r}")
        idx += 2

    data = bytearray()
    for _ in range(maxdlen):
        if at(idx) == DATA_SEPARATOR:
            idx += 1
        if idx >= n:
            break
        hi = asc2nibble(at(idx))
        lo = asc2nibble(at(idx + 1))
        idx += 2
        if hi > 0x0F or lo > 0x0F:
            raise FrameFormatError(f"invalid data in {cs!r}")
        data.append((hi << 4) | lo)

    len8_dlc = 0
    if not fd and len(data) == CAN_MAX_DLEN and at(idx) == CC_DLC_DELIM:
        raw = asc2nibble(at(idx + 1))
        if CAN_MAX_DLEN < raw <= CAN_MAX_RAW_DLC:
            len8_dlc = raw

    return CanFrame(can_id=can_id, data=bytes(data), flags=flags, len8_dlc=len8_dlc, fd=fd)


def _format_id(can_id: int) -> str:
    if can_id & CAN_ERR_FLAG:
        return f"{can_id & (CAN_ERR_MASK | CAN_ERR_FLAG):08X}"
    if can_id & CAN_EFF_FLAG:
        return f"{can_id & CAN_EFF_MASK:08X}"
    return f"{can_id & CAN_SFF_MASK:03X}"


def sprint_canframe(frame: CanFrame, sep: bool, maxdlen: int) -> str:
    """Render a frame in compact format; ``maxdlen`` 8 or 64 selects CAN or CAN FD."""
    length = min(frame.length, maxdlen)
    parts = [_format_id(frame.can_id), CANID_DELIM]

    if maxdlen == CAN_MAX_DLEN and frame.can_id & CAN_RTR_FLAG:
        parts.append("R")
        if 0 < frame.length <= CAN_MAX_DLEN:
            parts.append(_HEX_UPPER[frame.length & 0x0F])
            if frame.length == CAN_MAX_DLEN and CAN_MAX_DLEN < frame.len8_dlc <= CAN_MAX_RAW_DLC:
                parts.append(CC_DLC_DELIM + _HEX_UPPER[frame.len8_dlc & 0x0F])
        return "".join(parts)

    if maxdlen == CANFD_MAX_DLEN:
        parts.append(CANID_DELIM + _HEX_UPPER[frame.flags & 0x0F])
        if sep and length:
            parts.append(DATA_SEPARATOR)

    joiner = DATA_SEPARATOR if sep else ""
    parts.append(joiner.join(f"{byte:02X}" for byte in frame.payload(length)))

    if (
        maxdlen == CAN_MAX_DLEN
        and length == CAN_MAX_DLEN
        and CAN_MAX_DLEN < frame.len8_dlc <= CAN_MAX_RAW_DLC
    ):
        parts.append(CC_DLC_DELIM + _HEX_UPPER[frame.len8_dlc & 0x0F])

    return "".join(parts)


def fprint_canframe(stream: TextIO, frame: CanFrame, eol: str | None, sep: bool, maxdlen: int) -> None:
    """Write the compact representation of ``frame`` to ``stream``."""
    stream.write(sprint_canframe(frame, sep, maxdlen))
    if eol:
        stream.write(eol)