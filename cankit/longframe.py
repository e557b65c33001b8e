"""Human readable CAN frame rendering and CAN error frame decoding."""

from __future__ import annotations

from enum import IntFlag
from typing import TextIO

from .frame import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_ERR_FLAG,
    CAN_ERR_MASK,
    CAN_MAX_DLEN,
    CAN_MAX_RAW_DLC,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CanFrame,
)

SWAP_DELIMITER = "`"

_HEX_UPPER = "0123456789ABCDEF"

CAN_ERR_LOSTARB = 0x00000002
CAN_ERR_CRTL = 0x00000004
CAN_ERR_PROT = 0x00000008

# Names of the error class bits in the CAN id, lowest bit first.
_ERROR_CLASSES = (
    "tx-timeout lost-arbitration controller-problem protocol-violation "
    "transceiver-status no-acknowledgement-on-tx bus-off bus-error "
    "restarted-after-bus-off"
).split()

# Names of the controller problem bits in data[1], lowest bit first.
_CONTROLLER_PROBLEMS = (
    "rx-overflow tx-overflow rx-error-warning tx-error-warning "
    "rx-error-passive tx-error-passive back-to-error-active"
).split()

# Names of the protocol violation type bits in data[2], lowest bit first.
_PROTOCOL_VIOLATION_TYPES = (
    "single-bit-error frame-format-error bit-stuffing-error "
    "tx-dominant-bit-error tx-recessive-bit-error bus-overload "
    "active-error error-on-tx"
).split()

# Known protocol violation locations in data[3]; other codes below the
# table size are reported as unspecified.
_LOCATION_TABLE_SIZE = 32
_PROTOCOL_VIOLATION_LOCATIONS = {
    0x02: "id.28-to-id.21",
    0x03: "start-of-frame",
    0x04: "bit-srtr",
    0x05: "bit-ide",
    0x06: "id.20-to-id.18",
    0x07: "id.17-to-id.13",
    0x08: "crc-sequence",
    0x09: "reserved-bit-0",
    0x0A: "data-field",
    0x0B: "data-length-code",
    0x0C: "bit-rtr",
    0x0D: "reserved-bit-1",
    0x0E: "id.4-to-id.0",
    0x0F: "id.12-to-id.5",
    0x11: "active-error-flag",
    0x12: "intermission",
    0x13: "tolerate-dominant-bits",
    0x16: "passive-error-flag",
    0x17: "error-delimiter",
    0x18: "crc-delimiter",
    0x19: "acknowledge-slot",
    0x1A: "end-of-frame",
    0x1B: "acknowledge-delimiter",
    0x1C: "overload-flag",
}


class View(IntFlag):
    """Options for the long frame representation."""

    ASCII = 0x01
    BINARY = 0x02
    SWAP = 0x04
    ERROR = 0x08
    INDENT_SFF = 0x10
    LEN8_DLC = 0x20


def _identifier(frame: CanFrame, view: int) -> tuple[str, int]:
    """Return the padded identifier column and the offset of the length field."""
    if frame.can_id & CAN_ERR_FLAG:
        return f"{frame.can_id & (CAN_ERR_MASK | CAN_ERR_FLAG):08X}  ", 10
    if frame.can_id & CAN_EFF_FLAG:
        return f"{frame.can_id & CAN_EFF_MASK:08X}  ", 10
    sff = f"{frame.can_id & CAN_SFF_MASK:03X}"
    if view & View.INDENT_SFF:
        return f"     {sff}  ", 10
    return f"{sff}  ", 5


def sprint_long_canframe(frame: CanFrame, view: int, maxdlen: int) -> str:
    """Render ``frame`` in the long, user readable format.

    ``maxdlen`` 8 selects Classical CAN, 64 selects CAN FD.
    """
    length = min(frame.length, maxdlen)
    data = frame.payload(length)
    out, _ = _identifier(frame, view)

    if maxdlen == CAN_MAX_DLEN:
        if view & View.LEN8_DLC:
            dlc = frame.len8_dlc
            if not (length == CAN_MAX_DLEN and CAN_MAX_DLEN < dlc <= CAN_MAX_RAW_DLC):
                dlc = length
            out += " {" + _HEX_UPPER[dlc] + "} "
        else:
            out += f" [{length}] "
        if frame.can_id & CAN_RTR_FLAG:
            return out + " remote request"
    else:
        out = out[:-1] + f"[{length:02d}] "

    swap = bool(view & View.SWAP)
    binary = bool(view & View.BINARY)
    ordered = data[::-1] if swap else data
    width = 9 if binary else 3
    cells = [f"{byte:08b}" if binary else f"{byte:02X}" for byte in ordered]
    if swap:
        out += "".join((" " if i == 0 else SWAP_DELIMITER) + cell for i, cell in enumerate(cells))
    else:
        out += "".join(" " + cell for cell in cells)

    # ASCII and error frame marks are only shown for Classical CAN payload sizes
    if length > CAN_MAX_DLEN:
        return out

    if frame.can_id & CAN_ERR_FLAG:
        out += "ERRORFRAME".rjust(width * (CAN_MAX_DLEN - length) + 13)
    elif view & View.ASCII:
        quote = SWAP_DELIMITER if swap else "'"
        text = "".join(chr(b) if 0x1F < b < 0x7F else "." for b in ordered)
        out += quote.rjust(width * (CAN_MAX_DLEN - length) + 4) + text + quote
    return out


def fprint_long_canframe(stream: TextIO, frame: CanFrame, eol: str | None, view: int, maxdlen: int) -> None:
    """Write the long representation of ``frame`` to ``stream``."""
    stream.write(sprint_long_canframe(frame, view, maxdlen))
    if view & View.ERROR and frame.can_id & CAN_ERR_FLAG:
        stream.write("\n\t" + format_error_frame(frame, "\n\t"))
    if eol:
        stream.write(eol)


def _error_bits(value: int, names: list[str]) -> str:
    return ",".join(name for bit, name in enumerate(names) if value & (1 << bit))


def _location_name(code: int) -> str:
    if 0 < code < _LOCATION_TABLE_SIZE:
        return _PROTOCOL_VIOLATION_LOCATIONS.get(code, "unspecified")
    return ""


def format_error_frame(frame: CanFrame, sep: str | None = ",") -> str:
    """Describe the error classes and details carried by an error frame."""
    if not frame.can_id & CAN_ERR_FLAG:
        return ""

    err_class = frame.can_id & CAN_EFF_MASK
    if err_class > (1 << len(_ERROR_CLASSES)):
        raise ValueError(f"Error class {err_class:#x} is invalid")
    if sep is None:
        sep = ","

    data = frame.payload(CAN_MAX_DLEN)
    parts = []
    for bit, name in enumerate(_ERROR_CLASSES):
        mask = 1 << bit
        if not err_class & mask:
            continue
        text = name
        if mask == CAN_ERR_LOSTARB:
            text += f"{{at bit {data[0]}}}"
        elif mask == CAN_ERR_CRTL:
            text += "{" + _error_bits(data[1], _CONTROLLER_PROBLEMS) + "}"
        elif mask == CAN_ERR_PROT:
            types = _error_bits(data[2], _PROTOCOL_VIOLATION_TYPES)
            text += "{{" + types + "}{" + _location_name(data[3]) + "}}"
        parts.append(text)

    result = sep.join(parts)
    if data[6] or data[7]:
        result += f"{sep}error-counter-tx-rx{{{{{data[6]}}}{{{data[7]}}}}}"
    return result