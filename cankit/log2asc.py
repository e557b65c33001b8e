"""Convert compact CAN frame log files into the ASC log format."""

from __future__ import annotations

import argparse
import re
import sys
import time
from contextlib import ExitStack
from typing import Iterable, TextIO

from .frame import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_MAX_DLEN,
    CAN_MAX_RAW_DLC,
    CAN_MTU,
    CANFD_BRS,
    CANFD_ESI,
    CanFrame,
    FrameFormatError,
    can_fd_len2dlc,
    parse_canframe,
)

ASC_F_RTR = 0x00000010
ASC_F_FDF = 0x00001000
ASC_F_BRS = 0x00002000
ASC_F_ESI = 0x00004000

_BUFSZ = 400
_MAX_LINE = _BUFSZ - 2
_SYMBOL_PAD = " " * 34

_LINE_RE = re.compile(r"\((\d+)\.(\d+)\)\s*(\S+)\s+(\S+)(?:\s+(\S+))?")

_USAGE = """{prg} - convert compact CAN frame logfile to ASC logfile.
Usage: {prg} <options> [can-interfaces]
Options:
         -I <infile>   (default stdin)
         -O <outfile>  (default stdout)
         -4  (reduce decimal place to 4 digits)
         -n  (set newline to cr/lf - default lf)
         -f  (use CANFD format also for Classic CAN)
         -r  (suppress dlc for RTR frames - pre v8.5 tools)
"""


class LogFormatError(ValueError):
    """Raised when a log file line cannot be converted."""


def _asc_id(frame: CanFrame) -> str:
    return f"{frame.can_id & CAN_EFF_MASK:X}{'x' if frame.can_id & CAN_EFF_FLAG else ' '}"


def can_asc(frame: CanFrame, devno: int, nortrdlc: bool, extra_info: str) -> str:
    """Render a Classical CAN frame as an ASC line body (without timestamp)."""
    out = f"{devno:<2d} "
    if frame.is_error:
        return out + "ErrorFrame"

    direction = "Tx" if extra_info.startswith("T") else "Rx"
    out += f"{_asc_id(frame):<15s} {direction}   "
    if frame.is_remote:
        out += "r" if nortrdlc else f"r {frame.length}"
    else:
        out += f"d {frame.length}"
        out += "".join(f" {byte:02X}" for byte in frame.payload())
    return out


def canfd_asc(frame: CanFrame, devno: int, mtu: int, extra_info: str) -> str:
    """Render a frame in the ASC CAN FD line format (without timestamp)."""
    dlen = frame.length
    dlc = can_fd_len2dlc(dlen)
    direction = "Tx" if extra_info.startswith("T") else "Rx"

    out = f"CANFD {devno:3d} {direction} "
    out += f"{_asc_id(frame):>11s}{_SYMBOL_PAD}"
    out += f"{'1' if frame.flags & CANFD_BRS else '0'} "
    out += f"{'1' if frame.flags & CANFD_ESI else '0'} "

    if mtu == CAN_MTU and dlen == CAN_MAX_DLEN and CAN_MAX_DLEN < frame.len8_dlc <= CAN_MAX_RAW_DLC:
        dlc = frame.len8_dlc
    out += f"{dlc:x} "

    flags = 0
    if mtu == CAN_MTU:
        if frame.is_remote:
            dlen = 0
            flags = ASC_F_RTR
    else:
        flags = ASC_F_FDF
        if frame.flags & CANFD_BRS:
            flags |= ASC_F_BRS
        if frame.flags & CANFD_ESI:
            flags |= ASC_F_ESI

    out += f"{dlen:2d}"
    out += "".join(f" {byte:02X}" for byte in frame.payload(dlen))
    out += f" {130000:8d} {130:4d} {flags:8X} 0 0 0 0 0"
    return out


def convert(
    infile: Iterable[str],
    outfile: TextIO,
    devices: Iterable[str],
    crlf: bool = False,
    fdfmt: bool = False,
    nortrdlc: bool = False,
    d4: bool = False,
) -> int:
    """Convert a compact log to ASC; return the number of frames written."""
    eol = "\r\n" if crlf else "\n"
    devices = list(devices)
    start_sec = start_usec = 0
    written = 0

    for line in infile:
        if len(line) >= _MAX_LINE:
            raise LogFormatError("line too long for input buffer")
        if not line.startswith("("):
            continue

        match = _LINE_RE.match(line)
        if not match:
            raise LogFormatError("incorrect line format in logfile")
        sec, usec = int(match.group(1)), int(match.group(2))
        device, ascframe = match.group(3), match.group(4)
        extra_info = match.group(5) or ""

        if not start_sec:
            start_sec, start_usec = sec, usec
            outfile.write(f"date {time.ctime(start_sec)}\n")
            outfile.write(f"base hex  timestamps absolute{eol}")
            outfile.write(f"no internal events logged{eol}")

        if device not in devices:
            continue
        devno = devices.index(device) + 1

        try:
            frame = parse_canframe(ascframe)
        except FrameFormatError as exc:
            raise LogFormatError(f"invalid CAN frame {ascframe!r}") from exc

        # error message frames are not supported in CAN FD
        if frame.fd and frame.is_error:
            continue

        dsec, dusec = sec - start_sec, usec - start_usec
        if dusec < 0:
            dsec -= 1
            dusec += 1_000_000
        if dsec < 0:
            dsec = dusec = 0

        stamp = f"{dsec:4d}.{dusec // 100:04d} " if d4 else f"{dsec:4d}.{dusec:06d} "
        if not frame.fd and not fdfmt:
            body = can_asc(frame, devno, nortrdlc, extra_info)
        else:
            body = canfd_asc(frame, devno, frame.mtu, extra_info)
        outfile.write(stamp + body + eol)
        written += 1

    return written


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="log2asc", add_help=False)
    parser.add_argument("-I", dest="infile")
    parser.add_argument("-O", dest="outfile")
    parser.add_argument("-4", dest="d4", action="store_true")
    parser.add_argument("-n", dest="crlf", action="store_true")
    parser.add_argument("-f", dest="fdfmt", action="store_true")
    parser.add_argument("-r", dest="nortrdlc", action="store_true")
    parser.add_argument("-?", "--help", dest="help", action="store_true")
    parser.add_argument("devices", nargs="*")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    args = _build_parser().parse_args(argv)
    usage = _USAGE.format(prg="log2asc")

    if args.help:
        sys.stderr.write(usage)
        return 0
    if not args.devices:
        sys.stderr.write("no CAN interfaces defined!\n")
        sys.stderr.write(usage)
        return 1

    with ExitStack() as stack:
        infile: TextIO = sys.stdin
        outfile: TextIO = sys.stdout
        if args.infile:
            try:
                infile = stack.enter_context(open(args.infile, encoding="ascii", errors="replace"))
            except OSError as exc:
                print(f"infile: {exc.strerror}", file=sys.stderr)
                return 1
        if args.outfile:
            try:
                outfile = stack.enter_context(open(args.outfile, "w", encoding="ascii", newline=""))
            except OSError as exc:
                print(f"outfile: {exc.strerror}", file=sys.stderr)
                return 1
        try:
            convert(infile, outfile, args.devices, args.crlf, args.fdfmt, args.nortrdlc, args.d4)
        except LogFormatError as exc:
            print(exc, file=sys.stderr)
            return 1
        outfile.flush()
    return 0