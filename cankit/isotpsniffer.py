"""Dump ISO 15765-2 datagrams exchanged between two CAN IDs."""

from __future__ import annotations

import argparse
import fcntl
import select
import socket
import struct
import sys
import time
from contextlib import ExitStack
from dataclasses import replace

from .frame import CAN_EFF_MASK
from .isotp import (
    AF_CAN,
    CAN_ISOTP,
    CAN_ISOTP_EXTEND_ADDR,
    CAN_ISOTP_LISTEN_MODE,
    CAN_ISOTP_LL_OPTS,
    CAN_ISOTP_OPTS,
    CAN_ISOTP_RX_EXT_ADDR,
    NO_CAN_ID,
    SOL_CAN_ISOTP,
    IsotpOptions,
    LinkLayerOptions,
    OptionError,
    open_isotp_socket,
    parse_can_id,
    parse_link_layer,
)
from .j1939addr import IFNAMSIZ, _strtoul

FORMAT_HEX = 1
FORMAT_ASCII = 2
FORMAT_DEFAULT = FORMAT_ASCII | FORMAT_HEX

FGRED = "\033[31m"
FGBLUE = "\033[34m"
ATTRESET = "\033[0m"

TIMESTAMP_MODES = "aAdz"
SIOCGSTAMP = 0x8906
_TIMEVAL_FORMAT = "@qq"
_MAX_PDU = 4095

_USAGE = """
Usage: {prg} [options] <CAN interface>
Options:
         -s <can_id>  (source can_id. Use 8 digits for extended IDs)
         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)
         -x <addr>    (extended addressing mode)
         -X <addr>    (extended addressing mode - rx addr)
         -c           (color mode)
         -t <type>    (timestamp: (a)bsolute/(d)elta/(z)ero/(A)bsolute w date)
         -f <format>  (1 = HEX, 2 = ASCII, 3 = HEX & ASCII - default: {default})
         -L <mtu>:<tx_dl>:<tx_flags>  (link layer options for CAN FD)
         -h <len>    (head: print only first <len> bytes)

CAN IDs and addresses are given and expected in hexadecimal values.

"""


def _print_usage() -> None:
    sys.stderr.write(_USAGE.format(prg="isotpsniffer", default=FORMAT_DEFAULT))


class Timestamper:
    """Formats receive times as absolute, dated, delta or zero based prefixes."""

    def __init__(self, mode: str | None = None) -> None:
        if mode and mode not in TIMESTAMP_MODES:
            raise ValueError(f"unknown timestamp mode '{mode[0]}'")
        self.mode = mode or None
        self._last = (0, 0)

    def format(self, seconds: int, microseconds: int) -> str:
        """Return the timestamp prefix for a PDU received at the given time."""
        if self.mode is None:
            return ""
        if self.mode == "a":
            return f"({seconds}.{microseconds:06d}) "
        if self.mode == "A":
            stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(seconds))
            return f"({stamp}.{microseconds:06d}) "

        now = (seconds, microseconds)
        if self._last[0] == 0:
            self._last = now
        sec, usec = seconds - self._last[0], microseconds - self._last[1]
        if usec < 0:
            sec -= 1
            usec += 1_000_000
        if sec < 0:
            sec = usec = 0
        if self.mode == "d":
            self._last = now
        return f"({sec}.{usec:06d}) "


def format_buffer(
    buffer: bytes,
    color: int,
    stamp: str,
    fmt: int,
    src: int,
    candevice: str,
    head: int,
) -> str:
    """Render one PDU line; ``color`` 1 is red, 2 is blue, 0 is plain."""
    parts = []
    if color == 1:
        parts.append(FGRED)
    elif color == 2:
        parts.append(FGBLUE)
    parts.append(stamp)
    parts.append(f" {candevice}  {src & CAN_EFF_MASK:03X}  [{len(buffer)}]  ")

    if fmt & FORMAT_HEX:
        for pos, byte in enumerate(buffer):
            parts.append(f"{byte:02X} ")
            if head and pos + 1 >= head:
                parts.append("... ")
                break
        if fmt & FORMAT_ASCII:
            parts.append(" - ")

    if fmt & FORMAT_ASCII:
        parts.append("'")
        stop = len(buffer)
        for pos, byte in enumerate(buffer):
            parts.append(chr(byte) if 0x20 <= byte < 0x7F else ".")
            if head and pos + 1 >= head:
                stop = pos
                break
        parts.append("'")
        if head and stop + 1 >= head:
            parts.append(" ... ")

    if color:
        parts.append(ATTRESET)
    return "".join(parts)


def _socket_stamp(sock: socket.socket, fallback: tuple[int, int]) -> tuple[int, int]:
    try:
        raw = fcntl.ioctl(sock.fileno(), SIOCGSTAMP, bytes(struct.calcsize(_TIMEVAL_FORMAT)))
    except OSError:
        return fallback
    return struct.unpack(_TIMEVAL_FORMAT, raw)


class _UsageError(ValueError):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="isotpsniffer", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext")
    parser.add_argument("-X", dest="rx_ext")
    parser.add_argument("-h", dest="head")
    parser.add_argument("-c", dest="color", action="store_true")
    parser.add_argument("-t", dest="time")
    parser.add_argument("-f", dest="format")
    parser.add_argument("-L", dest="link_layer")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interface", nargs="*")
    return parser


def _atoi(text: str) -> int:
    return _strtoul(text, 10)[0]


def _open_reverse_socket(if_name: str, src: int, dst: int, opts: IsotpOptions, llopts: LinkLayerOptions):
    sock = socket.socket(AF_CAN, socket.SOCK_DGRAM, CAN_ISOTP)
    try:
        try:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_OPTS, opts.pack())
            if llopts.mtu:
                sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_LL_OPTS, llopts.pack())
        except OSError as exc:
            raise OSError(exc.errno, f"setsockopt: {exc.strerror}") from exc
        # transmit to the source ID, receive from it on the destination side
        sock.bind((if_name, src, dst))
    except BaseException:
        sock.close()
        raise
    return sock


def _sniff(s, t, if_name, src, dst, color, stamps, fmt, head) -> int:
    last = (0, 0)
    while True:
        readable, _, _ = select.select([s, t, sys.stdin], [], [])
        quit_requested = False
        if sys.stdin in readable:
            sys.stdin.read(1)
            quit_requested = True
            print("quit due to keyboard input.")
        for sock, code, peer, name in ((s, 2, dst, "s"), (t, 1, src, "t")):
            if sock not in readable:
                continue
            try:
                data = sock.recv(_MAX_PDU + 1)
            except OSError as exc:
                print(f"read socket {name}: {exc.strerror}", file=sys.stderr)
                return 1
            if len(data) > _MAX_PDU:
                return 1
            stamp = ""
            if stamps.mode:
                last = _socket_stamp(sock, last)
                stamp = stamps.format(*last)
            print(format_buffer(data, code if color else 0, stamp, fmt, peer, if_name, head), flush=True)
        if quit_requested:
            return 0


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    try:
        args = _build_parser().parse_args(argv)
    except _UsageError:
        _print_usage()
        return 0
    if args.help:
        _print_usage()
        return 0

    opts = IsotpOptions()
    if args.ext is not None:
        opts = replace(
            opts,
            flags=opts.flags | CAN_ISOTP_EXTEND_ADDR,
            ext_address=_strtoul(args.ext, 16)[0] & 0xFF,
        )
    if args.rx_ext is not None:
        opts = replace(
            opts,
            flags=opts.flags | CAN_ISOTP_RX_EXT_ADDR,
            rx_ext_address=_strtoul(args.rx_ext, 16)[0] & 0xFF,
        )
    fmt = _atoi(args.format) & FORMAT_DEFAULT if args.format is not None else FORMAT_DEFAULT
    llopts = LinkLayerOptions()
    if args.link_layer is not None:
        try:
            llopts = parse_link_layer(args.link_layer)
        except OptionError as exc:
            print(exc)
            _print_usage()
            return 1
    head = _atoi(args.head) if args.head is not None else 0

    mode = None
    if args.time is not None:
        mode = args.time[:1]
        if not mode or mode not in TIMESTAMP_MODES:
            print(f"isotpsniffer: unknown timestamp mode '{mode}' - ignored")
            mode = None

    src = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    dst = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interface) != 1 or src == NO_CAN_ID or dst == NO_CAN_ID:
        _print_usage()
        return 1
    if opts.flags & CAN_ISOTP_RX_EXT_ADDR and not opts.flags & CAN_ISOTP_EXTEND_ADDR:
        _print_usage()
        return 1

    if_name = args.interface[0][: IFNAMSIZ - 1]
    opts = replace(opts, flags=opts.flags | CAN_ISOTP_LISTEN_MODE)
    reverse_opts = opts
    if opts.flags & CAN_ISOTP_RX_EXT_ADDR:
        # the separate rx extended address is swapped for the reverse direction
        reverse_opts = replace(opts, ext_address=opts.rx_ext_address, rx_ext_address=opts.ext_address)

    with ExitStack() as stack:
        try:
            s = stack.enter_context(open_isotp_socket(if_name, src, dst, opts))
            t = stack.enter_context(_open_reverse_socket(if_name, src, dst, reverse_opts, llopts))
        except OSError as exc:
            print(f"socket: {exc}", file=sys.stderr)
            return 1
        try:
            return _sniff(s, t, if_name, src, dst, args.color, Timestamper(mode), fmt, head)
        except KeyboardInterrupt:
            return 0