"""SAE J1939 spy: print every J1939 message seen on a CAN interface."""

from __future__ import annotations

import argparse
import errno
import socket
import struct
import sys
import time

from .j1939addr import (
    J1939_NO_ADDR,
    J1939_NO_NAME,
    J1939_NO_PGN,
    J1939_PGN_MAX,
    J1939Address,
    _nametoindex,
    _strtoul,
    addr2str,
    str2addr,
)

HELP_MSG = """j1939spy: An SAE J1939 spy utility
Usage: j1939spy [OPTION...] [[IFACE:][NAME|SA][,PGN]]
Options:
  -v, --verbose		Increase verbosity
  -P, --promisc		Run in promiscuous mode
			(= receive traffic not for this ECU)
  -b, --block=SIZE	Use a receive buffer of SIZE (default 1024)
  -t, --time[=a|d|z|A]	Show time: (a)bsolute, (d)elta, (z)ero, (A)bsolute w date
"""

TIME_MODES = "adzA"
DEFAULT_PKT_LEN = 1024

AF_CAN = getattr(socket, "AF_CAN", 29)
CAN_J1939 = getattr(socket, "CAN_J1939", 7)
SOL_CAN_J1939 = getattr(socket, "SOL_CAN_J1939", 107)
SO_J1939_FILTER = getattr(socket, "SO_J1939_FILTER", 1)
SO_J1939_PROMISC = getattr(socket, "SO_J1939_PROMISC", 2)
SCM_J1939_DEST_ADDR = getattr(socket, "SCM_J1939_DEST_ADDR", 1)
SCM_J1939_DEST_NAME = getattr(socket, "SCM_J1939_DEST_NAME", 2)
SCM_J1939_PRIO = getattr(socket, "SCM_J1939_PRIO", 3)
SO_TIMESTAMP = getattr(socket, "SO_TIMESTAMP", 29)
SCM_TIMESTAMP = SO_TIMESTAMP
MSG_TRUNC = getattr(socket, "MSG_TRUNC", 0x20)

_TIMEVAL_FORMAT = "@qq"
_FILTER_FORMAT = "@QQBBII4x"
_U64 = 0xFFFFFFFFFFFFFFFF
_U32 = 0xFFFFFFFF


def _timersub(a: tuple[int, int], b: tuple[int, int]) -> tuple[int, int]:
    sec, usec = a[0] - b[0], a[1] - b[1]
    if usec < 0:
        sec -= 1
        usec += 1_000_000
    return sec, usec


class TimeFormatter:
    """Formats receive timestamps as absolute, delta, zero based or dated values."""

    def __init__(self, mode: str | None = None) -> None:
        if mode and mode not in TIME_MODES:
            raise ValueError(f"unknown time option '{mode[0]}'")
        self.mode = mode or None
        self._ref = (0, 0)

    def format(self, seconds: int, microseconds: int) -> str:
        """Return the timestamp prefix for a message received at the given time."""
        if self.mode is None:
            return ""
        if self.mode == "A":
            tm = time.localtime(seconds)
            return (
                f"({tm.tm_year:04d}{tm.tm_mon:02d}{tm.tm_mday:02d}T"
                f"{tm.tm_hour:02d}{tm.tm_min:02d}{tm.tm_sec:02d}.{microseconds // 100:04d})"
            )
        now = (seconds, microseconds)
        if self.mode == "z":
            if not self._ref[0]:
                self._ref = now
            seconds, microseconds = _timersub(now, self._ref)
        elif self.mode == "d":
            seconds, microseconds = _timersub(now, self._ref)
            self._ref = now
        return f"({seconds}.{microseconds // 100:04d})"


def format_packet(
    src: J1939Address,
    payload: bytes,
    dst_name: int | None = None,
    dst_addr: int | None = None,
    priority: int = 0,
    truncated: bool = False,
) -> str:
    """Render one received message: source, destination, priority and payload."""
    out = f" {addr2str(src)} "
    if dst_name is not None:
        out += f"{dst_name:016x} "
    elif dst_addr is not None:
        out += f"{dst_addr:02x} "
    else:
        out += "- "
    out += f"!{priority} "
    out += f"[{len(payload)}{'...' if truncated else ''}]"
    out += "".join(" " + payload[pos:pos + 4].hex() for pos in range(0, len(payload), 4))
    return out


def _build_filter(address: J1939Address) -> bytes | None:
    name = name_mask = addr = addr_mask = pgn = pgn_mask = 0
    used = False
    if address.name:
        name, name_mask, used = address.name, _U64, True
    if address.addr < 0xFF:
        addr, addr_mask, used = address.addr, 0xFF, True
    if address.pgn <= J1939_PGN_MAX:
        pgn, pgn_mask, used = address.pgn, _U32, True
    if not used:
        return None
    return struct.pack(_FILTER_FORMAT, name, name_mask, addr, addr_mask, pgn, pgn_mask)


class _UsageError(ValueError):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="j1939spy", add_help=False)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-P", "--promisc", action="count", default=0)
    parser.add_argument("-b", "--block")
    parser.add_argument("-t", "--time")
    parser.add_argument("-?", "--help", dest="help", action="store_true")
    parser.add_argument("address", nargs="?")
    return parser


def _expand_time(arg: str) -> str:
    # the time value is optional and must be attached to the option
    return "--time=z" if arg in ("-t", "--time") else arg


def _control_size() -> int:
    return (
        socket.CMSG_SPACE(struct.calcsize(_TIMEVAL_FORMAT))
        + socket.CMSG_SPACE(1)
        + socket.CMSG_SPACE(8)
        + socket.CMSG_SPACE(1)
    )


def _source_address(address) -> J1939Address:
    ifname, name, pgn, addr = address
    return J1939Address(
        ifindex=_nametoindex(ifname) if ifname else 0,
        name=name,
        addr=addr,
        pgn=pgn,
    )


def _listen(sock: socket.socket, bound: J1939Address, pkt_len: int, stamps: TimeFormatter) -> None:
    control_size = _control_size()
    while True:
        try:
            data, ancdata, msg_flags, address = sock.recvmsg(pkt_len, control_size)
        except OSError as exc:
            if exc.errno == errno.ENETDOWN:
                print(f"j1939spy: ifindex {bound.ifindex}: {exc.strerror}", file=sys.stderr)
                continue
            raise
        stamp = None
        dst_addr = dst_name = None
        priority = 0
        for level, ctype, cdata in ancdata:
            if level == socket.SOL_SOCKET and ctype == SCM_TIMESTAMP:
                stamp = struct.unpack_from(_TIMEVAL_FORMAT, cdata)
            elif level == SOL_CAN_J1939:
                if ctype == SCM_J1939_DEST_ADDR:
                    dst_addr = cdata[0]
                elif ctype == SCM_J1939_DEST_NAME:
                    dst_name = int.from_bytes(cdata[:8], sys.byteorder)
                elif ctype == SCM_J1939_PRIO:
                    priority = cdata[0]
        prefix = stamps.format(*stamp) if stamp is not None else ""
        line = prefix + format_packet(
            _source_address(address),
            data,
            dst_name,
            dst_addr if dst_name is None else None,
            priority,
            bool(msg_flags & MSG_TRUNC),
        )
        print(line, flush=True)


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    raw = list(sys.argv[1:] if argv is None else argv)
    try:
        args = _build_parser().parse_args([_expand_time(arg) for arg in raw])
    except _UsageError:
        sys.stderr.write(HELP_MSG)
        return 1
    if args.help:
        sys.stderr.write(HELP_MSG)
        return 1

    mode = None
    if args.time is not None:
        if args.time and args.time[0] not in TIME_MODES:
            print(f"j1939spy: unknown time option '{args.time[0]}'", file=sys.stderr)
            return 1
        mode = args.time[:1] or None
    pkt_len = _strtoul(args.block, 0)[0] if args.block is not None else DEFAULT_PKT_LEN

    address = J1939Address()
    if args.address:
        try:
            address = str2addr(args.address)
        except ValueError:
            print(f"j1939spy: bad URI {args.address}", file=sys.stderr)
            return 1

    try:
        with socket.socket(AF_CAN, socket.SOCK_DGRAM, CAN_J1939) as sock:
            filt = _build_filter(address)
            if filt is not None:
                sock.setsockopt(SOL_CAN_J1939, SO_J1939_FILTER, filt)
            if args.promisc:
                sock.setsockopt(SOL_CAN_J1939, SO_J1939_PROMISC, 1)
            if mode:
                sock.setsockopt(socket.SOL_SOCKET, SO_TIMESTAMP, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, pkt_len)
            bound = J1939Address(
                ifindex=address.ifindex, name=J1939_NO_NAME, addr=J1939_NO_ADDR, pgn=J1939_NO_PGN
            )
            sock.bind(bound.sockaddr())
            if args.verbose:
                print("j1939spy: listening", file=sys.stderr)
            _listen(sock, address, pkt_len, TimeFormatter(mode))
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        print(f"j1939spy: {exc}", file=sys.stderr)
        return 1
    return 0