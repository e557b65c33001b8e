"""SAE J1939 address claiming daemon."""

from __future__ import annotations

import argparse
import errno
import re
import signal
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum

from .j1939addr import (
    J1939_IDLE_ADDR,
    J1939_NO_ADDR,
    J1939_NO_NAME,
    J1939_NO_PGN,
    J1939_PGN_ADDRESS_CLAIMED,
    J1939_PGN_ADDRESS_COMMANDED,
    J1939_PGN_MAX,
    J1939_PGN_PDU1_MAX,
    J1939_PGN_REQUEST,
    _strtoul,
)

HELP_MSG = """j1939acd: An SAE J1939 address claiming daemon
Usage: j1939acd [options] NAME [INTF]
Options:
  -v, --verbose		Increase verbosity
  -r, --range=RANGE	Ranges of source addresses
			e.g. 80,50-100,200-210 (defaults to 0-253)
  -c, --cache=FILE	Cache file to save/restore the source address
  -a, --address=ADDRESS	Start with Source Address ADDRESS
  -p, --prefix=STR	Prefix to use when logging

NAME is the 64bit nodename

Examples:
j1939acd -r 100,80-120 -c /tmp/1122334455667788.jacd 1122334455667788
j1939acd -r 100,80-120 -c /tmp/1122334455667788.jacd 1122334455667788 vcan0
"""

DEFAULT_RANGE = "0x80-0xfd"
DEFAULT_INTF = "can0"

F_USE = 0x01
F_SEEN = 0x02

AF_CAN = getattr(socket, "AF_CAN", 29)
CAN_J1939 = getattr(socket, "CAN_J1939", 7)
SOL_CAN_J1939 = getattr(socket, "SOL_CAN_J1939", 107)
SO_J1939_FILTER = getattr(socket, "SO_J1939_FILTER", 1)

_FILTER_FORMAT = "@QQBBII4x"
_FILTERS = b"".join(
    struct.pack(_FILTER_FORMAT, 0, 0, 0, 0, pgn, mask)
    for pgn, mask in (
        (J1939_PGN_ADDRESS_CLAIMED, J1939_PGN_PDU1_MAX),
        (J1939_PGN_REQUEST, J1939_PGN_PDU1_MAX),
        (J1939_PGN_ADDRESS_COMMANDED, J1939_PGN_MAX),
    )
)

_REQUEST_CLAIMS = bytes((0, 0xEE, 0))
_RETRY_MSEC = 50
_PENDING_MSEC = 1250
_MAX_WAIT = 0.5


class ClaimState(Enum):
    """Progress of the address claiming procedure."""

    INITIAL = 0
    REQ_SENT = 1
    REQ_PENDING = 2
    OPERATIONAL = 3


@dataclass
class AddressEntry:
    """What is known about one source address."""

    name: int = 0
    flags: int = 0


class AddressTable:
    """Known NAMEs per source address and which addresses we may use."""

    def __init__(self) -> None:
        self.entries = [AddressEntry() for _ in range(J1939_IDLE_ADDR)]

    def __getitem__(self, sa: int) -> AddressEntry:
        return self.entries[sa]

    def in_use(self, sa: int) -> bool:
        """Whether ``sa`` is among the addresses we may claim."""
        return 0 <= sa < J1939_IDLE_ADDR and bool(self.entries[sa].flags & F_USE)

    def parse_range(self, spec: str) -> int:
        """Mark the addresses in ``spec`` (e.g. ``80,50-100``) usable; return the count."""
        count = 0
        for token in filter(None, re.split(r"[,;]", spec)):
            first, used = _strtoul(token, 0)
            if not used:
                raise ValueError(f"parsing range '{token}'")
            last = first
            if token[used:used + 1] == "-":
                tail = token[used + 1:]
                last, used = _strtoul(tail, 0)
                if not used:
                    raise ValueError(f"parsing addr '{tail}'")
                last = max(last, first)
            for sa in range(max(first, 0), last + 1):
                if sa >= J1939_IDLE_ADDR:
                    break
                self.entries[sa].flags |= F_USE
                count += 1
        return count

    def lookup_name(self, name: int) -> int:
        """Return the address holding ``name``, or the idle address."""
        for sa, entry in enumerate(self.entries):
            if entry.name == name:
                return sa
        return J1939_IDLE_ADDR

    def choose_new_sa(self, name: int, sa: int) -> int:
        """Pick an address for ``name``, preferring ``sa``; idle address if none."""
        if self.in_use(sa):
            holder = self.entries[sa].name
            if not holder or holder == name or holder > name:
                return sa

        for j, entry in enumerate(self.entries):
            if entry.flags & F_USE and (not entry.name or entry.name == name):
                return j

        # no free spot: take the next one that we can successfully contest
        j = sa + 1
        for _ in range(J1939_IDLE_ADDR):
            if j >= J1939_IDLE_ADDR:
                j = 0
            entry = self.entries[j]
            if entry.flags & F_USE and name < entry.name:
                return j
            j += 1
        return J1939_IDLE_ADDR

    def dump_status(self, current_sa: int) -> str:
        """Describe every known or usable address, one line each."""
        lines = []
        for sa, entry in enumerate(self.entries):
            if not entry.flags and not entry.name:
                continue
            if sa == current_sa:
                mark = "*"
            elif entry.flags & F_USE:
                mark = "+"
            else:
                mark = "-"
            holder = f"{entry.name:016x}" if entry.name else "-"
            lines.append(f"{sa:02x}: {mark} {holder}\n")
        return "".join(lines)


def save_cache(path: str | None, sa: int) -> None:
    """Store the claimed source address in ``path``, if a path is given."""
    if not path:
        return
    with open(path, "w", encoding="ascii") as fp:
        fp.write(f"# saved on {time.ctime()}\n\n")
        fp.write("\n")
        fp.write(f"0x{sa:02x}\n")


def restore_cache(path: str | None) -> int | None:
    """Read a source address saved by :func:`save_cache`; None if there is none."""
    if not path:
        return None
    try:
        with open(path, encoding="ascii", errors="replace") as fp:
            for line in fp:
                if not line or line.startswith("#"):
                    continue
                value, used = _strtoul(line, 0)
                if used and 0 <= value <= J1939_IDLE_ADDR:
                    return value
    except FileNotFoundError:
        return None
    return None


def _must_warn(exc: OSError) -> bool:
    return exc.errno not in (errno.EINTR, errno.ENOBUFS)


class AddressClaimDaemon:
    """Claims and defends a J1939 source address for one NAME."""

    def __init__(
        self,
        name: int,
        table: AddressTable,
        intf: str = DEFAULT_INTF,
        current_sa: int = J1939_IDLE_ADDR,
        cachefile: str | None = None,
        verbose: int = 0,
        tx=None,
        rx=None,
    ) -> None:
        self.name = name
        self.table = table
        self.intf = intf
        self.cachefile = cachefile
        self.verbose = verbose
        self.tx = tx
        self.rx = rx
        if current_sa < J1939_IDLE_ADDR and not table.in_use(current_sa):
            self._log(f"- forget saved address 0x{current_sa:02x}")
            current_sa = J1939_IDLE_ADDR
        self.current_sa = current_sa
        self.last_sa = J1939_NO_ADDR
        self.state = ClaimState.INITIAL
        self.deadline: float | None = None
        self.stop_requested = False
        self.dump_requested = False

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message, file=sys.stderr)

    def schedule_timer(self, msec: int) -> None:
        """Arm the single shot timer to expire after ``msec`` milliseconds."""
        self.deadline = time.monotonic() + msec / 1000

    def _alarm(self) -> bool:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.deadline = None
            return True
        return False

    def _poll_timeout(self) -> float:
        if self.deadline is None:
            return _MAX_WAIT
        return min(max(self.deadline - time.monotonic(), 0.0), _MAX_WAIT)

    def open_socket(self) -> socket.socket:
        """Open a J1939 socket filtered for address management traffic."""
        self._log("- socket(PF_CAN, SOCK_DGRAM, CAN_J1939);")
        sock = socket.socket(AF_CAN, socket.SOCK_DGRAM, CAN_J1939)
        try:
            sock.setsockopt(SOL_CAN_J1939, SO_J1939_FILTER, _FILTERS)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((self.intf, self.name, J1939_NO_PGN, J1939_IDLE_ADDR))
        except OSError:
            sock.close()
            raise
        return sock

    def repeat_address(self) -> bool:
        """Broadcast our address claim; return False if sending failed."""
        payload = self.name.to_bytes(8, "little")
        self._log(f"- send(, {self.name}, 8, 0);")
        try:
            self.tx.sendto(payload, ("", J1939_NO_NAME, J1939_PGN_ADDRESS_CLAIMED, J1939_NO_ADDR))
        except OSError as exc:
            if _must_warn(exc):
                print(f"send address claim for 0x{self.last_sa:02x}", file=sys.stderr)
            return False
        return True

    def claim_address(self, sa: int) -> bool:
        """Bind to ``sa`` and announce it; return False if sending failed."""
        self._log(f"- bind(, {self.intf}:{self.name:016x}.{sa:02x});")
        try:
            self.tx.bind((self.intf, self.name, J1939_NO_PGN, sa))
        except OSError as exc:
            raise OSError(exc.errno, f"rebind with sa 0x{sa:02x}: {exc.strerror}") from exc
        self.last_sa = sa
        return self.repeat_address()

    def request_addresses(self) -> None:
        """Ask every node to report its address claim."""
        try:
            self.tx.sendto(_REQUEST_CLAIMS, ("", J1939_NO_NAME, J1939_PGN_REQUEST, J1939_NO_ADDR))
        except OSError:
            if True:
                print("send request for address claims", file=sys.stdout)
            raise

    def _claim_or_retry(self, sa: int) -> None:
        if not self.claim_address(sa):
            self.schedule_timer(_RETRY_MSEC)

    def step(self) -> None:
        """Advance the claiming procedure by one state transition."""
        if self.state is ClaimState.INITIAL:
            self.request_addresses()
            self.state = ClaimState.REQ_SENT
        elif self.state is ClaimState.REQ_PENDING:
            if not self._alarm():
                return
            sa = self.table.choose_new_sa(self.name, self.current_sa)
            if sa == J1939_IDLE_ADDR:
                raise RuntimeError("no free address to use")
            self._claim_or_retry(sa)
            self.state = ClaimState.OPERATIONAL
        elif self.state is ClaimState.OPERATIONAL:
            if self._alarm() and not self.repeat_address():
                self.schedule_timer(_RETRY_MSEC)

    def handle_message(self, pgn: int, addr: int, name: int, data: bytes) -> bool:
        """Process one received message; return False when no address is left."""
        if pgn == J1939_PGN_REQUEST:
            if len(data) < 3:
                return True
            requested = data[0] | (data[1] << 8) | ((data[2] & 0x03) << 16)
            if requested != J1939_PGN_ADDRESS_CLAIMED:
                return True
            if self.state is ClaimState.REQ_SENT:
                self._log(f"- request sent, pending for {_PENDING_MSEC} ms")
                self.schedule_timer(_PENDING_MSEC)
                self.state = ClaimState.REQ_PENDING
            elif self.state is ClaimState.OPERATIONAL:
                self._claim_or_retry(self.current_sa)

        elif pgn == J1939_PGN_ADDRESS_CLAIMED:
            known = self.table.lookup_name(name)
            if addr >= J1939_IDLE_ADDR:
                if known < J1939_IDLE_ADDR:
                    self.table[known].name = 0
                return True
            if known != addr and known < J1939_IDLE_ADDR:
                self.table[known].name = 0

            sa = addr
            self.table[sa].name = name
            self.table[sa].flags |= F_SEEN

            if name == self.name:
                self.current_sa = sa
                self._log(f"- claimed 0x{sa:02x}")
            elif sa == self.current_sa:
                self._log(f"- address collision for 0x{sa:02x}")
                if self.name > name:
                    sa = self.table.choose_new_sa(self.name, sa)
                    if sa == J1939_IDLE_ADDR:
                        print("no address left", file=sys.stdout)
                        self.current_sa = sa
                        return False
                self._claim_or_retry(sa)

        elif pgn == J1939_PGN_ADDRESS_COMMANDED:
            if len(data) < 9:
                return True
            if int.from_bytes(data[:8], "little") == self.name:
                self._claim_or_retry(data[8])
        return True

    def _install_signals(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def stop(signum, frame):
            self.stop_requested = True

        def dump(signum, frame):
            self.dump_requested = True

        def ignore(signum, frame):
            pass

        handlers = {"SIGTERM": stop, "SIGINT": stop, "SIGUSR1": dump, "SIGUSR2": ignore}
        previous = {}
        for sig_name, handler in handlers.items():
            signum = getattr(signal, sig_name, None)
            if signum is not None:
                previous[signum] = signal.signal(signum, handler)
        return previous

    def run(self) -> None:
        """Claim an address and defend it until stopped or no address is left."""
        opened = []
        if self.tx is None:
            self.tx = self.open_socket()
            opened.append(self.tx)
        if self.rx is None:
            self.rx = self.open_socket()
            opened.append(self.rx)
        previous = self._install_signals()
        try:
            while not self.stop_requested:
                if self.dump_requested:
                    self.dump_requested = False
                    sys.stdout.write(self.table.dump_status(self.current_sa))
                    sys.stdout.flush()
                self.step()
                self.rx.settimeout(self._poll_timeout())
                try:
                    data, address = self.rx.recvfrom(9)
                except (TimeoutError, InterruptedError):
                    continue
                _, src_name, pgn, addr = address
                if not self.handle_message(pgn, addr, src_name, data):
                    break
            self._log("- shutdown")
            self.claim_address(J1939_IDLE_ADDR)
            save_cache(self.cachefile, self.current_sa)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            for sock in opened:
                sock.close()


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="j1939acd", add_help=False)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-r", "--range", dest="ranges", default=DEFAULT_RANGE)
    parser.add_argument("-c", "--cache", dest="cachefile")
    parser.add_argument("-a", "--address")
    parser.add_argument("-p", "--prefix")
    parser.add_argument("-?", "--help", dest="help", action="store_true")
    parser.add_argument("name", nargs="?")
    parser.add_argument("intf", nargs="?", default=DEFAULT_INTF)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    try:
        args = _build_parser().parse_args(argv)
    except _UsageError:
        sys.stderr.write(HELP_MSG)
        return 1
    if args.help:
        sys.stderr.write(HELP_MSG)
        return 1

    prog = f"j1939acd.{args.prefix}" if args.prefix else "j1939acd"
    current_sa = J1939_IDLE_ADDR
    if args.address is not None:
        current_sa = _strtoul(args.address, 0)[0] & 0xFF
    name = _strtoul(args.name, 16)[0] & 0xFFFFFFFFFFFFFFFF if args.name else 0

    try:
        cached = restore_cache(args.cachefile)
        if cached is not None:
            current_sa = cached
        table = AddressTable()
        if not table.parse_range(args.ranges):
            raise ValueError("no addresses in range")
        daemon = AddressClaimDaemon(
            name,
            table,
            intf=args.intf,
            current_sa=current_sa,
            cachefile=args.cachefile,
            verbose=args.verbose,
        )
        if args.verbose:
            print(f"- ready for {args.intf}:{name:016x}", file=sys.stderr)
        if not args.intf or not name:
            raise ValueError("bad arguments")
        daemon.run()
    except (OSError, ValueError, RuntimeError) as exc:
        print(f"{prog}: {exc}", file=sys.stderr)
        return 1
    return 0