"""A netcat-like tool for SAE J1939 sockets."""

from __future__ import annotations

import argparse
import errno
import os
import select
import socket
import struct
import sys
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import BinaryIO

from .j1939addr import J1939Address, _strtoul, parse_canaddr

J1939_MAX_ETP_PACKET_SIZE = 7 * 0x00FFFFFF

AF_CAN = getattr(socket, "AF_CAN", 29)
CAN_J1939 = getattr(socket, "CAN_J1939", 7)
SOL_CAN_J1939 = getattr(socket, "SOL_CAN_J1939", 107)
SO_J1939_SEND_PRIO = getattr(socket, "SO_J1939_SEND_PRIO", 3)
SO_J1939_ERRQUEUE = getattr(socket, "SO_J1939_ERRQUEUE", 4)
SCM_J1939_ERRQUEUE = getattr(socket, "SCM_J1939_ERRQUEUE", 4)
SO_TIMESTAMPING = getattr(socket, "SO_TIMESTAMPING", 37)
SCM_TIMESTAMPING = SO_TIMESTAMPING
SCM_TIMESTAMPING_OPT_STATS = 54
MSG_ERRQUEUE = getattr(socket, "MSG_ERRQUEUE", 0x2000)
MSG_DONTWAIT = getattr(socket, "MSG_DONTWAIT", 0x40)
MSG_CTRUNC = getattr(socket, "MSG_CTRUNC", 0x08)

SOF_TIMESTAMPING_SOFTWARE = 1 << 4
SOF_TIMESTAMPING_OPT_ID = 1 << 7
SOF_TIMESTAMPING_TX_SCHED = 1 << 8
SOF_TIMESTAMPING_TX_ACK = 1 << 9
SOF_TIMESTAMPING_OPT_CMSG = 1 << 10
SOF_TIMESTAMPING_OPT_TSONLY = 1 << 11
SOF_TIMESTAMPING_OPT_STATS = 1 << 12

_TIMESTAMPING_FLAGS = (
    SOF_TIMESTAMPING_SOFTWARE
    | SOF_TIMESTAMPING_OPT_CMSG
    | SOF_TIMESTAMPING_TX_ACK
    | SOF_TIMESTAMPING_TX_SCHED
    | SOF_TIMESTAMPING_OPT_STATS
    | SOF_TIMESTAMPING_OPT_TSONLY
    | SOF_TIMESTAMPING_OPT_ID
)

SCM_TSTAMP_SND = 0
SCM_TSTAMP_SCHED = 1
SCM_TSTAMP_ACK = 2

SO_EE_ORIGIN_LOCAL = 1
SO_EE_ORIGIN_TIMESTAMPING = 4
J1939_EE_INFO_TX_ABORT = 1

J1939_NLA_BYTES_ACKED = 1
NLA_HDRLEN = 4

_SERR_FORMAT = "=IBBBBII"
_TIMESPEC_FORMAT = "@qq"
_CONTROL_SIZE = 100

HELP_MSG = """j1939cat: netcat-like tool for j1939
Usage: j1939cat [options] FROM TO
 FROM / TO	- or [IFACE][:[SA][,[PGN][,NAME]]]
Options:
 -i <infile>	(default stdin)
 -s <size>	Set maximal transfer size. Default: 117440505 byte
 -r		Receive data
 -P <timeout>  poll timeout in milliseconds before sending data.
		With this option send() will be used with MSG_DONTWAIT flag.
 -R <count>	Set send repeat count. Default: 1
 -B		Allow to send and receive broadcast packets.

Example:
j1939cat -i some_file_to_send  can0:0x80 :0x90,0x12300
j1939cat can0:0x90 -r > /tmp/some_file_to_receive

"""


def _warn(message: str) -> None:
    print(f"j1939cat: {message}", file=sys.stderr)


@dataclass
class CatConfig:
    """Settings for one j1939cat session."""

    infile: str | None = None
    max_transfer: int = J1939_MAX_ETP_PACKET_SIZE
    repeat: int = 1
    todo_prio: int = -1
    polltimeout: int = 100000
    todo_recv: bool = False
    todo_filesize: bool = False
    todo_connect: bool = False
    todo_broadcast: bool = False
    sockname: J1939Address = field(default_factory=J1939Address)
    peername: J1939Address = field(default_factory=J1939Address)
    valid_peername: bool = False


@dataclass
class _Stats:
    tskey: int = 0
    send: int = 0


def tstype_to_str(tstype: int) -> str:
    """Return the label used when printing a transmit timestamp of this type."""
    return {
        SCM_TSTAMP_SCHED: "  ENQ",
        SCM_TSTAMP_SND: "  SND",
        SCM_TSTAMP_ACK: "  ACK",
    }.get(tstype, "  unk")


def parse_opt_stats(data: bytes) -> int | None:
    """Return the acknowledged byte count from netlink style option stats."""
    acked = None
    offset = 0
    while offset + NLA_HDRLEN <= len(data):
        nla_len, nla_type = struct.unpack_from("=HH", data, offset)
        if nla_len < NLA_HDRLEN:
            break
        if nla_type == J1939_NLA_BYTES_ACKED and offset + NLA_HDRLEN + 4 <= len(data):
            acked = struct.unpack_from("=I", data, offset + NLA_HDRLEN)[0]
        else:
            _warn("not supported J1939_NLA field")
        offset += (nla_len + 3) & ~3
    return acked


class J1939Cat:
    """Sends a file over a J1939 socket or copies received data to an output."""

    def __init__(
        self,
        config: CatConfig,
        sock: socket.socket | None = None,
        infile: BinaryIO | None = None,
        outfile: BinaryIO | None = None,
    ) -> None:
        self.config = config
        self.sock = sock
        self.infile = infile
        self.outfile = outfile
        self.round = 0
        self.stats = _Stats()

    def prepare_socket(self) -> socket.socket:
        """Open, configure, bind and optionally connect the J1939 socket."""
        cfg = self.config
        sock = socket.socket(AF_CAN, socket.SOCK_DGRAM, CAN_J1939)
        try:
            if cfg.todo_prio >= 0:
                sock.setsockopt(SOL_CAN_J1939, SO_J1939_SEND_PRIO, cfg.todo_prio)
            sock.setsockopt(SOL_CAN_J1939, SO_J1939_ERRQUEUE, 1)
            sock.setsockopt(socket.SOL_SOCKET, SO_TIMESTAMPING, _TIMESTAMPING_FLAGS)
            if cfg.todo_broadcast:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(cfg.sockname.sockaddr())
            if cfg.todo_connect:
                if not cfg.valid_peername:
                    raise ValueError("no peername supplied")
                sock.connect(cfg.peername.sockaddr())
        except BaseException:
            sock.close()
            raise
        self.sock = sock
        return sock

    def _send_one(self, buf) -> int:
        cfg = self.config
        flags = MSG_DONTWAIT if cfg.polltimeout else 0
        if cfg.valid_peername and not cfg.todo_connect:
            sent = self.sock.sendto(buf, flags, cfg.peername.sockaddr())
        else:
            sent = self.sock.send(buf, flags)
        if sent == 0:
            raise OSError(errno.EINVAL, "transferred 0 bytes")
        if sent > len(buf):
            raise OSError(errno.EINVAL, "send more then read")
        return sent

    def _print_timestamp(self, name: str, sec: int, nsec: int) -> None:
        if not (sec | nsec):
            return
        print(
            f"  {name}: {sec} s {nsec // 1000} us (seq={self.stats.tskey}, send={self.stats.send})",
            file=sys.stderr,
        )

    def _extract_serr(self, serr: bytes, tss: bytes) -> bool:
        """Evaluate an error queue report; True means the message was only scheduled."""
        ee_errno, origin, _type, _code, _pad, info, data = struct.unpack_from(_SERR_FORMAT, serr)
        sec, nsec = struct.unpack_from(_TIMESPEC_FORMAT, tss)
        if origin == SO_EE_ORIGIN_TIMESTAMPING:
            if ee_errno != errno.ENOMSG:
                _warn(f"serr: expected ENOMSG, got: {ee_errno}")
            self.stats.tskey = data
            self._print_timestamp(tstype_to_str(info), sec, nsec)
            return info == SCM_TSTAMP_SCHED
        if origin == SO_EE_ORIGIN_LOCAL:
            if info != J1939_EE_INFO_TX_ABORT:
                _warn(f"serr: unknown ee_info: {info}")
            self._print_timestamp("  ABT", sec, nsec)
            _warn(f"serr: tx error: {ee_errno}, {os.strerror(ee_errno)}")
            if ee_errno:
                raise OSError(ee_errno, f"tx error: {os.strerror(ee_errno)}")
            return False
        _warn(f"serr: wrong origin: {origin}")
        return False

    def _recv_err(self) -> bool:
        _, ancdata, msg_flags, _ = self.sock.recvmsg(0, _CONTROL_SIZE, MSG_ERRQUEUE)
        if msg_flags & MSG_CTRUNC:
            raise OSError(errno.EMSGSIZE, "recvmsg error notification: truncated")
        serr = tss = None
        for level, ctype, data in ancdata:
            if level == socket.SOL_SOCKET and ctype == SCM_TIMESTAMPING:
                tss = data
            elif level == socket.SOL_SOCKET and ctype == SCM_TIMESTAMPING_OPT_STATS:
                acked = parse_opt_stats(data)
                if acked is not None:
                    self.stats.send = acked
            elif level == SOL_CAN_J1939 and ctype == SCM_J1939_ERRQUEUE:
                serr = data
            else:
                _warn(f"serr: not supported type: {level}.{ctype}")
            if serr is not None and tss is not None:
                return self._extract_serr(serr, tss)
        return False

    def _send_loop(self, buf: bytes) -> None:
        cfg = self.config
        view = memoryview(buf)
        pos = 0
        events = select.POLLOUT | select.POLLERR
        tx_done = False
        while not tx_done:
            sent = 0
            if cfg.polltimeout:
                poller = select.poll()
                poller.register(self.sock, events)
                ready = poller.poll(cfg.polltimeout)
                if not ready:
                    raise OSError(errno.ETIME, "poll timed out")
                revents = ready[0][1]
                if not revents & events:
                    raise OSError(errno.EIO, "something else is wrong")
                if revents & select.POLLERR:
                    if self._recv_err():
                        continue
                    if cfg.repeat - 1 == self.stats.tskey:
                        tx_done = True
                if revents & select.POLLOUT:
                    sent = self._send_one(view[pos:])
            else:
                sent = self._send_one(view[pos:])
            pos += sent
            if pos == len(buf):
                if cfg.polltimeout and cfg.repeat == self.round:
                    # wait for the final acknowledgement on the error queue
                    events = select.POLLERR
                else:
                    tx_done = True

    def _sendfile(self, count: int) -> None:
        buf_size = min(self.config.max_transfer, count)
        remaining = count
        while remaining > 0:
            chunk = self.infile.read(min(buf_size, remaining))
            if not chunk:
                break
            self._send_loop(chunk)
            remaining -= len(chunk)

    def send(self) -> None:
        """Send the whole input file ``repeat`` times."""
        cfg = self.config
        size = 0
        if cfg.todo_filesize:
            size = self.infile.seek(0, os.SEEK_END)
            self.infile.seek(0)
        if not size:
            raise ValueError("no input size known: use -i with a non-empty file")
        for _ in range(cfg.repeat):
            self.round += 1
            self._sendfile(size)
            self.infile.seek(0)

    def recv(self) -> None:
        """Copy received messages to the output until receiving fails."""
        while self.config.todo_recv:
            data = self.sock.recv(self.config.max_transfer)
            self.outfile.write(data)
            self.outfile.flush()


class _UsageError(ValueError):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="j1939cat", add_help=False)
    parser.add_argument("-i", dest="infile")
    parser.add_argument("-s", dest="size")
    parser.add_argument("-r", dest="recv", action="store_true")
    parser.add_argument("-p", dest="prio")
    parser.add_argument("-P", dest="polltimeout")
    parser.add_argument("-R", dest="repeat")
    parser.add_argument("-B", dest="broadcast", action="store_true")
    parser.add_argument("-h", "-?", dest="help", action="store_true")
    parser.add_argument("source", nargs="?")
    parser.add_argument("dest", nargs="?")
    return parser


def parse_args(argv: list[str] | None = None) -> CatConfig:
    """Build a :class:`CatConfig` from command line arguments."""
    args = _build_parser().parse_args(argv)
    if args.help:
        raise _UsageError("help requested")

    cfg = CatConfig()
    if args.infile is not None:
        cfg.infile = args.infile
        cfg.todo_filesize = True
    if args.size is not None:
        cfg.max_transfer = _strtoul(args.size, 0)[0]
        if cfg.max_transfer > J1939_MAX_ETP_PACKET_SIZE:
            raise ValueError(
                f"used value ({cfg.max_transfer}) is bigger then allowed maximal size: "
                f"{J1939_MAX_ETP_PACKET_SIZE}."
            )
    cfg.todo_recv = args.recv
    if args.prio is not None:
        cfg.todo_prio = _strtoul(args.prio, 0)[0]
    if args.polltimeout is not None:
        cfg.polltimeout = _strtoul(args.polltimeout, 0)[0]
    if args.repeat is not None:
        cfg.repeat = _strtoul(args.repeat, 0)[0]
        if cfg.repeat < 1:
            raise ValueError("send/repeat count can't be less then 1")
    cfg.todo_broadcast = args.broadcast

    if args.source is not None and args.source != "-":
        cfg.sockname = parse_canaddr(args.source, cfg.sockname)
    if args.dest is not None and args.dest != "-":
        cfg.peername = parse_canaddr(args.dest, cfg.peername)
        cfg.valid_peername = True
    return cfg


def main(argv: list[str] | None = None) -> int:
    """Command line entry point."""
    try:
        cfg = parse_args(argv)
    except _UsageError:
        sys.stderr.write(HELP_MSG)
        return 1
    except ValueError as exc:
        _warn(str(exc))
        return 1

    with ExitStack() as stack:
        try:
            if cfg.infile:
                infile = stack.enter_context(open(cfg.infile, "rb"))
            else:
                infile = sys.stdin.buffer
            cat = J1939Cat(cfg, infile=infile, outfile=sys.stdout.buffer)
            stack.enter_context(cat.prepare_socket())
            if cfg.todo_recv:
                cat.recv()
            else:
                cat.send()
        except (OSError, ValueError) as exc:
            _warn(str(exc))
            return 1
    return 0