"""Send one ISO-TP PDU read as hex from stdin, or a generated test pattern."""

from __future__ import annotations

import argparse
import sys

from .isotp import (
    CAN_ISOTP_FORCE_TXSTMIN,
    CAN_ISOTP_SF_BROADCAST,
    CAN_ISOTP_WAIT_TX_DONE,
    NO_CAN_ID,
    IsotpOptions,
    LinkLayerOptions,
    OptionError,
    open_isotp_socket,
    parse_can_id,
    parse_ext_address,
    parse_link_layer,
    parse_pad_check,
    parse_padding,
)
from .j1939addr import _strtoul

BUFSIZE = 5000  # larger than 4095 to exercise the socket's own length checks

_USAGE = """
Usage: {prg} [options] <CAN interface>
Options:
         -s <can_id>  (source can_id. Use 8 digits for extended IDs)
         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)
         -x <addr>[:<rxaddr>]  (extended addressing / opt. separate rxaddr)
         -p [tx]:[rx]  (set and enable tx/rx padding bytes)
         -P <mode>     (check rx padding for (l)ength (c)ontent (a)ll)
         -t <time ns>  (frame transmit time (N_As) in nanosecs)
         -f <time ns>  (ignore FC and force local tx stmin value in nanosecs)
         -D <len>      (send a fixed PDU with len bytes - no STDIN data)
         -b            (block until the PDU transmission is completed)
         -S            (SF broadcast mode for functional addressing)
         -L <mtu>:<tx_dl>:<tx_flags>  (link layer options for CAN FD)

CAN IDs and addresses are given and expected in hexadecimal values.
The pdu data is expected on STDIN in space separated ASCII hex values.

"""


def _print_usage() -> None:
    sys.stderr.write(_USAGE.format(prg="isotpsend"))


def pattern_payload(length: int) -> bytes:
    """Return the fixed test PDU: bytes counting 1..255 and repeating."""
    return bytes(((pos % 0xFF) + 1) & 0xFF for pos in range(length))


def parse_hex_input(text: str) -> bytes:
    """Read whitespace separated hex bytes until the first non-hex token."""
    data = bytearray()
    rest = text
    while len(data) < BUFSIZE:
        value, used = _strtoul(rest, 16)
        if not used:
            break
        data.append(value & 0xFF)
        rest = rest[used:]
    return bytes(data)


class _UsageError(ValueError):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise _UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="isotpsend", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext")
    parser.add_argument("-p", dest="padding")
    parser.add_argument("-P", dest="pad_check")
    parser.add_argument("-t", dest="txtime")
    parser.add_argument("-f", dest="force_stmin")
    parser.add_argument("-D", dest="datalen")
    parser.add_argument("-b", dest="block", action="store_true")
    parser.add_argument("-S", dest="broadcast", action="store_true")
    parser.add_argument("-L", dest="link_layer")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interface", nargs="*")
    return parser


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
    llopts = LinkLayerOptions()
    datalen = 0
    try:
        if args.ext is not None:
            opts = parse_ext_address(args.ext, opts)
        if args.padding is not None:
            opts = parse_padding(args.padding, opts)
        if args.pad_check is not None:
            opts = parse_pad_check(args.pad_check, opts)
        if args.link_layer is not None:
            llopts = parse_link_layer(args.link_layer)
    except OptionError as exc:
        print(exc)
        _print_usage()
        return 0

    if args.txtime is not None:
        opts = IsotpOptions(**{**opts.__dict__, "frame_txtime": _strtoul(args.txtime, 10)[0] & 0xFFFFFFFF})
    if args.force_stmin is not None:
        opts = IsotpOptions(
            **{
                **opts.__dict__,
                "flags": opts.flags | CAN_ISOTP_FORCE_TXSTMIN,
                "force_tx_stmin": _strtoul(args.force_stmin, 10)[0] & 0xFFFFFFFF,
            }
        )
    if args.datalen is not None:
        datalen = _strtoul(args.datalen, 10)[0]
        if not 0 < datalen < BUFSIZE:
            _print_usage()
            return 0
    flags = opts.flags
    if args.block:
        flags |= CAN_ISOTP_WAIT_TX_DONE
    if args.broadcast:
        flags |= CAN_ISOTP_SF_BROADCAST
    opts = IsotpOptions(**{**opts.__dict__, "flags": flags})

    tx_id = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    rx_id = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if (
        len(args.interface) != 1
        or tx_id == NO_CAN_ID
        or (rx_id == NO_CAN_ID and not opts.flags & CAN_ISOTP_SF_BROADCAST)
    ):
        _print_usage()
        return 1

    try:
        sock = open_isotp_socket(args.interface[0], tx_id, rx_id, opts, None, llopts)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    with sock:
        payload = pattern_payload(datalen) if datalen else parse_hex_input(sys.stdin.read())
        try:
            written = sock.send(payload)
        except OSError as exc:
            print(f"write: {exc.strerror}", file=sys.stderr)
            return 1
        if written != len(payload):
            print(f"wrote only {written} from {len(payload)} byte", file=sys.stderr)
    # closing waits in the kernel until the PDU is sent completely
    return 0