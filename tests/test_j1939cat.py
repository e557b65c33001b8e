import io

import pytest

from cankit.j1939addr import J1939Address
from cankit.j1939cat import (
    J1939_MAX_ETP_PACKET_SIZE,
    SCM_TSTAMP_ACK,
    SCM_TSTAMP_SCHED,
    SCM_TSTAMP_SND,
    CatConfig,
    J1939Cat,
    parse_args,
    parse_opt_stats,
    tstype_to_str,
)
import struct


class FakeSocket:
    def __init__(self, limit=None, incoming=(), zero=False):
        self.sent = []
        self.destinations = []
        self.limit = limit
        self.incoming = list(incoming)
        self.zero = zero

    def _take(self, data):
        if self.zero:
            return 0
        chunk = bytes(data[: self.limit] if self.limit else data)
        self.sent.append(chunk)
        return len(chunk)

    def send(self, data, flags=0):
        self.destinations.append(None)
        return self._take(data)

    def sendto(self, data, flags, address):
        self.destinations.append(address)
        return self._take(data)

    def recv(self, size):
        if not self.incoming:
            raise ConnectionResetError("no more data")
        return self.incoming.pop(0)


def _config(**kwargs):
    base = dict(polltimeout=0, todo_filesize=True)
    base.update(kwargs)
    return CatConfig(**base)


def test_tstype_labels():
    assert tstype_to_str(SCM_TSTAMP_SCHED) == "  ENQ"
    assert tstype_to_str(SCM_TSTAMP_SND) == "  SND"
    assert tstype_to_str(SCM_TSTAMP_ACK) == "  ACK"
    assert tstype_to_str(99) == "  unk"


def test_parse_opt_stats_reads_bytes_acked():
    data = struct.pack("=HHI", 8, 1, 1234)
    assert parse_opt_stats(data) == 1234


def test_parse_opt_stats_skips_other_attributes():
    other = struct.pack("=HH", 6, 7) + b"\x01\x02" + b"\x00\x00"
    data = other + struct.pack("=HHI", 8, 1, 4321)
    assert parse_opt_stats(data) == 4321


def test_parse_opt_stats_empty():
    assert parse_opt_stats(b"") is None


def test_parse_args_defaults():
    cfg = parse_args([])
    assert cfg.max_transfer == J1939_MAX_ETP_PACKET_SIZE == 117440505
    assert cfg.repeat == 1
    assert cfg.polltimeout == 100000
    assert cfg.todo_prio == -1
    assert cfg.valid_peername is False
    assert cfg.sockname == J1939Address()


def test_parse_args_addresses():
    cfg = parse_args([":0x80", ":0x90,0x12300"])
    assert cfg.sockname.addr == 0x80
    assert cfg.peername.addr == 0x90
    assert cfg.peername.pgn == 0x12300
    assert cfg.valid_peername is True


def test_parse_args_dash_keeps_defaults():
    cfg = parse_args(["-", "-"])
    assert cfg.sockname == J1939Address()
    assert cfg.valid_peername is False


def test_parse_args_flags():
    cfg = parse_args(["-r", "-B", "-R", "3", "-P", "0", "-p", "5", "-i", "data.bin"])
    assert cfg.todo_recv is True
    assert cfg.todo_broadcast is True
    assert cfg.repeat == 3
    assert cfg.polltimeout == 0
    assert cfg.todo_prio == 5
    assert cfg.infile == "data.bin"
    assert cfg.todo_filesize is True


def test_parse_args_rejects_oversized_transfer():
    with pytest.raises(ValueError):
        parse_args(["-s", str(J1939_MAX_ETP_PACKET_SIZE + 1)])


def test_parse_args_rejects_zero_repeat():
    with pytest.raises(ValueError):
        parse_args(["-R", "0"])


@pytest.mark.parametrize("argv", [["-h"], ["-v"], ["-x"]])
def test_parse_args_usage_errors(argv):
    with pytest.raises(ValueError):
        parse_args(argv)


def test_send_in_chunks():
    payload = b"hello world"
    sock = FakeSocket()
    cat = J1939Cat(_config(max_transfer=4), sock=sock, infile=io.BytesIO(payload))
    cat.send()
    assert all(len(chunk) <= 4 for chunk in sock.sent)
    assert b"".join(sock.sent) == payload


def test_send_handles_partial_writes_and_repeat():
    payload = b"0123456789abcdef"
    sock = FakeSocket(limit=3)
    cat = J1939Cat(_config(repeat=2), sock=sock, infile=io.BytesIO(payload))
    cat.send()
    assert b"".join(sock.sent) == payload * 2
    assert cat.round == 2


def test_send_uses_peer_address():
    peer = J1939Address(addr=0x90, pgn=0x12300)
    sock = FakeSocket()
    cfg = _config(peername=peer, valid_peername=True)
    J1939Cat(cfg, sock=sock, infile=io.BytesIO(b"abc")).send()
    assert sock.destinations == [peer.sockaddr()]


def test_send_without_known_size_fails():
    cat = J1939Cat(_config(todo_filesize=False), sock=FakeSocket(), infile=io.BytesIO(b"abc"))
    with pytest.raises(ValueError):
        cat.send()


def test_send_zero_bytes_is_an_error():
    cat = J1939Cat(_config(), sock=FakeSocket(zero=True), infile=io.BytesIO(b"abc"))
    with pytest.raises(OSError):
        cat.send()


def test_recv_copies_until_error():
    out = io.BytesIO()
    sock = FakeSocket(incoming=[b"abc", b"def"])
    cat = J1939Cat(_config(todo_recv=True), sock=sock, outfile=out)
    with pytest.raises(ConnectionResetError):
        cat.recv()
    assert out.getvalue() == b"abcdef"