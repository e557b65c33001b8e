import re
import time

import pytest

from cankit.j1939addr import J1939Address, addr2str
from cankit.j1939spy import TimeFormatter, format_packet, main


def test_absolute_time():
    assert TimeFormatter("a").format(1700000000, 123456) == "(1700000000.1234)"


def test_zero_mode_starts_at_zero_and_borrows():
    fmt = TimeFormatter("z")
    assert fmt.format(10, 500000) == "(0.0000)"
    assert fmt.format(12, 250000) == "(1.7500)"


def test_delta_mode_matches_absolute_then_zero():
    delta = TimeFormatter("d")
    zero = TimeFormatter("z")
    absolute = TimeFormatter("a")
    assert delta.format(10, 500000) == absolute.format(10, 500000)
    zero.format(10, 500000)
    assert delta.format(12, 250000) == zero.format(12, 250000)
    fresh_zero = TimeFormatter("z")
    fresh_zero.format(12, 250000)
    assert delta.format(15, 100) == fresh_zero.format(15, 100)


def test_dated_mode():
    sec = 1700000000
    result = TimeFormatter("A").format(sec, 123456)
    assert re.fullmatch(r"\(\d{8}T\d{6}\.\d{4}\)", result)
    assert result[1:16] == time.strftime("%Y%m%dT%H%M%S", time.localtime(sec))


def test_no_mode_gives_empty_prefix():
    assert TimeFormatter().format(5, 5) == ""


def test_invalid_mode():
    with pytest.raises(ValueError):
        TimeFormatter("q")


def test_format_packet_without_destination():
    src = J1939Address(addr=0x80, pgn=0x12300)
    payload = bytes([1, 2, 3, 4, 5])
    tokens = format_packet(src, payload, priority=6).split()
    assert tokens[0] == addr2str(src)
    assert tokens[1] == "-"
    assert tokens[2] == "!6"
    assert tokens[3] == f"[{len(payload)}]"
    assert "".join(tokens[4:]) == payload.hex()
    assert all(len(group) <= 8 for group in tokens[4:])


def test_format_packet_destination_name_wins():
    src = J1939Address(addr=0x20)
    name = 0x1122334455667788
    tokens = format_packet(src, b"\xaa", dst_name=name, dst_addr=0x30).split()
    assert len(tokens[1]) == 16
    assert int(tokens[1], 16) == name


def test_format_packet_destination_address():
    tokens = format_packet(J1939Address(addr=0x20), b"", dst_addr=0x30).split()
    assert len(tokens[1]) == 2
    assert int(tokens[1], 16) == 0x30
    assert tokens[-1] == "[0]"


def test_format_packet_truncated():
    text = format_packet(J1939Address(), bytes(3), truncated=True)
    assert "[3...]" in text


def test_main_help():
    assert main(["-?"]) == 1


def test_main_bad_time_option():
    assert main(["-tq"]) == 1


def test_main_bad_uri():
    assert main(["abcdefghijklmnopqr:80"]) == 1