from datetime import datetime

import pytest

from cankit.isotpsniffer import (
    ATTRESET,
    FGBLUE,
    FGRED,
    FORMAT_ASCII,
    FORMAT_DEFAULT,
    FORMAT_HEX,
    Timestamper,
    format_buffer,
    main,
)


def test_format_buffer_worked_example():
    line = format_buffer(b"AB\x01", 0, "", FORMAT_DEFAULT, 0x123, "can0", 0)
    assert line == " can0  123  [3]  41 42 01  - 'AB.'"


def test_format_buffer_hex_only_has_no_ascii_part():
    line = format_buffer(b"hello", 0, "", FORMAT_HEX, 0x7E0, "vcan0", 0)
    assert "'" not in line
    assert line.endswith(b"hello".hex(" ").upper() + " ")


def test_format_buffer_ascii_only_has_no_hex_part():
    line = format_buffer(b"hi", 0, "", FORMAT_ASCII, 0x7E0, "vcan0", 0)
    assert line.endswith("'hi'")
    assert " - " not in line


def test_format_buffer_masks_extended_flag():
    line = format_buffer(b"", 0, "", FORMAT_HEX, 0x80000123, "can0", 0)
    assert "  123  " in line


def test_format_buffer_colors_wrap_line():
    red = format_buffer(b"\x00", 1, "", FORMAT_DEFAULT, 1, "can0", 0)
    blue = format_buffer(b"\x00", 2, "", FORMAT_DEFAULT, 1, "can0", 0)
    assert red.startswith(FGRED) and red.endswith(ATTRESET)
    assert blue.startswith(FGBLUE) and blue.endswith(ATTRESET)


def test_format_buffer_head_truncates():
    line = format_buffer(b"ABCD", 0, "", FORMAT_DEFAULT, 1, "can0", 2)
    assert "41 42 ... " in line
    assert "43" not in line
    assert "'AB' ... " in line


def test_format_buffer_includes_stamp():
    stamp = Timestamper("a").format(5, 7)
    line = format_buffer(b"\x10", 0, stamp, FORMAT_HEX, 1, "can0", 0)
    assert line.startswith(stamp + " can0")


def test_timestamper_absolute():
    assert Timestamper("a").format(10, 5) == "(10.000005) "


def test_timestamper_disabled():
    assert Timestamper().format(10, 5) == ""


def test_timestamper_zero_keeps_reference():
    stamper = Timestamper("z")
    stamper.format(10, 0)
    assert stamper.format(13, 250000) == "(3.250000) "


def test_timestamper_delta_updates_reference():
    delta = Timestamper("d")
    zero = Timestamper("z")
    for stamper in (delta, zero):
        stamper.format(10, 0)
    assert delta.format(13, 250000) == zero.format(13, 250000)
    assert delta.format(13, 250000) == Timestamper("z").format(99, 0)


def test_timestamper_negative_clamped():
    stamper = Timestamper("z")
    first = stamper.format(20, 0)
    assert stamper.format(10, 0) == first


def test_timestamper_dated_round_trip():
    text = Timestamper("A").format(1000000000, 42)
    assert text[0] == "("
    assert text[20:] == ".000042) "
    parsed = datetime.strptime(text[1:20], "%Y-%m-%d %H:%M:%S")
    assert parsed.timestamp() == 1000000000


def test_timestamper_unknown_mode():
    with pytest.raises(ValueError):
        Timestamper("q")


def test_main_help_returns_zero(capsys):
    assert main(["-?"]) == 0
    assert "Usage: isotpsniffer" in capsys.readouterr().err


def test_main_missing_ids_fails():
    assert main(["vcan0"]) == 1


def test_main_rx_ext_without_ext_fails():
    assert main(["-s", "123", "-d", "321", "-X", "5", "vcan0"]) == 1


def test_main_bad_link_layer(capsys):
    assert main(["-L", "1:2", "-s", "1", "-d", "2", "vcan0"]) == 1
    assert "unknown link layer options '1:2'." in capsys.readouterr().out