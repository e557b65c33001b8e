import io

import pytest

from cankit.frame import FrameFormatError, parse_canframe
from cankit.log2asc import LogFormatError
from cankit.log2long import convert, convert_line, main
from cankit.longframe import View, sprint_long_canframe


def test_convert_line_layout():
    result = convert_line("(1.0) can0 123#112233\n")
    long_part = sprint_long_canframe(parse_canframe("123#112233"), View.INDENT_SFF | View.ASCII, 8)
    assert result == f"(1.0)  can0  {long_part}"


def test_convert_line_indents_standard_ids():
    result = convert_line("(1.0) can0 123#11")
    assert result.split("  ", 2)[2].startswith("     123")


def test_convert_line_ascii_column():
    assert convert_line("(1.0) can0 123#414243").endswith("'ABC'")


def test_convert_line_fd_frame():
    assert "[03]" in convert_line("(1.0) can0 123##0112233")


def test_convert_line_missing_fields():
    with pytest.raises(LogFormatError):
        convert_line("(1.0) can0")


def test_convert_line_bad_frame():
    with pytest.raises(FrameFormatError):
        convert_line("(1.0) can0 12#11")


def test_convert_stream():
    lines = ["(1.0) can0 123#11\n", "(2.0) can1 12345678#2233\n"]
    out = io.StringIO()
    assert convert(io.StringIO("".join(lines)), out) == 2
    assert out.getvalue().splitlines() == [convert_line(line) for line in lines]


def test_main_success(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("(1.0) can0 123#11\n"))
    assert main([]) == 0
    assert capsys.readouterr().out == convert_line("(1.0) can0 123#11") + "\n"


def test_main_bad_frame(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO("(1.0) can0 xyz\n"))
    assert main([]) == 1
    assert "read: incomplete CAN frame" in capsys.readouterr().err


def test_main_bad_line(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("\n"))
    assert main([]) == 1