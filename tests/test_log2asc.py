import io

import pytest

from cankit.frame import CAN_EFF_FLAG, CAN_ERR_FLAG, CAN_MTU, CAN_RTR_FLAG, CANFD_MTU, CanFrame, parse_canframe
from cankit.log2asc import LogFormatError, can_asc, canfd_asc, convert, main


def test_can_asc_data_frame():
    frame = CanFrame(can_id=0x123, data=b"\x11\x22\x33")
    assert can_asc(frame, 1, False, "").split() == ["1", "123", "Rx", "d", "3", "11", "22", "33"]


def test_can_asc_extended_tx():
    frame = CanFrame(can_id=0x12345678 | CAN_EFF_FLAG, data=b"\x01")
    tokens = can_asc(frame, 2, False, "T").split()
    assert "12345678x" in tokens
    assert "Tx" in tokens


def test_can_asc_remote_frames():
    frame = CanFrame(can_id=0x123 | CAN_RTR_FLAG, length=0)
    assert can_asc(frame, 1, True, "").endswith("r")
    assert can_asc(frame, 1, False, "").split()[-2:] == ["r", "0"]


def test_can_asc_error_frame():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x40, data=bytes(8))
    assert "ErrorFrame" in can_asc(frame, 1, False, "")


def test_canfd_asc_fd_frame_with_brs():
    frame = parse_canframe("123##1112233")
    tokens = canfd_asc(frame, 1, CANFD_MTU, "").split()
    assert tokens[:4] == ["CANFD", "1", "Rx", "123"]
    assert tokens[-6] == "3000"
    assert "130000" in tokens
    assert tokens[-5:] == ["0"] * 5


def test_canfd_asc_classic_raw_dlc():
    frame = CanFrame(can_id=0x123, data=bytes(8), len8_dlc=0xE)
    tokens = canfd_asc(frame, 1, CAN_MTU, "").split()
    assert tokens[6] == "e"


def test_canfd_asc_classic_remote():
    frame = CanFrame(can_id=0x123 | CAN_RTR_FLAG, length=2)
    tokens = canfd_asc(frame, 1, CAN_MTU, "").split()
    assert tokens[6] == "2"
    assert tokens[7] == "0"
    assert tokens[-6] == "10"


LOG = "(1000.000000) can0 123#1122\n# comment\n(1000.500000) can0 321#R\n"


def test_convert_banner_and_frames():
    out = io.StringIO()
    count = convert(io.StringIO(LOG), out, ["can0"])
    lines = out.getvalue().splitlines()
    assert count == 2
    assert lines[0].startswith("date ")
    assert lines[1] == "base hex  timestamps absolute"
    assert lines[2] == "no internal events logged"
    assert float(lines[3].split()[0]) == 0.0
    assert float(lines[4].split()[0]) == pytest.approx(0.5)


def test_convert_d4_precision():
    out = io.StringIO()
    convert(io.StringIO(LOG), out, ["can0"], d4=True)
    stamp = out.getvalue().splitlines()[3].split()[0]
    assert len(stamp.split(".")[1]) == 4


def test_convert_crlf():
    out = io.StringIO(newline="")
    convert(io.StringIO(LOG), out, ["can0"], crlf=True)
    lines = out.getvalue().split("\n")[1:-1]
    assert all(line.endswith("\r") for line in lines)


def test_convert_skips_unselected_devices():
    out = io.StringIO()
    assert convert(io.StringIO(LOG), out, ["can1"]) == 0
    assert len(out.getvalue().splitlines()) == 3


def test_convert_channel_number():
    out = io.StringIO()
    convert(io.StringIO("(5.000000) can1 123#11\n"), out, ["can0", "can1"])
    assert out.getvalue().splitlines()[3].split()[1] == "2"


def test_convert_clamps_negative_time():
    out = io.StringIO()
    convert(io.StringIO("(10.500000) can0 123#11\n(10.000000) can0 123#22\n"), out, ["can0"])
    assert float(out.getvalue().splitlines()[4].split()[0]) == 0.0


def test_convert_fdfmt_uses_canfd_lines():
    out = io.StringIO()
    convert(io.StringIO(LOG), out, ["can0"], fdfmt=True)
    assert out.getvalue().splitlines()[3].split()[1] == "CANFD"


def test_convert_skips_fd_error_frames():
    out = io.StringIO()
    assert convert(io.StringIO("(1.000000) can0 20000040##011\n"), out, ["can0"]) == 0


def test_convert_rejects_bad_line():
    with pytest.raises(LogFormatError):
        convert(io.StringIO("(abc) can0 123#11\n"), io.StringIO(), ["can0"])


def test_convert_rejects_long_line():
    with pytest.raises(LogFormatError):
        convert(io.StringIO("(" + "1" * 500 + "\n"), io.StringIO(), ["can0"])


def test_convert_rejects_bad_frame():
    with pytest.raises(LogFormatError):
        convert(io.StringIO("(1.000000) can0 12#11\n"), io.StringIO(), ["can0"])


def test_main_converts_files(tmp_path):
    src = tmp_path / "in.log"
    dst = tmp_path / "out.asc"
    src.write_text(LOG)
    assert main(["-I", str(src), "-O", str(dst), "can0"]) == 0
    assert len(dst.read_text().splitlines()) == 5


def test_main_without_devices_fails(capsys):
    assert main([]) == 1
    assert "no CAN interfaces defined!" in capsys.readouterr().err


def test_main_missing_infile(tmp_path):
    assert main(["-I", str(tmp_path / "missing.log"), "can0"]) == 1