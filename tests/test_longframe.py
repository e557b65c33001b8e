import io

import pytest

from cankit.frame import (
    CAN_EFF_FLAG,
    CAN_ERR_FLAG,
    CAN_RTR_FLAG,
    CanFrame,
    parse_canframe,
)
from cankit.longframe import (
    View,
    format_error_frame,
    fprint_long_canframe,
    sprint_long_canframe,
)


def test_swap_reverses_bytes():
    frame = CanFrame(can_id=0x123, data=b"\x11\x22\x33")
    normal = sprint_long_canframe(frame, 0, 8)
    swapped = sprint_long_canframe(frame, View.SWAP, 8)
    assert swapped.split()[-1].split("`") == normal.split()[2:][::-1]


def test_binary_fields_encode_each_byte():
    data = b"\xa5\x01\xff"
    frame = CanFrame(can_id=0x7FF, data=data)
    fields = sprint_long_canframe(frame, View.BINARY, 8).split()[2:]
    assert all(len(field) == 8 for field in fields)
    assert [int(field, 2) for field in fields] == list(data)


def test_parsed_frame_matches_direct_frame():
    direct = CanFrame(can_id=0x123, data=b"\x11\x22\x33")
    parsed = parse_canframe("123#112233")
    assert sprint_long_canframe(parsed, View.ASCII, 8) == sprint_long_canframe(direct, View.ASCII, 8)


def test_fd_long_payload_has_no_ascii_column():
    frame = CanFrame(can_id=0x123, data=bytes(range(0x41, 0x41 + 12)), fd=True)
    out = sprint_long_canframe(frame, View.ASCII, 64)
    assert "'" not in out
    assert len(out.split()) == 2 + 12


def test_error_class_bus_off():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x40, data=bytes(8))
    assert format_error_frame(frame) == "bus-off"


def test_error_classes_joined_by_separator():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x41, data=bytes(8))
    assert format_error_frame(frame, "|") == "tx-timeout|bus-off"


def test_lost_arbitration_bit():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x02, data=bytes([5, 0, 0, 0, 0, 0, 0, 0]))
    assert format_error_frame(frame) == "lost-arbitration{at bit 5}"


def test_controller_problems():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x04, data=bytes([0, 0x05, 0, 0, 0, 0, 0, 0]))
    assert format_error_frame(frame) == "controller-problem{rx-overflow,rx-error-warning}"


def test_protocol_violation_location():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x08, data=bytes([0, 0, 0x01, 0x08, 0, 0, 0, 0]))
    result = format_error_frame(frame)
    assert "protocol-violation" in result
    assert "single-bit-error" in result
    assert "crc-sequence" in result


def test_error_counters_appended():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x40, data=bytes([0, 0, 0, 0, 0, 0, 3, 4]))
    result = format_error_frame(frame)
    assert result.startswith("bus-off,")
    assert "error-counter-tx-rx" in result


def test_invalid_error_class_raises():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x1111, data=bytes(8))
    with pytest.raises(ValueError):
        format_error_frame(frame)


def test_non_error_frame_gives_empty_description():
    assert format_error_frame(CanFrame(can_id=0x40, data=bytes(8))) == ""


def test_fprint_long_with_error_view():
    frame = CanFrame(can_id=CAN_ERR_FLAG | 0x40, data=bytes(8))
    stream = io.StringIO()
    fprint_long_canframe(stream, frame, "\n", View.ERROR, 8)
    expected = (
        sprint_long_canframe(frame, View.ERROR, 8)
        + "\n\t"
        + format_error_frame(frame, "\n\t")
        + "\n"
    )
    assert stream.getvalue() == expected


def test_fprint_long_without_eol():
    frame = CanFrame(can_id=0x123, data=b"\x01")
    stream = io.StringIO()
    fprint_long_canframe(stream, frame, None, 0, 8)
    assert stream.getvalue() == sprint_long_canframe(frame, 0, 8)