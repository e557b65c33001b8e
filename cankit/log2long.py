"""Convert compact CAN log lines into the long, user readable format."""

from __future__ import annotations

import argparse
import sys
from typing import Iterable, TextIO

from .frame import FrameFormatError, parse_canframe
from .log2asc import LogFormatError
from .longframe import View, sprint_long_canframe


def convert_line(line: str) -> str:
    """Convert one ``<timestamp> <device> <frame>`` log line."""
    fields = line.split()
    if len(fields) < 3:
        raise LogFormatError(f"incomplete log line: {line!r}")
    timestamp, device, ascframe = fields[:3]
    frame = parse_canframe(ascframe)
    text = sprint_long_canframe(frame, View.INDENT_SFF | View.ASCII, frame.maxdlen)
    return f"{timestamp}  {device}  {text}"


def convert(infile: Iterable[str], outfile: TextIO) -> int:
    """Convert every line of ``infile``; return the number of lines written."""
    count = 0
    for line in infile:
        outfile.write(convert_line(line) + "\n")
        count += 1
    return count


def main(argv: list[str] | None = None) -> int:
    """Read a compact log on stdin and write the long format to stdout."""
    argparse.ArgumentParser(
        prog="log2long",
        description="convert compact CAN frame representation into user readable",
    ).parse_args(argv)
    try:
        convert(sys.stdin, sys.stdout)
    except LogFormatError:
        return 1
    except FrameFormatError:
        sys.stderr.write("read: incomplete CAN frame\n")
        return 1
    return 0