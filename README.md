# cankit

Tools and a small library for working with CAN and CAN FD traffic on Linux
SocketCAN: the compact `candump` frame notation, log file conversion, SAE J1939
utilities and ISO 15765-2 (ISO-TP) helpers.

## Installation

```
pip install .
```

The socket based commands (`j1939*`, `isotp*`) need a Linux kernel with
SocketCAN and the matching CAN protocol modules (`can-j1939`, `can-isotp`).
The frame formatting library and the log converters run anywhere.

## Library

The compact frame notation `<can_id>#<data>` (and `<can_id>##<flags><data>`
for CAN FD) is handled by `cankit.frame`:

```python
from cankit.frame import parse_canframe, sprint_canframe

frame = parse_canframe("123#1122")
print(sprint_canframe(frame, sep=True, maxdlen=8))   # 123#11.22
```

Malformed input raises `FrameFormatError`. The human readable long form, with
optional ASCII, binary, byte-swapped and error frame views, comes from
`cankit.longframe.sprint_long_canframe` together with the `View` flags;
`cankit.longframe.format_error_frame` describes the contents of an error frame.

J1939 address specifications such as `can0:80,0ee00` are parsed and printed
by `cankit.j1939addr.str2addr` and `cankit.j1939addr.addr2str`.

ISO-TP socket options (`IsotpOptions`, `FlowControlOptions`,
`LinkLayerOptions`) and the parsers for their command line forms live in
`cankit.isotp`, together with `open_isotp_socket`.

## Commands

Log conversion:

```
log2asc -I candump.log -O trace.asc can0 can1
log2long < candump.log
```

`log2asc` writes an ASC trace for the named interfaces (`-4` four decimal
places, `-n` CR/LF line ends, `-f` CAN FD layout for all frames, `-r` no DLC
for remote frames). `log2long` rewrites each log line in the long readable
frame form.

SAE J1939:

```
j1939acd -r 0x80-0xfd -c /tmp/node.jacd 1122334455667788 can0
j1939cat -i payload.bin can0:0x80 :0x90,0x12300
j1939cat -r can0:0x90
j1939spy --time=a can0
```

`j1939acd` is an address claiming daemon, `j1939cat` a netcat-like transfer
tool (send a file, or with `-r` copy received data to standard output) and
`j1939spy` prints received traffic, optionally with timestamps
(`a` absolute, `d` delta, `z` zero based, `A` absolute with date).

ISO-TP:

```
echo "11 22 33 44 55 66 77 88 99" | isotpsend -s 123 -d 321 can0
isotpsniffer -s 123 -d 321 -c -t d can0
```

`isotpsend` sends one PDU read as hex bytes from standard input (or a fixed
test pattern with `-D <len>`). `isotpsniffer` shows both directions of an
ISO-TP conversation in hex and ASCII; press a key to stop it.

CAN identifiers and addresses are given in hexadecimal; eight digits select
an extended (29 bit) identifier. Run any command with `-?` for its options.

## What is not included

- There is no TCP server that bridges a network connection to an ISO-TP
  socket; ISO-TP PDUs can only be sent with `isotpsend` and observed with
  `isotpsniffer`.
- There is no interactive J1939 tool that relays standard input and output
  both ways over one socket; use `j1939cat` for one direction at a time.

## Tests

```
pip install .[test]
pytest
```