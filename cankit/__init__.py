"""CAN frame formatting, log conversion, J1939 and ISO-TP tools for SocketCAN."""

__version__ = "0.1.0"