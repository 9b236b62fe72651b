"""Messages exchanged with the UTP gadget driver, and helpers around them."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntFlag

VERSION = "0.6"
FIRMWARE_VERSION = "2.6.31"
SERIAL_NUMBER = "000000000000"
CHIP_ID = "370000A5"
VENDOR_ID = 0x066F
PRODUCT_ID = 0x37FF

# Commands that report busy first; the host polls for their result later.
ASYNC_PREFIXES = ("$ ", "frf", "pollpipe")


class UtpFlag(IntFlag):
    """Bits of the ``flags`` word of a UTP message."""

    COMMAND = 0x00000001
    DATA = 0x00000002
    STATUS = 0x00000004
    REPORT_BUSY = 0x10000000


_SIZE_T = "Q" if struct.calcsize("N") == 8 else "I"
_HEADER = struct.Struct("<I" + _SIZE_T)
_LENGTH = struct.Struct("<" + _SIZE_T)
_PAYLOAD = struct.Struct("<Q")
_STATUS_IN = struct.Struct("<i")
_STATUS_OUT = struct.Struct("<I")
_UNION_SIZE = max(_PAYLOAD.size + 1, _LENGTH.size + 1, _STATUS_OUT.size)

# Size of a message without any trailing data.
MESSAGE_SIZE = _HEADER.size + _UNION_SIZE


def _overlay(body: bytearray, chunk: bytes) -> None:
    if len(chunk) > len(body):
        body.extend(bytes(len(chunk) - len(body)))
    body[: len(chunk)] = chunk


@dataclass(frozen=True)
class UtpMessage:
    """A UTP message; which fields are meaningful depends on ``flags``."""

    flags: UtpFlag = UtpFlag(0)
    payload: int = 0
    command: str = ""
    data: bytes = b""
    status: int = 0

    @property
    def size(self) -> int:
        """Total size in bytes of the packed message."""
        return _HEADER.size + len(self._body())

    def _body(self) -> bytes:
        extra = len(self.data) if self.flags & UtpFlag.DATA else 0
        body = bytearray(_UNION_SIZE + extra)
        if self.flags & UtpFlag.COMMAND:
            text = self.command.encode("utf-8", "surrogateescape") + b"\0"
            _overlay(body, _PAYLOAD.pack(self.payload) + text)
        if self.flags & UtpFlag.DATA:
            _overlay(body, _LENGTH.pack(len(self.data)) + bytes(self.data))
        if self.flags & UtpFlag.STATUS:
            _overlay(body, _STATUS_OUT.pack(self.status & 0xFFFFFFFF))
        return bytes(body)

    def pack(self) -> bytes:
        """Encode the message as the driver expects it."""
        body = self._body()
        return _HEADER.pack(int(self.flags), _HEADER.size + len(body)) + body

    @classmethod
    def from_bytes(cls, data: bytes) -> UtpMessage:
        """Decode a message read from the driver."""
        if len(data) < _HEADER.size:
            raise ValueError("UTP message is truncated")
        raw_flags, _ = _HEADER.unpack_from(data)
        flags = UtpFlag(raw_flags)
        body = bytes(data[_HEADER.size:])
        payload = 0
        command = ""
        content = b""
        status = 0
        if flags & UtpFlag.COMMAND:
            if len(body) < _PAYLOAD.size:
                raise ValueError("UTP command is truncated")
            (payload,) = _PAYLOAD.unpack_from(body)
            raw = body[_PAYLOAD.size:].split(b"\0", 1)[0]
            command = raw.decode("utf-8", "surrogateescape")
        if flags & UtpFlag.DATA:
            if len(body) < _LENGTH.size:
                raise ValueError("UTP data header is truncated")
            (length,) = _LENGTH.unpack_from(body)
            content = body[_LENGTH.size:_LENGTH.size + length]
            if len(content) < length:
                raise ValueError("UTP data is truncated")
        if flags & UtpFlag.STATUS:
            if len(body) < _STATUS_IN.size:
                raise ValueError("UTP status is truncated")
            (status,) = _STATUS_IN.unpack_from(body)
        return cls(flags, payload, command, content, status)


def answer_type(message: UtpMessage | None) -> str:
    """Describe an answer for log output."""
    if message is None:
        return "UNKNOWN"
    if message.flags & UtpFlag.STATUS:
        return "Non-success"
    if message.flags & UtpFlag.DATA:
        return "Data"
    if message.flags & UtpFlag.REPORT_BUSY:
        return "Busy"
    if message.flags & UtpFlag.COMMAND:
        return "Command ?!"
    return "Success"


def can_busy(command: str) -> bool:
    """Whether the command must be answered with busy before it runs."""
    return command.startswith(ASYNC_PREFIXES)


def device_query(
    firmware_version: str = FIRMWARE_VERSION,
    serial: str = SERIAL_NUMBER,
    chip_id: str = CHIP_ID,
) -> str:
    """Return the device description sent in reply to the '?' query."""
    return (
        "<DEVICE>\n"
        f" <FW>{firmware_version}</FW>\n"
        f" <DCE>{VERSION}</DCE>\n"
        f" <SN>{serial}</SN>"
        f" <CID>{chip_id}</CID>"
        f" <VID>{VENDOR_ID:04X}</VID>"
        f" <PID>{PRODUCT_ID:04X}</PID>"
        "</DEVICE>\n"
    )