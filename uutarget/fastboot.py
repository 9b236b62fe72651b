"""Target side of the fastboot-like protocol spoken over a FunctionFS gadget."""

from __future__ import annotations

import contextlib
import os
import re
import select
import signal
import subprocess
import sys
import time
from collections.abc import Sequence
from enum import IntEnum
from typing import BinaryIO

from uutarget.functionfs import build_descriptors, build_strings

PACKAGE = "uuu fastboot client"
VERSION = "1.0.0"

MAX_FRAME_SIZE = 64
MAX_FRAME_DATA_SIZE = 60
UPLOAD_CHUNK = 0x10000
COMMAND_SIZE = 511
DEFAULT_EP0 = "/dev/usb-ffs/ep0"

_HEX = re.compile(r"\s*(?:0[xX])?([0-9a-fA-F]+)")


class FrameKey(IntEnum):
    """Four-character frame keys, stored little endian so they read as text."""

    INFO = int.from_bytes(b"INFO", "little")
    FAIL = int.from_bytes(b"FAIL", "little")
    OKAY = int.from_bytes(b"OKAY", "little")
    DATA = int.from_bytes(b"DATA", "little")


def frame(key: FrameKey, data: bytes = b"") -> bytes:
    """Build a reply frame: the key followed by optional payload."""
    return int(key).to_bytes(4, "little") + bytes(data)


def round_up_to_cache_line(size: int) -> int:
    """Round a buffer size up to a multiple of 128 bytes."""
    return (size + 0x7F) & ~0x7F


def _parse_hex(text: str) -> int:
    match = _HEX.match(text)
    return int(match.group(1), 16) & 0xFFFFFFFF if match else 0


def _read_chunk(stream: BinaryIO) -> bytes | None:
    try:
        return os.read(stream.fileno(), MAX_FRAME_DATA_SIZE)
    except (OSError, ValueError):
        return None


def _readable(stream: BinaryIO | None) -> bool:
    return stream is not None and not stream.closed


def _make_nonblocking(stream: BinaryIO) -> None:
    os.set_blocking(stream.fileno(), False)


class FastbootSession:
    """Handles host commands read from ``source`` and answers on ``sink``."""

    def __init__(self, sink: BinaryIO, source: BinaryIO) -> None:
        self.sink = sink
        self.source = source
        self._process: subprocess.Popen | None = None
        self._open_file: BinaryIO | None = None
        self._handlers = (
            ("UCmd:", self._run_sync),
            ("ACmd:", self._run_async),
            ("Sync", self._sync),
            ("WOpen:", self._open_for_write),
            ("ROpen:", self._open_for_read),
            ("Close", self._close),
            ("donwload:", self._download),
            ("upload", self._upload),
        )

    def send(self, data: bytes) -> None:
        """Write one transfer to the host; failures are reported, not raised."""
        try:
            self.sink.write(bytes(data))
        except OSError:
            print("failure write to usb ep")

    def write_file(self, target: BinaryIO, data: bytes) -> int:
        """Write all of ``data`` without blocking, sending INFO after each attempt."""
        try:
            _make_nonblocking(target)
            fd = target.fileno()
        except (OSError, ValueError):
            print("fctl failure")
            raise
        view = memoryview(bytes(data))
        written = 0
        while written < len(view):
            try:
                count = target.write(view[written:])
            except BlockingIOError as err:
                count = err.characters_written
            written += count or 0
            self.send(frame(FrameKey.INFO))
            if written < len(view):
                select.select([], [fd], [], 0.1)
        return written

    def handle_command(self, command: str) -> None:
        """Dispatch one command string received from the host."""
        for prefix, handler in self._handlers:
            if command.startswith(prefix):
                handler(command[len(prefix):])
                return
        print(f"Unknow Cmd {command}")

    def serve(self) -> None:
        """Handle commands until the source reports end of file."""
        while True:
            try:
                raw = self.source.read(COMMAND_SIZE)
            except OSError:
                print("failure read command from usb ep point")
                continue
            if not raw:
                return
            command = os.fsdecode(bytes(raw).split(b"\0", 1)[0])
            self.handle_command(command)

    def _pump(self, stream: BinaryIO) -> None:
        while (chunk := _read_chunk(stream)) is not None:
            self.send(frame(FrameKey.INFO, chunk))
            if len(chunk) != MAX_FRAME_DATA_SIZE:
                break

    def _drain(self, stream: BinaryIO) -> None:
        while chunk := _read_chunk(stream):
            self.send(frame(FrameKey.INFO, chunk))

    def _follow(self, process: subprocess.Popen, stream: BinaryIO | None) -> FrameKey:
        while True:
            finished = process.poll() is not None
            if _readable(stream):
                select.select([stream], [], [], 0.05)
                self._pump(stream)
            self.send(frame(FrameKey.INFO))
            if finished:
                return FrameKey.FAIL if process.returncode > 0 else FrameKey.OKAY

    def _run_sync(self, command: str) -> None:
        print(f"run shell cmd: {command}")
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                bufsize=0,
            )
        except OSError:
            print(f"Failure excecu cmd: {command}")
            return
        with process.stdout as out:
            _make_nonblocking(out)
            key = self._follow(process, out)
            self.send(frame(key))

    def _run_async(self, command: str) -> None:
        print(f"run shell cmd: {command}")
        try:
            self._process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                bufsize=0,
            )
        except OSError:
            print(f"Failure excecu cmd: {command}")
            self._process = None
        time.sleep(0.05)

        process = self._process
        if process is None:
            key = FrameKey.FAIL
            self._open_file = None
        else:
            code = process.poll()
            key = FrameKey.FAIL if code is not None and code > 0 else FrameKey.OKAY
            self._open_file = process.stdin
        self.send(frame(key))
        if process is not None:
            _make_nonblocking(process.stdout)

    def _sync(self, _: str) -> None:
        print("wait for async proccess finish")
        process = self._process
        if process is None:
            self.send(frame(FrameKey.FAIL))
        else:
            key = self._follow(process, process.stdout)
            self.send(frame(key))
            for stream in (process.stdin, process.stdout):
                if stream is not None:
                    with contextlib.suppress(OSError):
                        stream.close()
        self._process = None
        self._open_file = None

    def _open_for_write(self, path: str) -> None:
        print(f"WOpen:{path}")
        reply = b""
        if path.startswith("-"):
            self._open_file = self._process.stdin if self._process else None
        elif os.path.isdir(path):
            self._open_file = None
            reply = b"DIR"
        else:
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o664)
                self._open_file = open(fd, "wb", buffering=0)
            except OSError:
                self._open_file = None
        key = FrameKey.FAIL if self._open_file is None else FrameKey.OKAY
        self.send(frame(key, reply))

    def _open_for_read(self, path: str) -> None:
        print(f"ROpen: {path}")
        reply = b""
        if path.startswith("-"):
            self._open_file = self._process.stdout if self._process else None
        else:
            try:
                self._open_file = open(path, "rb", buffering=0)
            except OSError:
                self._open_file = None
            try:
                size = os.stat(path).st_size
            except OSError:
                size = 0
            reply = f"{size:016X}".encode("ascii")
        key = FrameKey.FAIL if self._open_file is None else FrameKey.OKAY
        self.send(frame(key, reply))

    def _close(self, _: str) -> None:
        if self._open_file is not None:
            with contextlib.suppress(OSError):
                self._open_file.close()
        self._open_file = None
        self.send(frame(FrameKey.OKAY))

    def _download(self, argument: str) -> None:
        size = _parse_hex(argument)
        self.send(frame(FrameKey.DATA, f"{size:08X}".encode("ascii")))

        key = FrameKey.OKAY
        try:
            data = self.source.read(round_up_to_cache_line(size))
        except OSError:
            data = None
        if data is None:
            key = FrameKey.FAIL
        received = -1 if data is None else len(data)
        if received != size:
            print(f"read size {received} != {size}")
            key = FrameKey.FAIL

        broken_pipe = False
        if self._open_file is None:
            print("fctl failure")
            key = FrameKey.FAIL
        elif data is not None:
            try:
                self.write_file(self._open_file, data)
            except BrokenPipeError:
                broken_pipe = True
                key = FrameKey.FAIL
            except (OSError, ValueError):
                key = FrameKey.FAIL
        else:
            key = FrameKey.FAIL

        if self._process is not None and _readable(self._process.stdout):
            stdout = self._process.stdout
            try:
                _make_nonblocking(stdout)
            except OSError:
                print("fctl failure")
                return
            self._drain(stdout)

        self.send(frame(key, b"EPIPE" if broken_pipe else b""))

    def _upload(self, _: str) -> None:
        print(".", end="", flush=True)
        stream = self._open_file
        while True:
            if stream is None:
                self.send(frame(FrameKey.FAIL))
                return
            try:
                chunk = stream.read(UPLOAD_CHUNK)
            except BlockingIOError:
                chunk = None
            except (OSError, ValueError):
                self.send(frame(FrameKey.FAIL))
                return
            if chunk is None:
                self.send(frame(FrameKey.DATA, b"%08X" % 0))
                continue
            self.send(frame(FrameKey.DATA, b"%08X" % len(chunk)))
            self.send(chunk)
            self.send(frame(FrameKey.OKAY))
            return


def _sibling_endpoint(ep0_path: str, number: str) -> str:
    return ep0_path[:-1] + number


def main(argv: Sequence[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    print(f"{PACKAGE} {VERSION}")
    if hasattr(signal, "SIGPIPE"):
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)

    ep0_path = args[0] if args else DEFAULT_EP0
    with contextlib.ExitStack() as stack:
        try:
            ep0 = stack.enter_context(open(ep0_path, "r+b", buffering=0))
        except OSError:
            print(f"Can't open file {ep0_path}")
            return 1

        print("Start init usb")
        try:
            ep0.write(build_descriptors())
        except OSError:
            print("write descriptor failure")
            return 1
        print("write string")
        try:
            ep0.write(build_strings())
        except OSError:
            print("write string failure")
            return 1

        endpoints = []
        for number in ("1", "2"):
            path = _sibling_endpoint(ep0_path, number)
            try:
                endpoints.append(stack.enter_context(open(path, "r+b", buffering=0)))
            except OSError:
                print(f"can't open file {path}")
                return 1
        sink, source = endpoints

        print("Start handle command")
        FastbootSession(sink, source).serve()
    return 0


if __name__ == "__main__":
    sys.exit(main())