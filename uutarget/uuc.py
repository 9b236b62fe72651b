"""Target-side daemon answering UTP commands sent by the update host."""

from __future__ import annotations

import contextlib
import errno
import fcntl
import os
import re
import signal
import stat
import struct
import subprocess
import sys
import threading
import time
from collections.abc import Sequence
from pathlib import Path
from typing import IO, BinaryIO

from uutarget.utp import (
    MESSAGE_SIZE,
    VERSION,
    UtpFlag,
    UtpMessage,
    answer_type,
    can_busy,
    device_query,
)

PACKAGE = "uuc"
TARGET_FILE = "/tmp/file.utp"
DEFAULT_DEVICE = "/dev/utp"
MAX_DATA = 0x10000
WATCHDOG_TIMEOUT = 127
WATCHDOG_CPUS = frozenset({35, 51, 53})

_SHELL_LIMIT = 1023
_FIELD_PATTERN = re.compile(r"[^ \t,;]+")
_DEVNUM = re.compile(r"\s*(-?\d+):(-?\d+)")

_IOC_WRITE = 1
_IOC_READ = 2


def _ioc(direction: int, kind: str, number: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ord(kind) << 8) | number


UTP_GET_CPU_ID = _ioc(_IOC_READ, "U", 0, 4)
WDIOC_KEEPALIVE = _ioc(_IOC_READ, "W", 5, 4)
WDIOC_SETTIMEOUT = _ioc(_IOC_READ | _IOC_WRITE, "W", 6, 4)


def _wait_status(returncode: int) -> int:
    if returncode < 0:
        return -returncode
    return (returncode & 0xFF) << 8


def _answer(status: int) -> UtpMessage:
    if status:
        return UtpMessage(UtpFlag.STATUS, status=status)
    return UtpMessage()


def _restart() -> None:
    os.sync()
    with contextlib.suppress(OSError):
        os.kill(-1, signal.SIGTERM)
    time.sleep(1)
    with contextlib.suppress(OSError):
        os.kill(-1, signal.SIGKILL)
    with contextlib.suppress(OSError):
        Path("/proc/sysrq-trigger").write_text("b")


class UtpHandler:
    """Executes UTP commands and keeps the state shared between them."""

    sysfs_root = Path("/sys")
    poll_attempts = 0xFFFF
    poll_interval = 0.01
    settle_delay = 5.0

    def __init__(self, device: BinaryIO | None, target_file: str | os.PathLike[str] = TARGET_FILE) -> None:
        self.device = device
        self.target_file = Path(target_file)
        self._file: IO[bytes] | None = None
        self._process: subprocess.Popen | None = None

    def make_devnode(self, class_name: str, name: str, node: str, kind: int) -> None:
        """Create ``node`` from the device numbers published in sysfs."""
        if os.path.lexists(node):
            print(f"UTP: file/device node {node} already exists")
            return
        entry = self.sysfs_root / class_name / name / "dev"
        try:
            text = entry.read_text(errors="replace")[:20]
        except OSError as err:
            raise OSError(errno.EINVAL, f"no device numbers in {entry}") from err
        match = _DEVNUM.match(text)
        if match is None:
            raise OSError(errno.EINVAL, f"malformed device numbers in {entry}")
        major, minor = int(match.group(1)), int(match.group(2))
        print(f"make_devnode: creating node '{node}' with {major}+{minor}")
        with contextlib.suppress(OSError):
            os.unlink(node)
        os.mknod(node, kind | 0o666, os.makedev(major, minor))

    def run(self, command: str) -> int:
        """Run a shell command and return its wait status."""
        command = command[:_SHELL_LIMIT]
        print(f'UTP: executing "{command}"')
        sys.stdout.flush()
        try:
            completed = subprocess.run(command, shell=True)
        except OSError:
            return -1
        return _wait_status(completed.returncode)

    def pipe(self, command: str) -> None:
        """Start a shell command whose input receives the following data messages."""
        command = command[:_SHELL_LIMIT]
        sys.stdout.flush()
        try:
            process = subprocess.Popen(command, shell=True, stdin=subprocess.PIPE, bufsize=0)
        except OSError:
            print("the fork is failed ")
            raise
        self._process = process
        self._file = process.stdin
        print(f'pid is {process.pid}, UTP: executing "{command}"')

    def flush(self) -> None:
        """Close the open target and wait for the piped command to finish."""
        if self._file is None:
            return
        sys.stdout.flush()
        file, self._file = self._file, None
        process = self._process
        try:
            file.close()
        finally:
            if process is not None and process.stdin is file:
                process.wait()
                self._process = None
            print("UTP: closing the file")

    def poll_pipe(self) -> bool:
        """Wait for the piped command to exit; return whether it did."""
        for _ in range(self.poll_attempts):
            if self._child_dead():
                return True
            time.sleep(self.poll_interval)
        return False

    def _child_dead(self) -> bool:
        process = self._process
        if process is None:
            print("Process polling: no child process, maybe it has been killed already")
            return True
        if process.poll() is not None:
            print(f"Process status polling: {process.pid} has finished.")
            return True
        return False

    def _devnode_status(self, class_name: str, name: str, node: str, kind: int) -> int:
        try:
            self.make_devnode(class_name, name, node, kind)
        except OSError as err:
            return -errno.EINVAL if err.errno == errno.EINVAL else -1
        return 0

    def _pipe_status(self, command: str) -> int:
        try:
            self.pipe(command)
        except OSError:
            return -1
        return 0

    def _flush_status(self) -> int:
        try:
            self.flush()
        except OSError:
            return -1
        return 0

    def _open_target(self) -> None:
        try:
            self._file = open(self.target_file, "wb", buffering=0)
        except OSError:
            self._file = None

    def _send_busy(self) -> None:
        if self.device is None:
            return
        with contextlib.suppress(OSError):
            self.device.write(UtpMessage(UtpFlag.REPORT_BUSY).pack())

    def _partition_mmc(self, disk: str) -> int:
        script = "".join(f"d\n{index}\n" for index in range(4, 0, -1))
        script += "n\np\n1\n1\n+16M\n" + "n\np\n2\n\n\n" + f"t\n1\n0x{0x53:X}\n\n" + "w\n"
        try:
            subprocess.run(f"fdisk {disk}", shell=True, input=script.encode("ascii"))
        except OSError as err:
            return err.errno or -1
        return 0

    def _mknod(self, arguments: str) -> int:
        fields = _FIELD_PATTERN.findall(arguments)
        class_name, item, node, kind_name = (fields + [None] * 4)[:4]
        print(f"class = '{class_name}'")
        print(f"item = '{item}'")
        print(f"node = {node}")
        print(f"type = {kind_name}")
        if item is None:
            return -errno.EINVAL
        if node is None:
            node = f"/dev/{item}"
        kind = stat.S_IFBLK if kind_name in ("block", "blk") else stat.S_IFCHR
        print(f"UTP: running make_devnode({class_name},{item},{node},0x{kind:x})")
        return self._devnode_status(class_name, item, node, kind)

    def _read_file(self, path: str) -> UtpMessage:
        try:
            content = Path(path).read_bytes()
        except OSError as err:
            return UtpMessage(UtpFlag.STATUS, status=err.errno or errno.EIO)
        return UtpMessage(UtpFlag.DATA, data=content)

    def handle_command(self, command: str, payload: int = 0) -> UtpMessage | None:
        """Execute one command and return the answer, or None when there is none."""
        print(f"UTP: received command '{command}'")
        if can_busy(command):
            self._send_busy()

        if command == "?":
            return UtpMessage(UtpFlag.DATA, data=device_query().encode("ascii") + b"\0")
        if command.startswith("!"):
            if command[1:2] == "3":
                _restart()
                return None
            return _answer(0)
        if command.startswith("$ "):
            return _answer(self.run(command[2:]))
        if command in ("wff", "wfs"):
            self._open_target()
            return _answer(0)
        if command == "fff":
            self._flush_status()
            if (
                self._devnode_status("class/mtd", "mtd1", "/dev/mtd1", stat.S_IFCHR) >= 0
                and self._devnode_status("class/mtd", "mtd0", "/dev/mtd0", stat.S_IFCHR) >= 0
            ):
                self.run(f"kobs-ng -v -d {self.target_file}")
            return _answer(0)
        if command == "ffs":
            self._flush_status()
            status = 0
            if self._devnode_status("block", "mmcblk0", "/dev/mmc", stat.S_IFBLK) >= 0:
                status = self._partition_mmc("/dev/mmc")
                time.sleep(self.settle_delay)
            if not status and self._devnode_status(
                "block", "mmcblk0/mmcblk0p1", "/dev/mmc0p1", stat.S_IFBLK
            ) >= 0:
                self.run("dd if=/dev/zero of=/dev/mmc0p1 bs=512 count=4")
                self.run(
                    f"dd if={self.target_file} of=/dev/mmc0p1 ibs=512 seek=4 conv=sync,notrunc"
                )
            return _answer(status)
        if command.startswith("mknod"):
            return _answer(self._mknod(command[6:]))
        if command.startswith("wrf"):
            index = command[3:4]
            print(f"UTP: writing rootfs to flash, mtd #{index}, size {payload}")
            devnode = f"/dev/mtd{index}"
            self._devnode_status("class/mtd", devnode[5:], devnode, stat.S_IFCHR)
            return _answer(self._pipe_status(f"ubiformat {devnode} -f - -S {payload}"))
        if command.startswith("pipe"):
            return _answer(self._pipe_status(command[5:]))
        if command.startswith("pollpipe"):
            print("UTP: poll pipe.")
            return _answer(0 if self.poll_pipe() else 1)
        if command.startswith("wrs"):
            index = command[3:4]
            print(f"UTP: writing rootfs to SD card, mmc partition #{index}, size {payload}")
            devnode = f"/dev/mmcblk0p{index}"
            self._devnode_status("block", f"mmcblk0/mmcblk0p{index}", devnode, stat.S_IFBLK)
            if payload % 1024:
                print("UTP: WARNING! payload % 1024 != 0, the rest will be skipped")
            return _answer(self._pipe_status(f"dd of={devnode} bs=1K"))
        if command in ("frf", "frs"):
            return _answer(self._flush_status())
        if command.startswith("untar."):
            return _answer(self._pipe_status(f"tar {command[6:7]}xv -C {command[8:]}"))
        if command.startswith("read"):
            return self._read_file(command[5:])
        if command == "send":
            self._open_target()
            return _answer(0)
        if command.startswith("save"):
            if self._file is not None:
                with contextlib.suppress(OSError):
                    self._file.close()
                self._file = None
            with contextlib.suppress(OSError):
                os.rename(self.target_file, command[5:])
            return _answer(0)
        if command == "selftest":
            return _answer(0)

        print("UTP: Unknown command received, ignored")
        return UtpMessage(UtpFlag.STATUS, status=-errno.EINVAL)

    def handle_message(self, message: UtpMessage) -> UtpMessage | None:
        """Process one message from the driver and send back the answer, if any."""
        if message.flags & UtpFlag.COMMAND:
            answer = self.handle_command(message.command, message.payload)
            if answer is not None:
                print(
                    f"UTP: sending {answer_type(answer)} to kernel "
                    f"for command {message.command}."
                )
                if self.device is not None:
                    self.device.write(answer.pack())
            return answer
        if message.flags & UtpFlag.DATA:
            if self._file is not None:
                with contextlib.suppress(OSError):
                    self._file.write(message.data)
            return None
        print(f"UTP: Unknown flag {int(message.flags):x}")
        return None


def _feed_watchdog(fd: int) -> None:
    while True:
        try:
            fcntl.ioctl(fd, WDIOC_KEEPALIVE, bytearray(4))
        except OSError as err:
            print(f"ioctl WDIOC_KEEPALIVE error, {err.strerror}")
        print("feed_watchdog")
        time.sleep(60)


def _setup_watchdog(handler: UtpHandler, device_fd: int) -> None:
    buffer = bytearray(struct.pack("i", 50))
    try:
        fcntl.ioctl(device_fd, UTP_GET_CPU_ID, buffer)
    except OSError as err:
        print(f"cpu id get error: {err.strerror}")
        return
    (cpu_id,) = struct.unpack("i", buffer)
    print(f"cpu_id is {cpu_id}")
    if cpu_id not in WATCHDOG_CPUS:
        return
    try:
        handler.make_devnode("class/misc", "watchdog", "/dev/watchdog", stat.S_IFCHR)
    except OSError as err:
        print("The watchdog is not configured, needed by mx35/mx51/mx53 ")
        print(err.strerror)
        return
    try:
        watchdog = os.open("/dev/watchdog", os.O_RDWR)
    except OSError as err:
        print(err.strerror)
        return
    try:
        fcntl.ioctl(watchdog, WDIOC_SETTIMEOUT, bytearray(struct.pack("i", WATCHDOG_TIMEOUT)))
    except OSError as err:
        print(err.strerror)
    threading.Thread(target=_feed_watchdog, args=(watchdog,), daemon=True).start()


def main(argv: Sequence[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    devnode = args[0] if args else DEFAULT_DEVICE

    print(f"{PACKAGE} {VERSION}")
    os.makedirs("/tmp", mode=0o777, exist_ok=True)
    os.environ["FILE"] = TARGET_FILE

    print(f"UTP: Waiting for {devnode} to appear")
    handler = UtpHandler(None, TARGET_FILE)
    while True:
        try:
            handler.make_devnode("class/misc", "utp", devnode, stat.S_IFCHR)
            break
        except OSError:
            print(".", end="", flush=True)
            time.sleep(1)

    with open(devnode, "r+b", buffering=0) as device:
        handler.device = device
        _setup_watchdog(handler, device.fileno())
        while True:
            raw = device.read(MESSAGE_SIZE + MAX_DATA)
            if not raw:
                break
            try:
                message = UtpMessage.from_bytes(raw)
            except ValueError as err:
                print(f"UTP: malformed message: {err}")
                continue
            handler.handle_message(message)
    return 0


if __name__ == "__main__":
    sys.exit(main())