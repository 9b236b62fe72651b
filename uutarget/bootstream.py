"""Installation of i.MX23/28 bootstreams into the bootstream partition of a disk."""

from __future__ import annotations

import os
import re
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

SECTOR_SIZE = 512

# The MX23 boot ROM loads blindly from offset 2048, while the MX28 parses the
# BCB; starting images four sectors in keeps one layout valid for both.
IMAGE_OFFSET = 4

# Default alignment (in kB) of the second firmware image.
DEFAULT_IMAGE_ALIGNMENT = 64

MBR_SIGNATURE = 0xAA55
BCB_SIGNATURE = 0x00112233
MAX_DI_COUNT = 2
BOOTSTREAM_PARTITION_TYPE = ord("S")

_PTE = struct.Struct("<B3sB3sII")
_MBR_CODE_SIZE = 446
_MBR_TABLE_END = _MBR_CODE_SIZE + 4 * _PTE.size
_MBR_SIGNATURE = struct.Struct("<H")
MBR_SIZE = _MBR_TABLE_END + _MBR_SIGNATURE.size

_DRIVE_INFO = struct.Struct("<5I")
_BCB_HEADER = struct.Struct("<4I")
BCB_SIZE = _BCB_HEADER.size + MAX_DI_COUNT * _DRIVE_INFO.size

_INTEGER = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


class BootstreamError(Exception):
    """Raised when a bootstream cannot be installed."""


@dataclass(frozen=True)
class PartitionEntry:
    """One entry of an MBR partition table."""

    active: int = 0
    chs_start: bytes = b"\0\0\0"
    type: int = 0
    chs_end: bytes = b"\0\0\0"
    start: int = 0
    count: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> PartitionEntry:
        if len(data) < _PTE.size:
            raise BootstreamError("partition entry is truncated")
        return cls(*_PTE.unpack_from(data))


@dataclass(frozen=True)
class MasterBootRecord:
    """A master boot record with its four primary partitions."""

    bootstrap_code: bytes
    partitions: tuple[PartitionEntry, ...]
    signature: int

    @classmethod
    def from_bytes(cls, data: bytes) -> MasterBootRecord:
        if len(data) < MBR_SIZE:
            raise BootstreamError("Could not read MBR and partition table")
        partitions = tuple(
            PartitionEntry(*fields)
            for fields in _PTE.iter_unpack(data[_MBR_CODE_SIZE:_MBR_TABLE_END])
        )
        (signature,) = _MBR_SIGNATURE.unpack_from(data, _MBR_TABLE_END)
        return cls(bytes(data[:_MBR_CODE_SIZE]), partitions, signature)

    def bootstream_partition(self) -> PartitionEntry:
        """Return the first partition of type 'S'."""
        for entry in self.partitions:
            if entry.type == BOOTSTREAM_PARTITION_TYPE:
                return entry
        raise BootstreamError("Could not find bootstream partition.")


@dataclass(frozen=True)
class DriveInfo:
    """Location of one firmware copy as described in the BCB."""

    chip_num: int = 0
    drive_type: int = 0
    tag: int = 0
    first_sector_number: int = 0
    sector_count: int = 0

    def pack(self) -> bytes:
        return _DRIVE_INFO.pack(
            self.chip_num,
            self.drive_type,
            self.tag,
            self.first_sector_number,
            self.sector_count,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> DriveInfo:
        if len(data) < _DRIVE_INFO.size:
            raise BootstreamError("drive info is truncated")
        return cls(*_DRIVE_INFO.unpack_from(data))


@dataclass(frozen=True)
class BootControlBlock:
    """The boot control block read by the i.MX28 boot ROM."""

    primary_boot_tag: int
    secondary_boot_tag: int
    drive_info: tuple[DriveInfo, ...]
    signature: int = BCB_SIGNATURE

    @property
    def num_copies(self) -> int:
        return len(self.drive_info)

    def pack(self) -> bytes:
        if self.num_copies > MAX_DI_COUNT:
            raise BootstreamError(
                f"at most {MAX_DI_COUNT} drive info entries are supported"
            )
        body = b"".join(info.pack() for info in self.drive_info)
        return _BCB_HEADER.pack(
            self.signature,
            self.primary_boot_tag,
            self.secondary_boot_tag,
            self.num_copies,
        ) + body.ljust(MAX_DI_COUNT * _DRIVE_INFO.size, b"\0")

    @classmethod
    def from_bytes(cls, data: bytes) -> BootControlBlock:
        if len(data) < _BCB_HEADER.size:
            raise BootstreamError("boot control block is truncated")
        signature, primary, secondary, copies = _BCB_HEADER.unpack_from(data)
        if copies > MAX_DI_COUNT:
            raise BootstreamError(
                f"boot control block lists {copies} copies, at most {MAX_DI_COUNT} are supported"
            )
        end = _BCB_HEADER.size + copies * _DRIVE_INFO.size
        if len(data) < end:
            raise BootstreamError("boot control block is truncated")
        infos = tuple(
            DriveInfo(*fields)
            for fields in _DRIVE_INFO.iter_unpack(data[_BCB_HEADER.size:end])
        )
        return cls(primary, secondary, infos, signature)


def sector_count(size: int) -> int:
    """Number of sectors needed to hold ``size`` bytes."""
    return (size + SECTOR_SIZE - 1) // SECTOR_SIZE


def _round_up(value: int, step: int) -> int:
    return (value + step - 1) // step * step


def parse_alignment(text: str) -> int:
    """Parse an integer the way strtol with base 0 does; trailing garbage is an error."""
    match = _INTEGER.match(text)
    if match is None:
        if text:
            raise ValueError(f"garbage after alignment value: {text}")
        return 0
    rest = text[match.end():]
    if rest:
        raise ValueError(f"garbage after alignment value: {rest}")
    sign, digits = match.groups()
    value = int(digits, 0) if not digits.startswith("0") or digits.lower().startswith("0x") else int(digits, 8)
    return -value if sign == "-" else value


def plan_layout(
    partition: PartitionEntry, firmware_size: int, alignment_kb: int
) -> BootControlBlock:
    """Place two copies of a firmware in the partition and describe them in a BCB."""
    sector_offset = max(sector_count(BCB_SIZE), IMAGE_OFFSET)
    offset = sector_offset * SECTOR_SIZE + firmware_size
    if alignment_kb > 0:
        offset = _round_up(offset, alignment_kb * 1024)
    else:
        offset = _round_up(offset, SECTOR_SIZE)

    mincount = sector_count(offset + firmware_size)
    if partition.count < mincount:
        raise BootstreamError(
            f"Bootstream partition is too small with {partition.count} sectors.\n"
            f"With two instances of this firmware and firmware alignment to {alignment_kb} kB,\n"
            f"we require at least {mincount} sectors (or {mincount * SECTOR_SIZE // 1024} kB)."
        )

    first = DriveInfo(
        tag=1,
        first_sector_number=partition.start + sector_offset,
        sector_count=sector_count(offset) - sector_offset,
    )
    second = DriveInfo(
        tag=2,
        first_sector_number=first.first_sector_number + first.sector_count,
        sector_count=sector_count(firmware_size),
    )
    return BootControlBlock(1, 2, (first, second))


def _write_at(
    device: BinaryIO, position: int, data: bytes, label: str, failure: str, verbose: int
) -> None:
    if verbose:
        print(f"{label}... ", end="", flush=True)
    try:
        device.seek(position)
        device.write(data)
        device.flush()
        os.fsync(device.fileno())
    except OSError as err:
        if verbose:
            print(f"failed: {err.strerror}")
        raise BootstreamError(f"{failure} failed: {err.strerror}") from err
    if verbose:
        print("ok.")


def install_firmware(
    device_path: str | os.PathLike[str],
    firmware_path: str | os.PathLike[str],
    alignment_kb: int = DEFAULT_IMAGE_ALIGNMENT,
    verbose: int = 0,
) -> BootControlBlock:
    """Write the BCB and two copies of the firmware into the bootstream partition."""
    try:
        firmware = Path(firmware_path).read_bytes()
    except OSError as err:
        raise BootstreamError(
            f"Can't open firmware '{firmware_path}': {err.strerror}"
        ) from err
    if not firmware:
        raise BootstreamError(f"Firmware '{firmware_path}' is empty")

    if verbose > 1:
        print(f"Firmware size: {len(firmware)} bytes, {sector_count(len(firmware))} sectors")

    try:
        device = open(device_path, "r+b")
    except OSError as err:
        raise BootstreamError(f"Can't open device '{device_path}': {err.strerror}") from err

    with device:
        try:
            header = device.read(MBR_SIZE)
        except OSError as err:
            raise BootstreamError(
                f"Could not read MBR and partition table of '{device_path}': {err.strerror}"
            ) from err
        if len(header) < MBR_SIZE:
            raise BootstreamError(f"Could not read MBR and partition table of '{device_path}'")

        mbr = MasterBootRecord.from_bytes(header)
        if mbr.signature != MBR_SIGNATURE:
            raise BootstreamError(
                f"MBR signature check failed: expected 0x{MBR_SIGNATURE:x}, read 0x{mbr.signature:x}"
            )

        partition = mbr.bootstream_partition()
        if verbose > 1:
            index = mbr.partitions.index(partition)
            print(
                f"Bootstream partition found: partition {index}, "
                f"start={partition.start} length={partition.count} (sectors)"
            )

        bcb = plan_layout(partition, len(firmware), alignment_kb)
        first, second = bcb.drive_info

        if verbose > 1:
            for name, info in (("1st", first), ("2nd", second)):
                print(f"{name} bootstream:", file=sys.stderr)
                print(f"\tstart sector: {info.first_sector_number}", file=sys.stderr)
                print(f"\tsector count: {info.sector_count}", file=sys.stderr)

        _write_at(
            device,
            partition.start * SECTOR_SIZE,
            bcb.pack(),
            "Updating BCB",
            f"Writing BCB to '{device_path}'",
            verbose,
        )
        # The second copy goes first so that the first one stays intact meanwhile.
        _write_at(
            device,
            second.first_sector_number * SECTOR_SIZE,
            firmware,
            "Writing second firmware",
            "Writing second firmware",
            verbose,
        )
        _write_at(
            device,
            first.first_sector_number * SECTOR_SIZE,
            firmware,
            "Writing first firmware",
            "Writing first firmware",
            verbose,
        )

    return bcb