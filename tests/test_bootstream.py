import struct

import pytest

from uutarget.bootstream import (
    BCB_SIGNATURE,
    BCB_SIZE,
    DEFAULT_IMAGE_ALIGNMENT,
    IMAGE_OFFSET,
    MBR_SIGNATURE,
    SECTOR_SIZE,
    BootControlBlock,
    BootstreamError,
    DriveInfo,
    MasterBootRecord,
    PartitionEntry,
    install_firmware,
    parse_alignment,
    plan_layout,
    sector_count,
)


def _mbr_bytes(partitions, signature=MBR_SIGNATURE):
    entries = b"".join(
        struct.pack("<B3sB3sII", 0, b"\0\0\0", ptype, b"\0\0\0", start, count)
        for ptype, start, count in partitions
    )
    entries = entries.ljust(64, b"\0")
    return b"\x90" * 446 + entries + struct.pack("<H", signature)


def _make_disk(path, start=8, count=400, ptype=ord("S"), signature=MBR_SIGNATURE):
    mbr = _mbr_bytes([(0x0C, 600, 10), (ptype, start, count)], signature)
    path.write_bytes(mbr + b"\0" * ((start + count) * SECTOR_SIZE - len(mbr)))
    return path


def _firmware(path, size=1000):
    data = bytes(i % 251 for i in range(size))
    path.write_bytes(data)
    return data


@pytest.mark.parametrize("size", [0, 1, 511, 512, 513, 1000, 4096, 65537])
def test_sector_count_covers_size_minimally(size):
    count = sector_count(size)
    assert count * SECTOR_SIZE >= size
    assert max(count - 1, 0) * SECTOR_SIZE < size or size == 0


def test_sector_count_exact_sector():
    assert sector_count(SECTOR_SIZE) == 1


@pytest.mark.parametrize(
    "text, expected",
    [("64", 64), ("0x40", 64), ("0100", 64), (" 64", 64), ("-1", -1), ("0", 0)],
)
def test_parse_alignment(text, expected):
    assert parse_alignment(text) == expected


@pytest.mark.parametrize("text", ["12abc", "0x", "kb", "08"])
def test_parse_alignment_garbage(text):
    with pytest.raises(ValueError, match="garbage after alignment value"):
        parse_alignment(text)


def test_partition_entry_from_bytes():
    raw = struct.pack("<B3sB3sII", 0x80, b"\1\2\3", ord("S"), b"\4\5\6", 2048, 4096)
    entry = PartitionEntry.from_bytes(raw)
    assert entry == PartitionEntry(0x80, b"\1\2\3", ord("S"), b"\4\5\6", 2048, 4096)


def test_partition_entry_truncated():
    with pytest.raises(BootstreamError):
        PartitionEntry.from_bytes(b"\0" * 4)


def test_mbr_parsing_and_bootstream_partition():
    mbr = MasterBootRecord.from_bytes(_mbr_bytes([(0x83, 100, 50), (ord("S"), 8, 300)]))
    assert mbr.signature == MBR_SIGNATURE
    assert len(mbr.partitions) == 4
    part = mbr.bootstream_partition()
    assert (part.type, part.start, part.count) == (ord("S"), 8, 300)
    assert mbr.partitions.index(part) == 1


def test_mbr_without_bootstream_partition():
    mbr = MasterBootRecord.from_bytes(_mbr_bytes([(0x83, 100, 50)]))
    with pytest.raises(BootstreamError, match="bootstream partition"):
        mbr.bootstream_partition()


def test_mbr_truncated():
    with pytest.raises(BootstreamError):
        MasterBootRecord.from_bytes(b"\0" * 100)


def test_drive_info_round_trip():
    info = DriveInfo(1, 2, 3, 4000, 5000)
    assert DriveInfo.from_bytes(info.pack()) == info


def test_bcb_round_trip_and_signature_bytes():
    bcb = BootControlBlock(1, 2, (DriveInfo(tag=1, first_sector_number=12),
                                  DriveInfo(tag=2, first_sector_number=140)))
    packed = bcb.pack()
    assert packed[:4] == b"\x33\x22\x11\x00"
    assert len(packed) == BCB_SIZE
    assert BootControlBlock.from_bytes(packed) == bcb
    assert bcb.signature == BCB_SIGNATURE
    assert bcb.num_copies == 2


def test_bcb_too_many_copies():
    bcb = BootControlBlock(1, 2, (DriveInfo(), DriveInfo(), DriveInfo()))
    with pytest.raises(BootstreamError):
        bcb.pack()
    raw = struct.pack("<4I", BCB_SIGNATURE, 1, 2, 3) + b"\0" * 60
    with pytest.raises(BootstreamError):
        BootControlBlock.from_bytes(raw)


@pytest.mark.parametrize("fw_size", [1, 512, 1000, 70000])
@pytest.mark.parametrize("alignment", [0, 1, DEFAULT_IMAGE_ALIGNMENT])
def test_plan_layout_invariants(fw_size, alignment):
    part = PartitionEntry(type=ord("S"), start=8, count=100000)
    bcb = plan_layout(part, fw_size, alignment)
    first, second = bcb.drive_info
    assert (first.tag, second.tag) == (bcb.primary_boot_tag, bcb.secondary_boot_tag)
    assert first.first_sector_number - part.start == IMAGE_OFFSET
    assert second.first_sector_number == first.first_sector_number + first.sector_count
    assert first.sector_count * SECTOR_SIZE >= fw_size
    assert second.sector_count == sector_count(fw_size)
    step = alignment * 1024 if alignment > 0 else SECTOR_SIZE
    assert ((second.first_sector_number - part.start) * SECTOR_SIZE) % step == 0


def test_plan_layout_minimum_partition():
    big = PartitionEntry(type=ord("S"), start=8, count=100000)
    second = plan_layout(big, 1000, DEFAULT_IMAGE_ALIGNMENT).drive_info[1]
    needed = second.first_sector_number - big.start + second.sector_count
    exact = PartitionEntry(type=ord("S"), start=8, count=needed)
    assert plan_layout(exact, 1000, DEFAULT_IMAGE_ALIGNMENT).drive_info[1] == second
    small = PartitionEntry(type=ord("S"), start=8, count=needed - 1)
    with pytest.raises(BootstreamError, match="too small"):
        plan_layout(small, 1000, DEFAULT_IMAGE_ALIGNMENT)


def test_install_firmware_writes_bcb_and_both_copies(tmp_path):
    disk = _make_disk(tmp_path / "disk.img")
    original = disk.read_bytes()
    data = _firmware(tmp_path / "fw.sb")
    bcb = install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)
    image = disk.read_bytes()
    assert len(image) == len(original)
    assert image[:512] == original[:512]
    assert BootControlBlock.from_bytes(image[8 * SECTOR_SIZE:]) == bcb
    for info in bcb.drive_info:
        offset = info.first_sector_number * SECTOR_SIZE
        assert image[offset:offset + len(data)] == data


def test_install_firmware_verbose_output(tmp_path, capsys):
    disk = _make_disk(tmp_path / "disk.img")
    _firmware(tmp_path / "fw.sb")
    install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 2)
    captured = capsys.readouterr()
    assert "Updating BCB... ok." in captured.out
    assert "Writing second firmware... ok." in captured.out
    assert "Writing first firmware... ok." in captured.out
    assert "Bootstream partition found: partition 1" in captured.out
    assert "1st bootstream:" in captured.err


def test_install_firmware_bad_signature(tmp_path):
    disk = _make_disk(tmp_path / "disk.img", signature=0x1234)
    _firmware(tmp_path / "fw.sb")
    with pytest.raises(BootstreamError, match="MBR signature check failed"):
        install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)


def test_install_firmware_missing_files(tmp_path):
    disk = _make_disk(tmp_path / "disk.img")
    _firmware(tmp_path / "fw.sb")
    with pytest.raises(BootstreamError, match="Can't open firmware"):
        install_firmware(disk, tmp_path / "missing.sb", DEFAULT_IMAGE_ALIGNMENT, 0)
    with pytest.raises(BootstreamError, match="Can't open device"):
        install_firmware(tmp_path / "nodisk", tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)


def test_install_firmware_short_device(tmp_path):
    disk = tmp_path / "disk.img"
    disk.write_bytes(b"\0" * 100)
    _firmware(tmp_path / "fw.sb")
    with pytest.raises(BootstreamError, match="Could not read MBR"):
        install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)


def test_install_firmware_no_partition_or_too_small(tmp_path):
    _firmware(tmp_path / "fw.sb")
    disk = _make_disk(tmp_path / "a.img", ptype=0x83)
    with pytest.raises(BootstreamError, match="Could not find bootstream partition"):
        install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)
    disk = _make_disk(tmp_path / "b.img", count=20)
    with pytest.raises(BootstreamError, match="too small"):
        install_firmware(disk, tmp_path / "fw.sb", DEFAULT_IMAGE_ALIGNMENT, 0)