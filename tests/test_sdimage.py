import struct

import pytest

from uutarget.bootstream import (
    DEFAULT_IMAGE_ALIGNMENT,
    MBR_SIGNATURE,
    SECTOR_SIZE,
    BootControlBlock,
    PartitionEntry,
    plan_layout,
)
from uutarget.sdimage import DEFAULT_DEVICE, build_parser, main

START = 8
COUNT = 400


def _make_disk(path, signature=MBR_SIGNATURE):
    entry = struct.pack("<B3sB3sII", 0, b"\0\0\0", ord("S"), b"\0\0\0", START, COUNT)
    mbr = b"\0" * 446 + entry.ljust(64, b"\0") + struct.pack("<H", signature)
    path.write_bytes(mbr + b"\0" * ((START + COUNT) * SECTOR_SIZE - len(mbr)))
    return path


def _firmware(path, size=1000):
    data = bytes(i % 7 + 1 for i in range(size))
    path.write_bytes(data)
    return data


def test_build_parser_defaults_and_counts():
    options = build_parser().parse_args(["-v", "-v", "-f", "fw.sb", "-a", "32"])
    assert options.device == DEFAULT_DEVICE
    assert options.verbose == 2
    assert options.firmware == "fw.sb"
    assert options.alignment == ["32"]


def test_no_firmware_prints_usage_and_fails(capsys):
    assert main([]) == 1
    err = capsys.readouterr().err
    assert "Usage: sdimage [options] -f <firmware>" in err
    assert "--alignment" in err


def test_help_succeeds(capsys):
    assert main(["-h"]) == 0
    assert "print this usage and exit" in capsys.readouterr().err


def test_unknown_option_prints_usage(capsys):
    assert main(["--bogus"]) == 0
    assert "Options:" in capsys.readouterr().err


def test_garbage_alignment_fails(tmp_path, capsys):
    assert main(["-a", "12kb", "-f", str(tmp_path / "fw.sb")]) == 1
    assert "Error: garbage after alignment value: kb" in capsys.readouterr().err


def test_install_via_main(tmp_path):
    disk = _make_disk(tmp_path / "disk.img")
    data = _firmware(tmp_path / "fw.sb")
    assert main(["-d", str(disk), "-f", str(tmp_path / "fw.sb"), "-a", "0x10"]) == 0
    image = disk.read_bytes()
    bcb = BootControlBlock.from_bytes(image[START * SECTOR_SIZE:])
    part = PartitionEntry(type=ord("S"), start=START, count=COUNT)
    assert bcb == plan_layout(part, len(data), 16)
    for info in bcb.drive_info:
        offset = info.first_sector_number * SECTOR_SIZE
        assert image[offset:offset + len(data)] == data


def test_negative_alignment_uses_default(tmp_path, capsys):
    disk = _make_disk(tmp_path / "disk.img")
    data = _firmware(tmp_path / "fw.sb")
    assert main(["-d", str(disk), "-f", str(tmp_path / "fw.sb"), "--alignment=-5"]) == 0
    assert "Warning: invalid alignment '-5' given" in capsys.readouterr().err
    bcb = BootControlBlock.from_bytes(disk.read_bytes()[START * SECTOR_SIZE:])
    part = PartitionEntry(type=ord("S"), start=START, count=COUNT)
    assert bcb == plan_layout(part, len(data), DEFAULT_IMAGE_ALIGNMENT)


def test_install_error_reported(tmp_path, capsys):
    disk = _make_disk(tmp_path / "disk.img", signature=0)
    _firmware(tmp_path / "fw.sb")
    assert main(["-d", str(disk), "-f", str(tmp_path / "fw.sb")]) == 1
    assert "MBR signature check failed" in capsys.readouterr().err


@pytest.mark.parametrize("flag", ["-v", "--verbose"])
def test_verbose_progress(tmp_path, capsys, flag):
    disk = _make_disk(tmp_path / "disk.img")
    _firmware(tmp_path / "fw.sb")
    assert main([flag, "-d", str(disk), "-f", str(tmp_path / "fw.sb")]) == 0
    out = capsys.readouterr().out
    assert "Updating BCB... ok." in out
    assert "Writing first firmware... ok." in out