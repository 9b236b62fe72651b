"""FunctionFS descriptor and string blobs for the vendor-specific fastboot interface."""

from __future__ import annotations

import struct

FUNCTIONFS_DESCRIPTORS_MAGIC_V2 = 3
FUNCTIONFS_STRINGS_MAGIC = 2
FUNCTIONFS_HAS_FS_DESC = 1
FUNCTIONFS_HAS_HS_DESC = 2
FUNCTIONFS_HAS_SS_DESC = 4
FUNCTIONFS_HAS_MS_OS_DESC = 8

USB_DT_INTERFACE = 0x04
USB_DT_ENDPOINT = 0x05
USB_DT_SS_ENDPOINT_COMP = 0x30
USB_CLASS_VENDOR_SPEC = 0xFF
USB_DIR_IN = 0x80
USB_DIR_OUT = 0x00
USB_ENDPOINT_XFER_BULK = 2

INTERFACE_NAME = "utp"
LANG_EN_US = 0x0409
COMPATIBLE_ID = b"WINUSB"
PROPERTY_NAME = "DeviceInterfaceGUID"
DEVICE_INTERFACE_GUID = "{4866319A-F4D6-4374-93B9-DC2DEB361BA9}"

_DESCS_HEAD = struct.Struct("<3I")
_COUNTS = struct.Struct("<4I")
_INTERFACE = struct.Struct("<9B")
_ENDPOINT = struct.Struct("<4BHB")
_SS_EP_COMP = struct.Struct("<4BH")
# interface, dwLength, bcdVersion, wIndex and the bCount/Reserved pair (or wCount).
_OS_HEADER = struct.Struct("<BIHHH")
_EXT_COMPAT = struct.Struct("<BB8s8s6s")
_EXT_PROP = struct.Struct("<IIH")
_STRINGS_HEAD = struct.Struct("<4I")


def _interface() -> bytes:
    return _INTERFACE.pack(
        _INTERFACE.size, USB_DT_INTERFACE, 0, 0, 2, USB_CLASS_VENDOR_SPEC, 0, 0, 1
    )


def _endpoint(address: int, max_packet: int = 0, interval: int = 0) -> bytes:
    return _ENDPOINT.pack(
        _ENDPOINT.size,
        USB_DT_ENDPOINT,
        address,
        USB_ENDPOINT_XFER_BULK,
        max_packet,
        interval,
    )


def _ss_companion() -> bytes:
    return _SS_EP_COMP.pack(_SS_EP_COMP.size, USB_DT_SS_ENDPOINT_COMP, 0, 0, 0)


def build_descriptors() -> bytes:
    """Return the descriptor blob written to ep0 before any endpoint is opened."""
    full_speed = [
        _interface(),
        _endpoint(1 | USB_DIR_IN),
        _endpoint(2 | USB_DIR_OUT),
    ]
    high_speed = [
        _interface(),
        _endpoint(1 | USB_DIR_IN, 512),
        _endpoint(2 | USB_DIR_OUT, 512, 1),
    ]
    super_speed = [
        _interface(),
        _endpoint(1 | USB_DIR_IN, 1024),
        _ss_companion(),
        _endpoint(2 | USB_DIR_OUT, 1024, 1),
        _ss_companion(),
    ]

    compat = _EXT_COMPAT.pack(0, 1, COMPATIBLE_ID, b"", b"")
    compat_header = _OS_HEADER.pack(1, _OS_HEADER.size + _EXT_COMPAT.size, 1, 4, 1)

    name = PROPERTY_NAME.encode("ascii") + b"\0"
    value = DEVICE_INTERFACE_GUID.encode("ascii") + b"\0"
    prop_tail = name + struct.pack("<I", len(value)) + value
    prop = _EXT_PROP.pack(_EXT_PROP.size + len(prop_tail), 1, len(name)) + prop_tail
    prop_header = _OS_HEADER.pack(0, _OS_HEADER.size + len(prop), 1, 5, 1)

    os_descs = [compat_header + compat, prop_header + prop]

    body = _COUNTS.pack(
        len(full_speed), len(high_speed), len(super_speed), len(os_descs)
    ) + b"".join(full_speed + high_speed + super_speed + os_descs)

    flags = (
        FUNCTIONFS_HAS_FS_DESC
        | FUNCTIONFS_HAS_HS_DESC
        | FUNCTIONFS_HAS_SS_DESC
        | FUNCTIONFS_HAS_MS_OS_DESC
    )
    total = _DESCS_HEAD.size + len(body)
    return _DESCS_HEAD.pack(FUNCTIONFS_DESCRIPTORS_MAGIC_V2, total, flags) + body


def build_strings() -> bytes:
    """Return the string table blob written to ep0 after the descriptors."""
    lang = struct.pack("<H", LANG_EN_US) + INTERFACE_NAME.encode("ascii") + b"\0"
    return _STRINGS_HEAD.pack(
        FUNCTIONFS_STRINGS_MAGIC, _STRINGS_HEAD.size + len(lang), 1, 1
    ) + lang