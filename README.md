# uutarget

These tools run on an i.MX target board while it is being provisioned. They
run on Linux only. The package has no third-party dependencies.

## Commands

### `sdimage`

Installs an i.MX23/i.MX28 bootstream into the bootstream partition of a
device or image file.

The device must start with a valid MBR (signature `0xAA55`). It must also have
a primary partition of type `'S'` (`0x53`). `sdimage` writes a Boot Control
Block into the first sector of that partition, followed by two copies of the
firmware:

- The first copy starts four sectors into the partition.
- The second copy follows it, aligned to the chosen alignment.

The BCB is written first, then the second copy, then the first copy. Each write
is synced to disk. If power is lost part-way through, one copy is still intact.

```
sdimage -f firmware.sb
sdimage -d disk.img -f firmware.sb -a 0x80 -vv
```

Options:

- `-a, --alignment` aligns the second image to this many kB. The default is 64.
  - Decimal, `0x` hexadecimal and leading-`0` octal are accepted.
  - A value of `0` aligns to one 512-byte sector.
  - A negative value prints a warning and falls back to 64.
  - Trailing garbage is an error.
- `-d, --device` is the device or image file to write to. The default is
  `/dev/mmcblk0`.
- `-f, --firmware` is the firmware file to install. It is required and must not
  be empty.
- `-v, --verbose` prints progress.
  - Give it twice to also print the firmware size and the partition found on
    stdout.
  - With `-vv` the computed layout goes to stderr.
- `-h, --help` prints usage and exits.

Exit status:

- `-h` exits with 0.
- A missing `-f` exits with 1.
- Any failure exits with 1, with its message on stderr. Failures include a bad
  MBR signature, a missing bootstream partition, a partition too small for two
  copies, and I/O errors.

### `ufb`

A fastboot-style daemon for a USB FunctionFS gadget.

```
ufb                      # uses /dev/usb-ffs/ep0
ufb /dev/usb-ffs/ep0
```

It writes the USB descriptors and string table to `ep0`. It then opens the
sibling endpoints. It does this by replacing the last character of the path
with `1` for replies and `2` for commands. It serves commands until the command
endpoint reports end of file.

| Command | What it does |
| --- | --- |
| `UCmd:<shell>` | Runs a command and streams its output as `INFO` frames. It ends with `OKAY` or `FAIL`. |
| `ACmd:<shell>` | Starts a command in the background. Its stdin becomes the open file. |
| `Sync` | Waits for the background command and streams its output. |
| `WOpen:<path>` | Opens a file for writing. `-` means the background command's stdin. A directory is refused with `DIR`. |
| `ROpen:<path>` | Opens a file for reading and replies with its size as 16 hex digits. `-` means the background command's stdout. |
| `Close` | Closes the open file. |
| `donwload:<hex size>` | Receives that many bytes and writes them to the open file. A broken pipe is reported as `EPIPE`. |
| `upload` | Sends up to 64 KiB read from the open file. |

Each reply frame is a four-character key followed by optional payload. The keys
are `INFO`, `FAIL`, `OKAY` and `DATA`.

### `uuc`

A UTP command daemon for the `fsl_updater` USB gadget driver.

```
uuc
uuc /dev/utp
```

Startup:

1. It sets `FILE=/tmp/file.utp` in the environment.
2. It waits until it can create the device node from `/sys/class/misc/utp/dev`.
   The node is `/dev/utp` or the path given.
3. It asks the driver for the CPU id. On i.MX35/51/53 it sets up
   `/dev/watchdog` and keeps feeding it from a background thread.

It then answers each command message. Data messages are written to the
currently open target.

Commands:

- `?` returns the device description.
- `$ <shell>` runs a shell command.
- `pipe <shell>` starts a shell command that is fed the following data.
- `pollpipe` waits for that command to exit.
- `wff`/`wfs` and `send` open `/tmp/file.utp` for writing.
- `save <path>` closes it and renames it to `<path>`.
- `fff` flashes the file to NAND with `kobs-ng`.
- `ffs` repartitions `/dev/mmc` with `fdisk` and writes the file to the first
  partition with `dd`.
- `wrf<N>` pipes data to `ubiformat` on `/dev/mtd<N>`.
- `wrs<N>` pipes data to `dd` on `/dev/mmcblk0p<N>`.
- `frf`/`frs` close the pipe and wait for its command.
- `untar.<c> <dir>` pipes data to `tar <c>xv -C <dir>`.
- `mknod <class> <item> [node] [block|blk]` creates a device node from sysfs.
- `read <path>` returns a file's contents.
- `selftest` always succeeds.
- `!3` syncs, terminates all processes and reboots.

Unknown commands are answered with a non-success status. Commands starting with
`$ `, `frf` or `pollpipe` are preceded by a busy report.

## Library use

```python
from uutarget.bootstream import MasterBootRecord, plan_layout, install_firmware, parse_alignment

with open("disk.img", "rb") as image:
    mbr = MasterBootRecord.from_bytes(image.read(512))
bcb = plan_layout(mbr.bootstream_partition(), firmware_size=100_000, alignment_kb=64)
print([(d.first_sector_number, d.sector_count) for d in bcb.drive_info])

install_firmware("disk.img", "firmware.sb", parse_alignment("0x40"), verbose=1)
```

### `uutarget.bootstream`

- `PartitionEntry`, `MasterBootRecord`, `DriveInfo` and `BootControlBlock`
  decode the on-disk structures.
- `DriveInfo` and `BootControlBlock` can also pack them.
- `plan_layout` computes the BCB without touching a device.
- `install_firmware` writes everything and returns the BCB.
- Errors are raised as `BootstreamError`.

### `uutarget.functionfs`

`build_descriptors()` and `build_strings()` return the FunctionFS blobs.

### `uutarget.fastboot`

- `FastbootSession` serves the fastboot-style protocol over any pair of binary
  streams.
- `frame()` builds reply frames.

### `uutarget.utp`

- `UtpMessage` packs and unpacks UTP messages.
- `UtpFlag` holds the flag bits.
- `answer_type`, `can_busy` and `device_query` are helpers around them.

### `uutarget.uuc`

`UtpHandler` executes UTP commands. The `device` argument is optional, and
without it nothing is sent to a driver.

## Limits

- `sdimage` writes exactly two firmware copies. `BootControlBlock` supports at
  most two drive entries.
- `uuc` and `ufb` need the kernel-side gadget drivers. This package only
  provides the user-space side.
- Device nodes, ioctls and reboot require root privileges on the target.