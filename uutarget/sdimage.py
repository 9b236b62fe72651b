"""Command line tool that installs i.MX23/28 bootstreams in devices or image files."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from uutarget.bootstream import (
    DEFAULT_IMAGE_ALIGNMENT,
    BootstreamError,
    install_firmware,
    parse_alignment,
)

DEFAULT_DEVICE = "/dev/mmcblk0"

_OPTIONS = (
    ("a", "alignment",
     f"align second firmware image to given offset (default: {DEFAULT_IMAGE_ALIGNMENT} kB)"),
    ("d", "device", f"device to write firmware to (default: {DEFAULT_DEVICE})"),
    ("f", "firmware", "firmware file to write"),
    ("v", "verbose", "be verbose in what's going on (give twice to print debug messages)"),
    ("h", "help", "print this usage and exit"),
)


class _UsageRequested(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise _UsageRequested(message)


def build_parser() -> argparse.ArgumentParser:
    """Return the parser for the sdimage command line."""
    parser = _Parser(prog="sdimage", add_help=False)
    parser.add_argument("-a", "--alignment", action="append", default=[])
    parser.add_argument("-d", "--device", default=DEFAULT_DEVICE)
    parser.add_argument("-f", "--firmware")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-h", "--help", action="store_true")
    return parser


def _usage(prog: str) -> None:
    lines = [
        f"{prog} -- tool to install i.MX23/28 bootstreams in devices or image files",
        "",
        f"Usage: {prog} [options] -f <firmware>",
        "",
        "Options:",
    ]
    lines.extend(f"\t-{short}, --{name:<12}\t{desc}" for short, name, desc in _OPTIONS)
    print("\n".join(lines) + "\n", file=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    prog = "sdimage"

    try:
        options, extras = build_parser().parse_known_args(args)
    except _UsageRequested:
        _usage(prog)
        return 0
    if options.help or any(extra.startswith("-") and extra != "-" for extra in extras):
        _usage(prog)
        return 0

    alignment = DEFAULT_IMAGE_ALIGNMENT
    for text in options.alignment:
        try:
            alignment = parse_alignment(text)
        except ValueError as err:
            print(f"Error: {err}", file=sys.stderr)
            return 1
        if alignment < 0:
            print(
                f"Warning: invalid alignment '{text}' given, using "
                f"{DEFAULT_IMAGE_ALIGNMENT} instead.",
                file=sys.stderr,
            )
            alignment = DEFAULT_IMAGE_ALIGNMENT

    if not options.firmware:
        _usage(prog)
        return 1

    try:
        install_firmware(options.device, options.firmware, alignment, options.verbose)
    except BootstreamError as err:
        print(err, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())