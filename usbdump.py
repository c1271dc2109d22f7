#!/usr/bin/env python3
"""
usbdump - Extract USB leftover capture data from pcap captures.

Recovers G-code (or any other byte protocol) sent to CNC machines, laser
cutters, 3D printers, etc. over USB serial/bulk transfers.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from usbcapture import CaptureError, read_usb_events
from usbextract import (
    DEFAULT_HEADER_LENGTH,
    DEFAULT_MIN_LENGTH,
    ConfigError,
    ExtractionError,
    Extractor,
    ExtractorConfig,
    OutputFormat,
    SinkError,
    UsbEvent,
    __version__,
    inspect_event,
)

FALLBACK_OUTPUT = "usb_output.txt"


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    value = env.get(name)
    if value is None or value == "":
        return None
    return value.strip() == "1"


def _env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    value = env.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def config_from_env(env: Optional[Mapping[str, str]] = None) -> dict:
    """
    Read option defaults from the environment.

    Recognized variables: USB_OUTPUT_FILE, USB_RAW_MODE ("1" for raw hex),
    USB_MIN_LENGTH, USB_SHOW_ESCAPES ("1" to show escapes). Unset
    variables are left out of the result.
    """
    env = os.environ if env is None else env
    values = {
        "output": env.get("USB_OUTPUT_FILE") or None,
        "raw_bytes": _env_flag(env, "USB_RAW_MODE"),
        "min_length": _env_int(env, "USB_MIN_LENGTH"),
        "show_escapes": _env_flag(env, "USB_SHOW_ESCAPES"),
    }
    return {k: v for k, v in values.items() if v is not None}


def generate_output_path(input_path: Optional[str]) -> str:
    """
    Generate output filename from input path.

    Replaces the extension with _extracted.txt, in the current directory.

    Args:
        input_path: Path to input file

    Returns:
        Output path, or the fallback name when there is no input name
    """
    if not input_path:
        return FALLBACK_OUTPUT
    stem = Path(input_path).stem
    if not stem:
        return FALLBACK_OUTPUT
    return f"{stem}_extracted.txt"


def parse_args(argv: Optional[List[str]] = None,
               env: Optional[Mapping[str, str]] = None) -> argparse.Namespace:
    """Parse command-line arguments, with defaults taken from the environment."""
    parser = argparse.ArgumentParser(
        prog="usbdump",
        description="Extract USB leftover capture data from pcap captures.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Output formats:
  report   - Labeled blocks per packet with a summary (default)
  tsv      - Tab-separated: frame\\ttimestamp\\tdirection\\tsource\\tdest\\tlength\\tdata
  gcode    - Data with direction prefix (>>> OUT, <<< IN)

Environment:
  USB_OUTPUT_FILE, USB_RAW_MODE=1, USB_MIN_LENGTH, USB_SHOW_ESCAPES=1

Examples:
  %(prog)s capture.pcapng                    # Basic extraction
  %(prog)s capture.pcapng -f gcode           # G-code only output
  %(prog)s capture.pcapng --raw-bytes        # Hex dump of every payload
  %(prog)s capture.pcapng --inspect 42       # Show one frame's payload
        """
    )
    parser.add_argument(
        "input_file",
        help="Input pcap/pcapng file path"
    )
    parser.add_argument(
        "-o", "--output",
        help="Output file path (default: <input_basename>_extracted.txt)"
    )
    parser.add_argument(
        "-f", "--format",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.REPORT.value,
        help="Output format (default: report)"
    )
    parser.add_argument(
        "-r", "--raw-bytes",
        action="store_true",
        help="Output raw bytes as hex instead of ASCII"
    )
    parser.add_argument(
        "--min-length",
        type=int,
        default=DEFAULT_MIN_LENGTH,
        help=f"Skip payloads shorter than this many bytes (default: {DEFAULT_MIN_LENGTH})"
    )
    parser.add_argument(
        "--show-escapes",
        action="store_true",
        help="Show non-printable bytes as \\r and \\xHH escapes"
    )
    parser.add_argument(
        "--header-length",
        type=int,
        default=DEFAULT_HEADER_LENGTH,
        help="Capture header size when the capture does not report it "
             f"(default: {DEFAULT_HEADER_LENGTH}, USBPcap)"
    )
    parser.add_argument(
        "--inspect",
        type=int,
        metavar="FRAME",
        help="Print the extracted data of a single frame and exit"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output (show packet count, etc.)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.set_defaults(**config_from_env(env))
    return parser.parse_args(argv)


def inspect_frame(events: Iterable[UsbEvent], frame_number: int,
                  config: ExtractorConfig) -> int:
    """Print the detail-view fields for one frame."""
    for event in events:
        if event.frame_number != frame_number:
            continue
        inspection = inspect_event(event, config.min_length, config.default_header_length)
        if inspection is None:
            print(f"Frame {frame_number}: no data")
            return 0
        print(f"Frame {frame_number} [{event.direction}] "
              f"{event.source} -> {event.destination}")
        if inspection.text is not None:
            print(f"ASCII Data: {inspection.text}")
        print(f"Hex Data: {inspection.hex}")
        return 0
    print(f"Error: Frame {frame_number} is not a USB packet in this capture",
          file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    try:
        args = parse_args(argv)
        config = ExtractorConfig(
            raw_mode=args.raw_bytes,
            min_length=args.min_length,
            show_escapes=args.show_escapes,
            default_header_length=args.header_length,
            output_format=OutputFormat(args.format),
        )
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    # Validate input file
    input_path = Path(args.input_file)
    if not input_path.exists():
        print(f"Error: File not found: {args.input_file}", file=sys.stderr)
        return 1

    if not input_path.is_file():
        print(f"Error: Not a file: {args.input_file}", file=sys.stderr)
        return 1

    events = read_usb_events(args.input_file)

    if args.inspect is not None:
        try:
            return inspect_frame(events, args.inspect, config)
        except CaptureError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    # Determine output path
    output_path = args.output or generate_output_path(args.input_file)

    if args.verbose:
        print(f"Processing: {args.input_file}")
        print(f"Mode: {config.mode_label}")
        print(f"Output format: {config.output_format.value}")
        print(f"Output file: {output_path}")

    extractor = Extractor(output_path, config)
    try:
        summary = extractor.run(events)
    except SinkError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (CaptureError, ExtractionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Packets processed: {extractor.summary.total_packets}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Output written to: {output_path}")

    if summary.packets_with_payload == 0:
        print("Warning: No packets with leftover capture data found.", file=sys.stderr)

    print(f"Extraction complete: {output_path}", file=sys.stderr)
    print(f"Packets with data: {summary.packets_with_payload} / {summary.total_packets}",
          file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
