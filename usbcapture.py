"""
usbcapture - Read USB events out of pcap/pcapng captures with pyshark.

tshark does the dissection; this module only maps its fields onto
usbextract.UsbEvent values, in capture order.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Generator, Optional

import pyshark
from pyshark.capture.capture import TSharkCrashException

from usbextract import UsbEvent

log = logging.getLogger(__name__)


class CaptureError(Exception):
    """Capture file cannot be read."""


def check_tshark() -> None:
    """Verify tshark is available on the system."""
    if not shutil.which('tshark'):
        raise CaptureError(
            "tshark not found. Please install Wireshark:\n"
            "  macOS:   brew install wireshark\n"
            "  Ubuntu:  sudo apt install tshark\n"
            "  Windows: Install Wireshark from wireshark.org"
        )


def hex_to_bytes(hex_string: str) -> bytes:
    """Convert hex string (with : or space separators) to bytes."""
    hex_clean = str(hex_string).replace(':', '').replace(' ', '')
    return bytes.fromhex(hex_clean)


def _field(layer: Any, *names: str) -> Optional[Any]:
    # Field names differ between tshark's text and JSON output
    if layer is None:
        return None
    for name in names:
        value = getattr(layer, name, None)
        if value is not None and str(value) != '':
            return value
    return None


def _int_field(layer: Any, *names: str) -> Optional[int]:
    value = _field(layer, *names)
    if value is None:
        return None
    text = str(value).strip()
    if text.lower().startswith('0x'):
        return int(text, 16)
    return int(text)


def _bytes_field(layer: Any, *names: str) -> Optional[bytes]:
    value = _field(layer, *names)
    if value is None:
        return None
    return hex_to_bytes(value)


def event_from_packet(packet: Any) -> Optional[UsbEvent]:
    """
    Map one pyshark packet onto a UsbEvent.

    Payload sources:
    - usb.capdata (generic USB leftover capture data), which tshark may
      also put in a separate "data" layer
    - usb.data_fragment, falling back to the USB CDC serial payloads
      (usbcom.data.in_payload / usbcom.data.out_payload)
    - the raw frame itself, when the capture was opened with include_raw

    Args:
        packet: pyshark packet

    Returns:
        UsbEvent, or None for packets without a USB layer
    """
    usb = getattr(packet, 'usb', None)
    if usb is None:
        return None

    captured = _bytes_field(usb, 'capdata', 'usb_capdata')
    if captured is None:
        captured = _bytes_field(getattr(packet, 'data', None), 'usb_capdata', 'data')

    fragment = _bytes_field(usb, 'data_fragment')
    if fragment is None:
        fragment = _bytes_field(getattr(packet, 'usbcom', None),
                                'data_in_payload', 'data_out_payload')

    try:
        raw_frame = bytes(packet.get_raw_packet())
    except (AttributeError, TypeError):
        raw_frame = b''

    frame_length = _int_field(getattr(packet, 'frame_info', None), 'len')
    if frame_length is None:
        frame_length = int(getattr(packet, 'length', len(raw_frame)) or 0)

    return UsbEvent(
        frame_number=int(packet.number),
        timestamp=float(packet.sniff_timestamp),
        source=str(_field(usb, 'src') or 'unknown'),
        destination=str(_field(usb, 'dst') or 'unknown'),
        declared_data_length=_int_field(usb, 'data_len') or 0,
        header_length=_int_field(usb, 'usbpcap_header_len'),
        frame_length=frame_length,
        raw_frame=raw_frame,
        captured_payload=captured,
        fragment_payload=fragment,
    )


def read_usb_events(pcap_path: str) -> Generator[UsbEvent, None, None]:
    """
    Yield a UsbEvent for each USB packet of a capture, in capture order.

    Packets that cannot be decoded are skipped. A tshark failure part way
    through is raised as CaptureError.

    Args:
        pcap_path: Path to the pcap/pcapng file

    Yields:
        UsbEvent objects
    """
    if not Path(pcap_path).is_file():
        raise CaptureError(f"File not found: {pcap_path}")
    check_tshark()

    cap = pyshark.FileCapture(pcap_path, include_raw=True, use_json=True)
    try:
        for packet in cap:
            try:
                event = event_from_packet(packet)
            except (AttributeError, ValueError):
                # Packet doesn't have expected fields or invalid hex, skip
                log.debug("Skipping undecodable packet %s",
                          getattr(packet, 'number', '?'), exc_info=True)
                continue
            if event is not None:
                yield event
    except TSharkCrashException as e:
        raise CaptureError(f"Error processing pcap: {e}") from e
    finally:
        cap.close()
