"""
usbextract - Recover application payload from decoded USB capture events.

Finds the "Leftover Capture Data" carried by USB transfers (G-code sent to
CNC machines, laser cutters, 3D printers, etc.), filters out status noise
and renders what is left as text or hex.
"""

import copy
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO, Union

__version__ = "0.2.0"

log = logging.getLogger(__name__)

# USBPcap pseudo-header size, used when the capture does not report one.
DEFAULT_HEADER_LENGTH = 27
DEFAULT_MIN_LENGTH = 2

SEPARATOR = "=" * 80


class ExtractionError(Exception):
    """Base class for extraction failures."""


class ConfigError(ExtractionError):
    pass


class ExtractorStateError(ExtractionError):
    pass


class SinkError(ExtractionError):
    """Output file could not be opened or written."""

    action = "access"

    def __init__(self, path: str, reason: str, packets_processed: int = 0):
        self.path = path
        self.reason = reason
        self.packets_processed = packets_processed
        super().__init__(
            f"Cannot {self.action} output file: {path} ({reason}); "
            f"{packets_processed} packets processed"
        )


class SinkOpenError(SinkError):
    action = "open"


class SinkWriteError(SinkError):
    action = "write"


class Provenance(enum.Enum):
    """Which strategy recovered a payload."""
    PRIMARY_FIELD = "capdata"
    FRAGMENT_FIELD = "data_fragment"
    DIRECT_FRAME_SLICE = "frame_slice"


class OutputFormat(enum.Enum):
    REPORT = "report"
    TSV = "tsv"
    GCODE = "gcode"


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class UsbEvent:
    """One decoded USB packet, as handed over by the dissection layer."""
    frame_number: int
    timestamp: float
    source: str = "unknown"
    destination: str = "unknown"
    declared_data_length: int = 0
    header_length: Optional[int] = None  # None: not reported by the capture
    frame_length: int = 0
    raw_frame: bytes = b""
    captured_payload: Optional[bytes] = None
    fragment_payload: Optional[bytes] = None

    @property
    def direction(self) -> str:
        # "host" as source means OUT (command to device)
        return "OUT" if str(self.source).lower() == "host" else "IN"


@dataclass(frozen=True)
class PayloadRecord:
    data: bytes
    provenance: Provenance

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass
class ExtractionSummary:
    total_packets: int = 0
    packets_with_payload: int = 0

    def reset(self) -> None:
        self.total_packets = 0
        self.packets_with_payload = 0


@dataclass(frozen=True)
class ExtractorConfig:
    """Immutable run configuration, fixed when the extractor is built."""
    raw_mode: bool = False
    min_length: int = DEFAULT_MIN_LENGTH
    show_escapes: bool = False
    default_header_length: int = DEFAULT_HEADER_LENGTH
    output_format: OutputFormat = OutputFormat.REPORT

    def __post_init__(self) -> None:
        if self.min_length < 0:
            raise ConfigError(f"min_length must be >= 0, got {self.min_length}")
        if self.default_header_length < 0:
            raise ConfigError(
                f"default_header_length must be >= 0, got {self.default_header_length}"
            )
        if not isinstance(self.output_format, OutputFormat):
            try:
                object.__setattr__(self, "output_format", OutputFormat(self.output_format))
            except ValueError:
                raise ConfigError(f"Unknown output format: {self.output_format!r}") from None

    @property
    def mode_label(self) -> str:
        return "Raw Hex" if self.raw_mode else "ASCII/G-code"


@dataclass(frozen=True)
class Inspection:
    """Display fields for a single packet's detail view."""
    hex: str
    text: Optional[str] = None


def resolve_payload(event: UsbEvent,
                    default_header_length: int = DEFAULT_HEADER_LENGTH) -> Optional[PayloadRecord]:
    """
    Recover the payload bytes of a USB event.

    Tries, in order:
    - the dissector's primary payload field (usb.capdata)
    - the secondary fragment field (usb.data_fragment)
    - a direct slice of the raw frame after the capture header, only when
      the packet declares a data length and the lengths fit the frame

    Args:
        event: Decoded USB event
        default_header_length: Header size to assume when the event has none

    Returns:
        PayloadRecord, or None when no strategy yields bytes
    """
    if event.captured_payload:
        return PayloadRecord(bytes(event.captured_payload), Provenance.PRIMARY_FIELD)

    if event.fragment_payload:
        return PayloadRecord(bytes(event.fragment_payload), Provenance.FRAGMENT_FIELD)

    if event.declared_data_length > 0:
        header_length = event.header_length
        if header_length is None:
            header_length = default_header_length
        payload_len = event.frame_length - header_length
        if payload_len > 0 and header_length + payload_len <= len(event.raw_frame):
            data = bytes(event.raw_frame[header_length:header_length + payload_len])
            return PayloadRecord(data, Provenance.DIRECT_FRAME_SLICE)
        log.debug(
            "Frame %s: lengths do not fit frame (header=%d, frame_len=%d, captured=%d), skipping",
            event.frame_number, header_length, event.frame_length, len(event.raw_frame),
        )

    return None


def bytes_to_hex(data: bytes) -> str:
    """
    Convert bytes to hex string for display.

    Args:
        data: Raw bytes to convert

    Returns:
        Space-separated uppercase hex string (e.g., "47 32 38")
    """
    return ' '.join(f'{b:02X}' for b in data)


def bytes_to_text(data: bytes, show_escapes: bool = False) -> str:
    """
    Convert bytes to a text string.

    Keeps printable ASCII, newlines and tabs. Carriage returns and other
    non-printable bytes are dropped, or shown as \\r and \\xHH escapes
    when show_escapes is set.

    Args:
        data: Raw bytes to convert
        show_escapes: Render non-printable bytes as escape sequences

    Returns:
        Text representation
    """
    result = []
    for byte in data:
        if 0x20 <= byte <= 0x7e:  # printable ASCII
            result.append(chr(byte))
        elif byte == 0x0a:  # newline
            result.append('\n')
        elif byte == 0x09:  # tab
            result.append('\t')
        elif not show_escapes:
            continue
        elif byte == 0x0d:
            result.append('\\r')
        else:
            result.append(f'\\x{byte:02X}')
    return ''.join(result)


def render_payload(record: Optional[PayloadRecord], config: ExtractorConfig) -> Optional[str]:
    """
    Apply the filtering policy and render an accepted payload.

    Returns:
        Hex (raw mode) or text body, or None when the payload is rejected
    """
    if record is None:
        return None
    if record.length < config.min_length:
        return None
    if config.raw_mode:
        return bytes_to_hex(record.data)
    text = bytes_to_text(record.data, config.show_escapes)
    if not text.strip():
        return None
    return text


def inspect_event(event: UsbEvent,
                  min_length: int = DEFAULT_MIN_LENGTH,
                  default_header_length: int = DEFAULT_HEADER_LENGTH) -> Optional[Inspection]:
    """
    Compute the detail-view fields for one packet.

    Always uses text mode without escapes, whatever a batch run is
    configured with. The text field is left out when it would be blank.
    """
    record = resolve_payload(event, default_header_length)
    if record is None or record.length < min_length:
        return None
    text = bytes_to_text(record.data)
    return Inspection(hex=bytes_to_hex(record.data), text=text if text.strip() else None)


def format_timestamp(timestamp: float) -> str:
    """Format epoch seconds as local time with microseconds."""
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")


def format_report_header(config: ExtractorConfig, generated: Optional[datetime] = None) -> str:
    generated = generated or datetime.now()
    return (
        f"{SEPARATOR}\n"
        f"USB Leftover Capture Data Extraction\n"
        f"Generated: {generated:%Y-%m-%d %H:%M:%S}\n"
        f"Mode: {config.mode_label}\n"
        f"{SEPARATOR}\n\n"
    )


def format_report_block(event: UsbEvent, record: PayloadRecord, body: str) -> str:
    """
    Format an accepted packet as a human-readable labeled block.

    Args:
        event: The USB event the payload came from
        record: The resolved payload
        body: Rendered hex or text

    Returns:
        Formatted string block, followed by a blank line
    """
    return (
        f"--- Packet #{event.frame_number} ---\n"
        f"Time: {format_timestamp(event.timestamp)}\n"
        f"Source: {event.source}  ->  Destination: {event.destination}\n"
        f"Length: {record.length} bytes\n"
        f"Data:\n"
        f"{body}\n\n"
    )


def format_report_summary(summary: ExtractionSummary) -> str:
    return (
        f"{SEPARATOR}\n"
        f"Summary: {summary.packets_with_payload} packets with data out of "
        f"{summary.total_packets} total USB packets\n"
        f"{SEPARATOR}\n"
    )


TSV_HEADER = "frame\ttimestamp\tdirection\tsource\tdestination\tlength\tdata\n"


def format_tsv(event: UsbEvent, record: PayloadRecord, body: str) -> str:
    """Format an accepted packet as one tab-separated line."""
    # Replace newlines with literal \n for TSV compatibility
    data_escaped = body.replace('\n', '\\n').replace('\t', '\\t')
    return (
        f"{event.frame_number}\t{event.timestamp}\t{event.direction}\t"
        f"{event.source}\t{event.destination}\t{record.length}\t{data_escaped}\n"
    )


def format_gcode(event: UsbEvent, record: PayloadRecord, body: str) -> str:
    """
    Format an accepted packet as data only, with a direction prefix.

    Lines sent to the device get ">>> ", lines read back get "<<< ".
    """
    prefix = ">>> " if event.direction == "OUT" else "<<< "
    lines = body.rstrip().split('\n')
    prefixed_lines = [f"{prefix}{line}" for line in lines if line]
    if not prefixed_lines:
        return ""
    return '\n'.join(prefixed_lines) + '\n'


_BLOCK_FORMATTERS = {
    OutputFormat.REPORT: format_report_block,
    OutputFormat.TSV: format_tsv,
    OutputFormat.GCODE: format_gcode,
}


def _open_text(path: str) -> TextIO:
    return open(path, 'w', encoding='utf-8')


class Extractor:
    """
    Runs payload extraction over a stream of USB events into an output file.

    The output file is opened on the first event and closed by finish().
    reset() makes the same instance usable for another run.
    """

    def __init__(self, output_path: Union[str, Path],
                 config: Optional[ExtractorConfig] = None,
                 opener: Optional[Callable[[str], TextIO]] = None):
        self.output_path = str(output_path)
        self.config = config or ExtractorConfig()
        self._opener = opener or _open_text
        self._format_block = _BLOCK_FORMATTERS[self.config.output_format]
        self._sink: Optional[TextIO] = None
        self.summary = ExtractionSummary()
        self.state = RunState.IDLE

    def _open(self) -> None:
        try:
            self._sink = self._opener(self.output_path)
        except OSError as e:
            raise SinkOpenError(self.output_path, e.strerror or str(e),
                                self.summary.total_packets) from e
        self.state = RunState.RUNNING
        if self.config.output_format is OutputFormat.REPORT:
            self._write(format_report_header(self.config))
        elif self.config.output_format is OutputFormat.TSV:
            self._write(TSV_HEADER)

    def _write(self, text: str) -> None:
        if not text:
            return
        try:
            self._sink.write(text)
        except OSError as e:
            self._abort()
            raise SinkWriteError(self.output_path, e.strerror or str(e),
                                 self.summary.total_packets) from e

    def _abort(self) -> None:
        sink, self._sink = self._sink, None
        self.state = RunState.FINALIZED
        if sink is not None:
            try:
                sink.close()
            except OSError:
                log.debug("Error closing %s after write failure", self.output_path, exc_info=True)

    def process(self, event: UsbEvent) -> bool:
        """
        Extract, filter and write one event.

        Returns:
            True if the event carried data that was written out
        """
        if self.state is RunState.FINALIZED:
            raise ExtractorStateError("Extractor is finalized; call reset() before reuse")
        if self.state is RunState.IDLE:
            self._open()

        self.summary.total_packets += 1
        record = resolve_payload(event, self.config.default_header_length)
        body = render_payload(record, self.config)
        if body is None:
            if record is not None:
                log.debug("Frame %s: %d byte payload filtered out",
                          event.frame_number, record.length)
            return False

        self.summary.packets_with_payload += 1
        log.debug("Frame %s: %d bytes from %s",
                  event.frame_number, record.length, record.provenance.value)
        self._write(self._format_block(event, record, body))
        return True

    def finish(self) -> ExtractionSummary:
        """
        Write the trailing summary and close the output file.

        Returns:
            Final packet counts
        """
        if self.state is RunState.FINALIZED:
            return copy.copy(self.summary)
        if self.state is RunState.IDLE:
            self._open()
        if self.config.output_format is OutputFormat.REPORT:
            self._write(format_report_summary(self.summary))
        sink, self._sink = self._sink, None
        self.state = RunState.FINALIZED
        try:
            sink.close()
        except OSError as e:
            raise SinkWriteError(self.output_path, e.strerror or str(e),
                                 self.summary.total_packets) from e
        return copy.copy(self.summary)

    def run(self, events: Iterable[UsbEvent]) -> ExtractionSummary:
        """Process every event, then finish the run."""
        if self.state is RunState.FINALIZED:
            raise ExtractorStateError("Extractor is finalized; call reset() before reuse")
        try:
            for event in events:
                self.process(event)
        except BaseException:
            if self.state is RunState.RUNNING:
                self._abort()
            raise
        return self.finish()

    def reset(self) -> None:
        if self.state is RunState.RUNNING:
            self.finish()
        self.summary.reset()
        self.state = RunState.IDLE
