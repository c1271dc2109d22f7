#tests/test_usbextract.py

import logging

import pytest

from usbextract import (
    ConfigError,
    Extractor,
    ExtractorConfig,
    ExtractorStateError,
    OutputFormat,
    Provenance,
    RunState,
    SinkOpenError,
    SinkWriteError,
    UsbEvent,
    bytes_to_hex,
    bytes_to_text,
    format_timestamp,
    inspect_event,
    render_payload,
    resolve_payload,
)

HEADER = bytes(range(27))


def _event(frame_number=1, payload=None, fragment=None, slice_data=None,
           source="host", destination="1.5.2", **kwargs) -> UsbEvent:
    if slice_data is not None:
        kwargs.setdefault("declared_data_length", len(slice_data))
        kwargs.setdefault("raw_frame", HEADER + slice_data)
        kwargs.setdefault("frame_length", len(HEADER) + len(slice_data))
    return UsbEvent(
        frame_number=frame_number,
        timestamp=1700000000.25 + frame_number,
        source=source,
        destination=destination,
        captured_payload=payload,
        fragment_payload=fragment,
        **kwargs,
    )


def _scenario():
    return [
        _event(1, payload=b"G1 X-0.12\n"),
        _event(2, slice_data=b"\x01"),
        _event(3, fragment=b"\r\r\r\r", source="1.5.1", destination="host"),
    ]


# Resolution

def test_primary_field_wins_over_other_sources():
    event = _event(payload=b"M116\n", fragment=b"G28\n", slice_data=b"G0 X1\n")
    record = resolve_payload(event)
    assert record.provenance is Provenance.PRIMARY_FIELD
    assert record.data == b"M116\n"


def test_fragment_field_used_when_primary_missing_or_empty():
    event = _event(payload=b"", fragment=b"G28\n", slice_data=b"G0 X1\n")
    record = resolve_payload(event)
    assert record.provenance is Provenance.FRAGMENT_FIELD
    assert record.data == b"G28\n"


def test_direct_slice_after_header():
    event = _event(slice_data=b"G0 X1\n")
    record = resolve_payload(event)
    assert record.provenance is Provenance.DIRECT_FRAME_SLICE
    assert record.data == b"G0 X1\n"
    assert record.length == 6


def test_direct_slice_uses_reported_header_length():
    event = _event(declared_data_length=3, header_length=4,
                   frame_length=7, raw_frame=b"HDR!abc")
    assert resolve_payload(event).data == b"abc"


def test_direct_slice_default_header_length_is_configurable():
    event = _event(declared_data_length=2, frame_length=10, raw_frame=b"12345678ok")
    assert resolve_payload(event) is None
    assert resolve_payload(event, default_header_length=8).data == b"ok"


def test_direct_slice_requires_declared_length():
    event = _event(slice_data=b"G0 X1\n", declared_data_length=0)
    assert resolve_payload(event) is None


def test_direct_slice_out_of_bounds_is_no_payload(caplog):
    caplog.set_level(logging.DEBUG, logger="usbextract")
    event = _event(declared_data_length=8, frame_length=40, raw_frame=HEADER + b"G0")
    assert resolve_payload(event) is None
    assert "lengths do not fit" in caplog.text


def test_direct_slice_frame_no_longer_than_header():
    event = _event(declared_data_length=4, frame_length=27, raw_frame=HEADER)
    assert resolve_payload(event) is None


def test_no_sources_is_none():
    assert resolve_payload(_event()) is None


# Rendering

def test_bytes_to_hex():
    assert bytes_to_hex(bytes([0x4D, 0x31, 0x31, 0x36])) == "4D 31 31 36"
    assert bytes_to_hex(b"\x0a\xff") == "0A FF"
    assert bytes_to_hex(b"") == ""


def test_bytes_to_text_printable_and_whitespace():
    data = bytes([0x4D, 0x31, 0x31, 0x36, 0x20, 0x58, 0x30, 0x0A])
    assert bytes_to_text(data) == "M116 X0\n"
    assert bytes_to_text(b"G1\tX1\r\n") == "G1\tX1\n"


def test_bytes_to_text_escapes():
    assert bytes_to_text(b"\x01") == ""
    assert bytes_to_text(b"\x01", show_escapes=True) == "\\x01"
    assert bytes_to_text(b"ok\r\n\xab", show_escapes=True) == "ok\\r\n\\xAB"


# Filtering

def test_render_rejects_missing_and_short_payloads():
    config = ExtractorConfig()
    assert render_payload(None, config) is None
    short = resolve_payload(_event(payload=b"G"))
    assert render_payload(short, config) is None
    assert render_payload(short, ExtractorConfig(raw_mode=True)) is None
    assert render_payload(short, ExtractorConfig(min_length=1)) == "G"


def test_render_blank_text_depends_on_mode():
    record = resolve_payload(_event(fragment=b"\r\r\r"))
    assert render_payload(record, ExtractorConfig()) is None
    assert render_payload(record, ExtractorConfig(raw_mode=True)) == "0D 0D 0D"
    assert render_payload(record, ExtractorConfig(show_escapes=True)) == "\\r\\r\\r"


def test_render_is_repeatable():
    event = _event(payload=b"G1 X-0.12\r\n\x00")
    config = ExtractorConfig(show_escapes=True)
    first = render_payload(resolve_payload(event), config)
    second = render_payload(resolve_payload(event), config)
    assert first == second == "G1 X-0.12\\r\n\\x00"


def test_config_validation():
    with pytest.raises(ConfigError):
        ExtractorConfig(min_length=-1)
    with pytest.raises(ConfigError):
        ExtractorConfig(output_format="xml")
    assert ExtractorConfig(output_format="tsv").output_format is OutputFormat.TSV


# Inspection

def test_inspect_event_ignores_batch_settings():
    inspection = inspect_event(_event(payload=b"G28\r\n\x01"))
    assert inspection.text == "G28\n"
    assert inspection.hex == "47 32 38 0D 0A 01"


def test_inspect_event_blank_text_keeps_hex():
    inspection = inspect_event(_event(payload=b"\x00\x01"))
    assert inspection.text is None
    assert inspection.hex == "00 01"


def test_inspect_event_short_payload():
    assert inspect_event(_event(payload=b"\x01")) is None
    assert inspect_event(_event()) is None


# Orchestration

def test_extractor_scenario_text_mode(tmp_path):
    out = tmp_path / "out.txt"
    summary = Extractor(out).run(_scenario())
    assert summary.total_packets == 3
    assert summary.packets_with_payload == 1

    text = out.read_text(encoding="utf-8")
    lines = text.split("\n")
    assert lines[0] == "=" * 80
    assert lines[1] == "USB Leftover Capture Data Extraction"
    assert lines[2].startswith("Generated: ")
    assert lines[3] == "Mode: ASCII/G-code"
    assert lines[4] == "=" * 80
    assert lines[5] == ""
    assert "\n".join(lines[6:]) == (
        "--- Packet #1 ---\n"
        f"Time: {format_timestamp(1700000001.25)}\n"
        "Source: host  ->  Destination: 1.5.2\n"
        "Length: 10 bytes\n"
        "Data:\n"
        "G1 X-0.12\n"
        "\n\n"
        + "=" * 80 + "\n"
        "Summary: 1 packets with data out of 3 total USB packets\n"
        + "=" * 80 + "\n"
    )


def test_extractor_scenario_raw_mode(tmp_path):
    out = tmp_path / "out.txt"
    summary = Extractor(out, ExtractorConfig(raw_mode=True)).run(_scenario())
    assert summary.total_packets == 3
    assert summary.packets_with_payload == 2

    text = out.read_text(encoding="utf-8")
    assert "Mode: Raw Hex" in text
    assert "Data:\n47 31 20 58 2D 30 2E 31 32 0A\n\n" in text
    assert "--- Packet #2 ---" not in text
    assert "--- Packet #3 ---\n" in text
    assert "Source: 1.5.1  ->  Destination: host\nLength: 4 bytes\nData:\n0D 0D 0D 0D\n\n" in text
    assert "Summary: 2 packets with data out of 3 total USB packets" in text


def test_extractor_tsv_format(tmp_path):
    out = tmp_path / "out.tsv"
    config = ExtractorConfig(output_format=OutputFormat.TSV)
    Extractor(out, config).run(_scenario())
    rows = out.read_text(encoding="utf-8").splitlines()
    assert rows[0] == "frame\ttimestamp\tdirection\tsource\tdestination\tlength\tdata"
    assert rows[1] == "1\t1700000001.25\tOUT\thost\t1.5.2\t10\tG1 X-0.12\\n"
    assert len(rows) == 2


def test_extractor_gcode_format(tmp_path):
    out = tmp_path / "out.gcode"
    events = [
        _event(1, payload=b"G28\nG1 X1\r\n"),
        _event(2, payload=b"ok\n", source="1.5.1", destination="host"),
    ]
    Extractor(out, ExtractorConfig(output_format=OutputFormat.GCODE)).run(events)
    assert out.read_text(encoding="utf-8") == ">>> G28\n>>> G1 X1\n<<< ok\n"


def test_extractor_opens_sink_lazily(tmp_path):
    out = tmp_path / "out.txt"
    extractor = Extractor(out)
    assert extractor.state is RunState.IDLE
    assert not out.exists()
    assert extractor.process(_event(payload=b"G28\n")) is True
    assert extractor.state is RunState.RUNNING
    assert out.exists()
    assert extractor.process(_event(2, payload=b"\x01")) is False
    extractor.finish()
    assert extractor.state is RunState.FINALIZED


def test_finish_without_events_writes_empty_report(tmp_path):
    out = tmp_path / "out.txt"
    summary = Extractor(out).finish()
    assert summary.total_packets == 0
    assert "Summary: 0 packets with data out of 0 total USB packets" in out.read_text()


def test_finish_twice_and_process_after_finish(tmp_path):
    extractor = Extractor(tmp_path / "out.txt")
    extractor.process(_event(payload=b"G28\n"))
    first = extractor.finish()
    second = extractor.finish()
    assert first == second
    with pytest.raises(ExtractorStateError):
        extractor.process(_event(2, payload=b"G28\n"))


def test_reset_allows_second_run(tmp_path):
    out = tmp_path / "out.txt"
    extractor = Extractor(out)
    extractor.run(_scenario())
    extractor.reset()
    assert extractor.state is RunState.IDLE
    assert extractor.summary.total_packets == 0

    summary = extractor.run([_event(7, payload=b"M2\n")])
    assert summary.total_packets == 1
    assert summary.packets_with_payload == 1
    text = out.read_text()
    assert "--- Packet #1 ---" not in text
    assert "Summary: 1 packets with data out of 1 total USB packets" in text


def test_sink_open_failure(tmp_path):
    path = tmp_path / "missing" / "out.txt"
    extractor = Extractor(path)
    with pytest.raises(SinkOpenError) as excinfo:
        extractor.run(_scenario())
    err = excinfo.value
    assert err.path == str(path)
    assert err.packets_processed == 0
    assert str(path) in str(err)
    assert extractor.summary.total_packets == 0


class _FailingSink:
    def __init__(self, fail_on):
        self.writes = 0
        self.fail_on = fail_on
        self.closed = False

    def write(self, text):
        self.writes += 1
        if self.writes >= self.fail_on:
            raise OSError(28, "No space left on device")

    def close(self):
        self.closed = True


def test_sink_write_failure_reports_progress(tmp_path):
    sink = _FailingSink(fail_on=3)
    extractor = Extractor(tmp_path / "out.txt", opener=lambda path: sink)
    events = [_event(i, payload=b"G1 X%d\n" % i) for i in range(1, 5)]
    with pytest.raises(SinkWriteError) as excinfo:
        extractor.run(events)
    assert excinfo.value.packets_processed == 2
    assert "No space left on device" in str(excinfo.value)
    assert sink.closed
    assert extractor.state is RunState.FINALIZED


def test_run_closes_sink_when_events_stop_with_error(tmp_path):
    sink = _FailingSink(fail_on=100)
    extractor = Extractor(tmp_path / "out.txt", opener=lambda path: sink)

    def events():
        yield _event(1, payload=b"G28\n")
        raise RuntimeError("capture aborted")

    with pytest.raises(RuntimeError):
        extractor.run(events())
    assert sink.closed
    assert extractor.state is RunState.FINALIZED
    assert extractor.summary.total_packets == 1


def test_event_direction():
    assert _event(source="host").direction == "OUT"
    assert _event(source="HOST").direction == "OUT"
    assert _event(source="1.5.1").direction == "IN"


def test_reset_while_running_finalizes_first(tmp_path):
    out = tmp_path / "out.txt"
    extractor = Extractor(out)
    extractor.process(_event(payload=b"G28\n"))
    extractor.reset()
    assert extractor.state is RunState.IDLE
    assert "Summary: 1 packets with data out of 1 total USB packets" in out.read_text()

    summary = extractor.run([])
    assert summary.total_packets == 0
    assert summary.packets_with_payload == 0


def test_run_on_finalized_extractor_raises(tmp_path):
    extractor = Extractor(tmp_path / "out.txt")
    extractor.run(_scenario())
    with pytest.raises(ExtractorStateError):
        extractor.run([])
    with pytest.raises(ExtractorStateError):
        extractor.run(_scenario())
