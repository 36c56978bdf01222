from datetime import datetime

import pytest

from sweepwatch.errors import ParseError
from sweepwatch.sweep.parser import LineClassifier, LineKind, parse_sample_line

LINE = "2024-05-01, 12:00:00.500000, 2400000000, 2405000000, 1000000.00, 20, -71.2, -64.0, -80.3, -77.9, -79.1"


def test_peak_bin_becomes_the_sample() -> None:
    sample = parse_sample_line(LINE)
    assert sample.frequency_hz == 2400000000 + 1 * 1000000 + 500000
    assert sample.power_dbm == -64.0
    assert sample.bin_width_hz == 1000000.0
    assert sample.band_low_hz == 2400000000
    assert sample.band_high_hz == 2405000000


def test_timestamp_comes_from_the_line_in_local_time() -> None:
    sample = parse_sample_line(LINE, received_ms=1)
    expected = int(datetime(2024, 5, 1, 12, 0, 0, 500000).timestamp() * 1000)
    assert sample.timestamp_ms == expected


def test_unparseable_timestamp_falls_back_to_receipt_time() -> None:
    line = LINE.replace("2024-05-01", "yesterday")
    assert parse_sample_line(line, received_ms=1234).timestamp_ms == 1234


def test_non_finite_bins_are_ignored() -> None:
    line = "2024-05-01, 12:00:00, 100000000, 100004000, 1000, 4, nan, -50.5, nan, -60"
    sample = parse_sample_line(line)
    assert sample.power_dbm == -50.5
    assert sample.frequency_hz == 100000000 + 1000 + 500


@pytest.mark.parametrize(
    "line",
    [
        "2024-05-01, 12:00:00, 1, 2",
        "2024-05-01, 12:00:00, abc, 2405000000, 1000000, 5, -70",
        "2024-05-01, 12:00:00, 2400000000, 2400000000, 1000000, 5, -70",
        "2024-05-01, 12:00:00, 2400000000, 2405000000, 1000000, 5, nan, nan",
    ],
)
def test_malformed_sample_lines_raise_parse_error(line: str) -> None:
    with pytest.raises(ParseError):
        parse_sample_line(line)


def test_classifier_recognizes_each_line_kind() -> None:
    c = LineClassifier()
    assert c.classify(LINE).kind is LineKind.SAMPLE
    assert c.classify(LINE).sample is not None
    assert c.classify("libusb_submit_transfer failed with LIBUSB_ERROR_IO").kind is LineKind.FAULT
    assert c.classify("No HackRF boards found.").kind is LineKind.FAULT
    assert c.classify("Warning: buffer OVERFLOW detected").kind is LineKind.OVERFLOW
    assert c.classify("call hackrf_sample_rate_set(20.000 MHz)").kind is LineKind.UNPARSEABLE
    assert c.classify("").kind is LineKind.UNPARSEABLE


def test_fault_patterns_win_over_overflow_patterns() -> None:
    c = LineClassifier(fault_patterns=["usb error"], overflow_patterns=["overflow"])
    assert c.classify("USB error after overflow").kind is LineKind.FAULT


def test_numeric_garbage_is_unparseable_not_an_error() -> None:
    assert LineClassifier().classify("123 456").kind is LineKind.UNPARSEABLE
