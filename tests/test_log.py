import io

import pytest

from devrestore import log


@pytest.fixture
def streams():
    out, err, dbg = io.StringIO(), io.StringIO(), io.StringIO()
    log.set_info_stream(out)
    log.set_error_stream(err)
    log.set_debug_stream(dbg)
    log.set_debug_level(0)
    yield out, err, dbg
    log.set_debug_level(0)


def test_info_writes_to_stream(streams):
    out, _, _ = streams
    log.info("hello\n")
    assert out.getvalue() == "hello\n"


def test_info_disabled_and_reenabled(streams):
    out, _, _ = streams
    log.set_info_stream(None)
    log.info("hidden")
    log.set_info_stream(out)
    log.info("shown")
    assert out.getvalue() == "shown"


def test_error_records_first_line(streams):
    _, err, _ = streams
    log.error("ERROR: boom\nmore\n")
    assert err.getvalue() == "ERROR: boom\nmore\n"
    assert log.get_last_error() == "ERROR: boom"


def test_error_recorded_when_disabled(streams):
    _, err, _ = streams
    log.set_error_stream(None)
    log.error("quiet failure\n")
    log.set_error_stream(err)
    assert err.getvalue() == ""
    assert log.get_last_error() == "quiet failure"


def test_error_truncated(streams):
    log.error("x" * 300)
    assert log.get_last_error() == "x" * 255


def test_debug_only_with_level(streams):
    _, _, dbg = streams
    log.debug("first")
    assert dbg.getvalue() == ""
    log.set_debug_level(1)
    assert log.debug_level() == 1
    log.debug("second")
    assert dbg.getvalue() == "second"


def test_debug_stream_disabled(streams):
    _, _, dbg = streams
    log.set_debug_level(1)
    log.set_debug_stream(None)
    log.debug("nothing")
    log.set_debug_stream(dbg)
    assert dbg.getvalue() == ""


def test_progress_bar_half(streams):
    out, _, _ = streams
    log.print_progress_bar(50)
    assert out.getvalue() == "\r[" + "=" * 25 + " " * 25 + "]  50.0%"


def test_progress_bar_clamped(streams):
    out, _, _ = streams
    log.print_progress_bar(150)
    assert out.getvalue() == "\r[" + "=" * 50 + "] 100.0%\n"


def test_progress_bar_negative(streams):
    out, _, _ = streams
    log.print_progress_bar(-1)
    assert out.getvalue() == ""


def test_debug_plist(streams):
    out, _, _ = streams
    log.debug_plist({"Command": "Initiate", "Size": 7})
    text = out.getvalue()
    assert "<key>Command</key>" in text
    assert "<string>Initiate</string>" in text
    assert "<integer>7</integer>" in text