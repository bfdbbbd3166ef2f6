"""Tests for control-line scanning and channel message helpers."""

from __future__ import annotations

from coderunner.protocol import (
    IMAGE_PREFIX,
    MAX_PENDING_CHARS,
    STDIN_REQUEST,
    ScanEvent,
    exit_message,
    stderr_scanner,
    stdout_scanner,
)


def _text(events):
    return "".join(e.value for e in events if e.kind == "text")


def test_stdin_request_line_on_stderr():
    scanner = stderr_scanner()
    assert scanner.feed(f"{STDIN_REQUEST}\n".encode()) == [ScanEvent("stdin_req")]


def test_stdin_request_split_across_reads():
    scanner = stderr_scanner()
    assert scanner.feed(b"[[CTRL]]:std") == []
    events = scanner.feed(b"in_req\nwarning: low memory\n")
    assert events == [ScanEvent("stdin_req"), ScanEvent("text", "warning: low memory\n")]


def test_stderr_is_line_buffered():
    scanner = stderr_scanner()
    assert scanner.feed(b"Traceback") == []
    assert scanner.feed(b" (most recent call last):\n\n") == [
        ScanEvent("text", "Traceback (most recent call last):\n\n")
    ]
    assert scanner.feed(b"tail") == []
    assert scanner.flush() == [ScanEvent("text", "tail")]


def test_control_text_inside_a_line_is_output():
    scanner = stderr_scanner()
    events = scanner.feed(f"x{STDIN_REQUEST}\n{STDIN_REQUEST} \n".encode())
    assert [e.kind for e in events] == ["text"]
    assert _text(events) == f"x{STDIN_REQUEST}\n{STDIN_REQUEST} \n"


def test_stdout_prompt_is_not_delayed():
    scanner = stdout_scanner()
    assert scanner.feed(b"Enter a number: ") == [ScanEvent("text", "Enter a number: ")]
    assert scanner.feed(b"42\n") == [ScanEvent("text", "42\n")]


def test_stdout_image_line():
    scanner = stdout_scanner()
    assert scanner.feed(b"before\n[[CT") == [ScanEvent("text", "before\n")]
    events = scanner.feed("RL]]:image:.coderunner/figure-1.png\nafter\n".encode())
    assert events == [
        ScanEvent("image", ".coderunner/figure-1.png"),
        ScanEvent("text", "after\n"),
    ]


def test_stdout_ignores_stdin_request_and_mid_line_images():
    scanner = stdout_scanner()
    events = scanner.feed(f"{STDIN_REQUEST}\nabc{IMAGE_PREFIX}x.png\n".encode())
    assert [e.kind for e in events] == ["text"]


def test_fragment_that_cannot_become_control_is_forwarded():
    scanner = stdout_scanner()
    assert scanner.feed(b"[[CTX") == [ScanEvent("text", "[[CTX")]


def test_pending_image_flushed_at_eof():
    scanner = stdout_scanner()
    assert scanner.feed(f"{IMAGE_PREFIX}plot.png".encode()) == []
    assert scanner.flush() == [ScanEvent("image", "plot.png")]


def test_multibyte_characters_split_across_reads():
    scanner = stdout_scanner()
    encoded = "café ✓\n".encode("utf-8")
    events = []
    for i in range(len(encoded)):
        events += scanner.feed(encoded[i : i + 1])
    events += scanner.flush()
    assert _text(events) == "café ✓\n"


def test_exit_message_shape():
    metrics = {"compileMs": 5, "startMs": 1, "execMs": 10, "totalMs": 16}
    assert exit_message(0, "exited", metrics) == {
        "type": "exit",
        "code": 0,
        "reason": "exited",
        "metrics": metrics,
    }


def test_stderr_without_newlines_is_not_held_forever():
    scanner = stderr_scanner()
    chunk = b"e" * 4096
    events = []
    for _ in range(MAX_PENDING_CHARS // len(chunk) + 4):
        events += scanner.feed(chunk)
    assert events
    assert len(_text(events)) > MAX_PENDING_CHARS
    assert len(scanner._pending) <= MAX_PENDING_CHARS
    events = scanner.feed(f"\n{STDIN_REQUEST}\n".encode())
    assert events == [ScanEvent("text", "\n"), ScanEvent("stdin_req")]


def test_overlong_image_fragment_is_output():
    scanner = stdout_scanner()
    assert scanner.feed(IMAGE_PREFIX.encode()) == []
    tail = "p" * MAX_PENDING_CHARS
    events = scanner.feed(tail.encode())
    assert events == [ScanEvent("text", IMAGE_PREFIX + tail)]
    assert scanner._pending == ""
    assert scanner.feed(b".png\n") == [ScanEvent("text", ".png\n")]
