"""Interprocess control lines and channel message helpers.

Programs started by the runner talk back to it through *control lines*: a
line on one of their output streams that consists of :data:`CONTROL_PREFIX`
followed by a command.  Two commands exist:

``[[CTRL]]:stdin_req``
    Written to **stderr** immediately before the program blocks reading
    standard input.  The gateway turns it into a ``stdin_req`` message.

``[[CTRL]]:image:<relative path>``
    Written to **stdout** after the program saved an image file inside its
    workspace (used by the Python plotting support).  The gateway reads the
    file and sends an ``image`` message instead of the literal text.

A control line must start at the beginning of a line and end with ``\\n``;
anything else is ordinary program output.  The per-language stdin shims in
:mod:`coderunner.compiler` are generated from the constants below so that
every runner speaks exactly the same format.

:class:`ControlLineScanner` is the only place where output streams are split
into lines.  The stderr scanner buffers whole lines; the stdout scanner
forwards text as soon as it arrives and only holds back a fragment at the
start of a line that may still turn out to be a control line, so prompts
printed without a trailing newline are not delayed.  Neither holds more than
:data:`MAX_PENDING_CHARS` of a line.
"""

from __future__ import annotations

import codecs
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

CONTROL_PREFIX = "[[CTRL]]:"
STDIN_REQUEST = CONTROL_PREFIX + "stdin_req"
IMAGE_PREFIX = CONTROL_PREFIX + "image:"

# Longest partial line held back while it may still be a control line or,
# on stderr, until its newline arrives.  Longer text is forwarded as output.
MAX_PENDING_CHARS = 64 * 1024


class ScanEvent(NamedTuple):
    kind: str  # "text", "stdin_req" or "image"
    value: str = ""


class ControlLineScanner:
    """Split a decoded byte stream into text and control events.

    Parameters
    ----------
    controls: iterable of str
        Control lines recognised on this stream.  :data:`STDIN_REQUEST` is
        matched exactly; :data:`IMAGE_PREFIX` is matched as a prefix.
    line_buffered: bool
        Hold text until a full line is available (stderr) instead of
        forwarding partial lines immediately (stdout).
    """

    def __init__(self, controls: Iterable[str], line_buffered: bool) -> None:
        self.controls = tuple(controls)
        self.line_buffered = line_buffered
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._at_line_start = True

    def _classify(self, line: str) -> Optional[ScanEvent]:
        line = line.rstrip("\r")
        for control in self.controls:
            if control == IMAGE_PREFIX:
                if line.startswith(IMAGE_PREFIX) and len(line) > len(IMAGE_PREFIX):
                    return ScanEvent("image", line[len(IMAGE_PREFIX):].strip())
            elif line == control:
                return ScanEvent(control[len(CONTROL_PREFIX):])
        return None

    def _may_become_control(self, fragment: str) -> bool:
        if self.line_buffered:
            return True
        return any(
            control.startswith(fragment) or fragment.startswith(control)
            for control in self.controls
        )

    def feed(self, data: bytes) -> List[ScanEvent]:
        """Consume a chunk of raw output and return the resulting events."""
        return self._scan(self._decoder.decode(data))

    def flush(self) -> List[ScanEvent]:
        """Return whatever is still buffered once the stream reached EOF."""
        events = self._scan(self._decoder.decode(b"", final=True))
        if self._pending:
            fragment, self._pending = self._pending, ""
            control = self._classify(fragment)
            events.append(control or ScanEvent("text", fragment))
            self._at_line_start = True
        return events

    def _scan(self, text: str) -> List[ScanEvent]:
        buf = self._pending + text
        self._pending = ""
        events: List[ScanEvent] = []
        out: List[str] = []

        def flush_text() -> None:
            if out:
                events.append(ScanEvent("text", "".join(out)))
                out.clear()

        while buf:
            newline = buf.find("\n")
            if not self._at_line_start:
                if newline < 0:
                    out.append(buf)
                    break
                out.append(buf[: newline + 1])
                buf = buf[newline + 1:]
                self._at_line_start = True
                continue
            if newline < 0:
                if len(buf) <= MAX_PENDING_CHARS and self._may_become_control(buf):
                    self._pending = buf
                else:
                    out.append(buf)
                    self._at_line_start = False
                break
            line, buf = buf[:newline], buf[newline + 1:]
            control = self._classify(line)
            if control is None:
                out.append(line + "\n")
            else:
                flush_text()
                events.append(control)
        flush_text()
        return events


def stdout_scanner() -> ControlLineScanner:
    return ControlLineScanner([IMAGE_PREFIX], line_buffered=False)


def stderr_scanner() -> ControlLineScanner:
    return ControlLineScanner([STDIN_REQUEST], line_buffered=True)


# -- server -> client messages -------------------------------------------------


def data_message(stream: str, data: str) -> Dict[str, Any]:
    return {"type": stream, "data": data}


def stdin_request_message() -> Dict[str, Any]:
    return {"type": "stdin_req"}


def image_message(name: str, data_uri: str) -> Dict[str, Any]:
    return {"type": "image", "name": name, "data": data_uri}


def diagnostics_message(diagnostics: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "diagnostics", "data": diagnostics}


def pong_message() -> Dict[str, Any]:
    return {"type": "pong"}


def exit_message(code: int, reason: str, metrics: Dict[str, int]) -> Dict[str, Any]:
    return {"type": "exit", "code": code, "reason": reason, "metrics": metrics}
