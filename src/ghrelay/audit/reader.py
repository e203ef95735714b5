from __future__ import annotations

from dataclasses import dataclass, field

from .interactions import SEPARATOR

MARKERS = {b">": "request", b"<": "response"}


@dataclass
class InteractionEntry:
    direction: str
    start_line: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


def read_entries(data: bytes) -> list[InteractionEntry]:
    """Split a raw interaction log back into entries.

    A body that itself contains the entry terminator cannot be told apart from
    the end of the entry; such logs parse into an extra, malformed entry.
    """
    entries: list[InteractionEntry] = []
    pos = 0
    while pos < len(data):
        marker = data[pos:pos + 1]
        if marker not in MARKERS:
            raise ValueError(f"unexpected byte {marker!r} at offset {pos}")
        head_end = data.find(b"\n" + marker + b"\n" + marker + b"\n", pos)
        if head_end < 0:
            raise ValueError(f"unterminated header block at offset {pos}")
        lines = data[pos:head_end].split(b"\n")
        start_line = lines[0][2:].decode("latin-1")
        headers = []
        for line in lines[1:]:
            name, _, value = line[2:].partition(b": ")
            headers.append((name.decode("latin-1"), value.decode("latin-1")))

        body_start = head_end + 5
        terminator = b"\n" + marker + b" " + SEPARATOR + b"\n\n"
        body_end = data.find(terminator, body_start)
        if body_end < 0:
            raise ValueError(f"unterminated body at offset {body_start}")
        entries.append(InteractionEntry(MARKERS[marker], start_line, headers, data[body_start:body_end]))
        pos = body_end + len(terminator)
    return entries
