from __future__ import annotations
import codecs


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


class TailBuffer:
    """Keeps only the last ``limit`` characters written to it."""

    def __init__(self, limit: int = 2000):
        self.limit = limit
        self._text = ""
        self.total_chars = 0

    def write(self, text: str) -> None:
        if not text:
            return
        self.total_chars += len(text)
        self._text = (self._text + text)[-self.limit:]

    def getvalue(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)


def utf8_decoder():
    """Incremental decoder; multi-byte sequences split across chunks decode intact."""
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


class LineSplitter:
    """Turns arbitrary text chunks into complete, non-blank lines.

    A line split across two chunks is carried over until its newline arrives.
    """

    def __init__(self):
        self._partial = ""

    def feed(self, text: str) -> list[str]:
        *lines, self._partial = (self._partial + text).split("\n")
        return [line.rstrip("\r") for line in lines if line.strip()]

    def flush(self) -> list[str]:
        text, self._partial = self._partial, ""
        return [text.rstrip("\r")] if text.strip() else []
