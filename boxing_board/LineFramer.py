from typing import List


class LineFramer:
    """
    Accumulates text fragments from the sensor link and splits them into
    newline-terminated lines. Whatever follows the last newline is held back
    until a later fragment completes it.

    One framer belongs to one connection; the controller replaces it on every
    new stream so partial lines never leak between sessions.
    """

    def __init__(self, *, separator: str = "\n") -> None:
        self._buffer = ""
        self._separator = separator

    @property
    def pending(self) -> str:
        """The incomplete trailing fragment (for diagnostics)."""
        return self._buffer

    def feed(self, chunk: str) -> List[str]:
        """
        Append `chunk` and return every line that is now complete, in the
        order their terminating newlines arrived.

        An empty chunk yields nothing. A bare newline on an empty buffer
        yields a single empty line; rejecting it is the decoder's job.
        """
        if not chunk:
            return []

        self._buffer += chunk
        if self._separator not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split(self._separator)
        return lines

    def clear(self) -> None:
        """Drop any buffered partial line."""
        self._buffer = ""
