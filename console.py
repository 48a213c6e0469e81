"""
Console output: progress lines and status messages.
"""

import sys
from typing import Callable, Optional, TextIO


class Console:
    """Prints progress and status lines.

    progress() returns a (done, total) callback that redraws a single
    "[Action - N%] label" line in place; end_line() finishes that line.
    Errors always go to the error stream, even when quiet.
    """

    def __init__(self, stream: Optional[TextIO] = None, error_stream: Optional[TextIO] = None,
                 quiet: bool = False):
        self._stream = stream
        self._error_stream = error_stream
        self.quiet = quiet
        self._line_open = False

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    @property
    def error_stream(self) -> TextIO:
        return self._error_stream if self._error_stream is not None else sys.stderr

    def status(self, text: str = '') -> None:
        """Prints a status line unless quiet"""
        if self.quiet:
            return
        self.end_line()
        print(text, file=self.stream)

    def error(self, text: str) -> None:
        """Prints an error to the error stream, even when quiet"""
        self.end_line()
        print(f"ERROR: {text}", file=self.error_stream)

    def end_line(self) -> None:
        if self._line_open:
            print(file=self.stream)
            self._line_open = False

    def progress(self, action: str, label: str, suffix: str = '') -> Callable[[int, int], None]:
        """Returns a (done, total) callback that redraws one progress line"""
        def report(done: int, total: int) -> None:
            if self.quiet:
                return
            percent = done * 100 // total if total else 100
            print(f"\r[{action} - {percent}%] {label}{suffix}", end='', file=self.stream, flush=True)
            self._line_open = True

        return report
