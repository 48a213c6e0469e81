"""
Bounded-step reads and writes with progress reporting.

Every transfer is split into steps of at most READ_STEP / WRITE_STEP bytes,
and the progress callback receives (bytes_done, total) after each step.
The whole payload stays in memory; the step size only bounds single calls.
"""

from typing import BinaryIO, Callable, Optional


READ_STEP = 26214400
WRITE_STEP = 26214400

ProgressFn = Callable[[int, int], None]


class ShortReadError(EOFError):
    """The source ended before the requested number of bytes was read"""

    def __init__(self, expected: int, received: int):
        super().__init__(f"expected {expected} bytes, got {received}")
        self.expected = expected
        self.received = received


def read_chunked(source: BinaryIO, total: int, step: int = READ_STEP,
                 progress: Optional[ProgressFn] = None) -> bytearray:
    """Reads exactly total bytes in steps of at most step bytes"""
    if step <= 0:
        raise ValueError("step must be positive")

    buffer = bytearray(total)
    done = 0

    with memoryview(buffer) as view:
        while done < total:
            size = min(step, total - done)
            count = source.readinto(view[done:done + size])
            if not count:
                raise ShortReadError(total, done)
            done += count

            if progress is not None:
                progress(done, total)

    return buffer


def write_chunked(sink: BinaryIO, data: bytes, step: int = WRITE_STEP,
                  progress: Optional[ProgressFn] = None) -> int:
    """Writes data in steps of at most step bytes"""
    if step <= 0:
        raise ValueError("step must be positive")

    total = len(data)
    done = 0

    with memoryview(data) as view:
        while done < total:
            size = min(step, total - done)
            sink.write(view[done:done + size])
            done += size

            if progress is not None:
                progress(done, total)

    return done
