"""
lzma_codec.py

LZMA compression of whole buffers on top of the streaming `lzma` objects.

Payloads use the "alone" container (13-byte .lzma header + LZMA1 stream).
Input is pushed into the compressor in CODEC_STEP chunks and output is
pulled from the decompressor in CODEC_STEP chunks; both sides collect the
produced bytes in a GrowableBuffer.
"""

import enum
import lzma
from typing import Callable, Optional


CODEC_STEP = 1 << 20
PRESET = 6
FORMAT = lzma.FORMAT_ALONE
MEMLIMIT = 1 << 30


class Status(enum.Enum):
    OK = 0
    DATA_ERROR = 1
    TRUNCATED = 2


class DecompressError(Exception):
    """Payload could not be decoded"""

    def __init__(self, status: Status, message: str = ''):
        super().__init__(message or status.name.lower().replace('_', ' '))
        self.status = status


class GrowableBuffer:
    """Byte buffer whose capacity doubles on overflow and is trimmed once"""

    def __init__(self, capacity: int = 4096):
        self._data = bytearray(max(capacity, 1))
        self._length = 0

    def __len__(self) -> int:
        return self._length

    @property
    def capacity(self) -> int:
        return len(self._data)

    def append(self, chunk: bytes) -> None:
        needed = self._length + len(chunk)
        if needed > len(self._data):
            capacity = len(self._data)
            while capacity < needed:
                capacity *= 2
            self._data.extend(bytes(capacity - len(self._data)))

        self._data[self._length:needed] = chunk
        self._length = needed

    def getvalue(self) -> bytes:
        # Trim the spare capacity and release the working buffer.
        result = bytes(memoryview(self._data)[:self._length])
        self._data = bytearray(1)
        self._length = 0
        return result


def compress(data: bytes, progress: Optional[Callable[[int, int], None]] = None) -> bytes:
    """Compresses a whole buffer; progress receives (consumed, total)."""
    compressor = lzma.LZMACompressor(format=FORMAT, preset=PRESET)
    total = len(data)
    output = GrowableBuffer(max(total // 2, 64))

    with memoryview(data) as view:
        for offset in range(0, total, CODEC_STEP):
            chunk = view[offset:offset + CODEC_STEP]
            output.append(compressor.compress(chunk))

            if progress is not None:
                progress(offset + len(chunk), total)

    output.append(compressor.flush())
    return output.getvalue()


def decompress(data: bytes, progress: Optional[Callable[[int, int], None]] = None) -> bytes:
    """Decompresses a whole buffer, raising DecompressError on bad input."""
    decompressor = lzma.LZMADecompressor(format=FORMAT, memlimit=MEMLIMIT)
    total = len(data)
    output = GrowableBuffer(max(total * 2, 64))

    try:
        with memoryview(data) as view:
            for offset in range(0, total, CODEC_STEP):
                chunk = view[offset:offset + CODEC_STEP]
                output.append(decompressor.decompress(chunk, max_length=CODEC_STEP))

                # Drain what the bounded pull left buffered inside the decoder.
                while not decompressor.eof and not decompressor.needs_input:
                    output.append(decompressor.decompress(b'', max_length=CODEC_STEP))

                if progress is not None:
                    progress(offset + len(chunk), total)

                if decompressor.eof:
                    break
    except lzma.LZMAError as e:
        raise DecompressError(Status.DATA_ERROR, str(e)) from e

    if not decompressor.eof:
        raise DecompressError(Status.TRUNCATED, "compressed stream ended early")

    return output.getvalue()
