"""
Package file layout and the codecs for its header and entries.

A package is a 32-byte header followed by entries laid end to end:

    major[4] minor[4] name_width[8] ext_width[8] size_width[8]
    name[name_width] ext[ext_width] size[size_width] payload[size]   (repeated)

Every number is decimal ASCII, every field is NUL-padded. There is no entry
count: reading stops at end-of-file or at an entry whose size field is empty
or not a number.
"""

import enum
import io
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from chunked_io import READ_STEP, WRITE_STEP, ProgressFn, ShortReadError, read_chunked, write_chunked


MAJOR_VERSION = 1
MINOR_VERSION = 1

NAME_LIMIT = 128
EXT_LIMIT = 32
SIZE_LIMIT = 32

VERSION_FIELD_WIDTH = 4
WIDTH_FIELD_WIDTH = 8
HEADER_SIZE = 2 * VERSION_FIELD_WIDTH + 3 * WIDTH_FIELD_WIDTH
MAX_FIELD_WIDTH = 1 << 20

PACKAGE_EXTENSION = '.bin'
DEFAULT_PACKAGE_NAME = 'package.bin'
DEFAULT_OUTPUT_DIR = 'package'
DEFAULT_MAX_TOTAL_SIZE = sys.maxsize

TEXT_ENCODING = 'utf-8'
TEXT_ERRORS = 'surrogateescape'


class PackageError(Exception):
    """Base class for package format errors"""


class FieldOverflowError(PackageError, ValueError):
    """A value does not fit its fixed-width field"""


class NameTooLongError(FieldOverflowError):
    pass


class ExtTooLongError(FieldOverflowError):
    pass


class MalformedFieldError(PackageError, ValueError):
    """A numeric field holds something other than decimal digits"""


class MalformedHeaderError(MalformedFieldError):
    pass


class IncompatibleVersionError(PackageError):
    def __init__(self, major: int, minor: int):
        super().__init__(
            f"package version {major}.{minor}, supported {MAJOR_VERSION}.{MINOR_VERSION}"
        )
        self.major = major
        self.minor = minor


class OversizedTotalError(PackageError):
    def __init__(self, total: int, limit: int):
        super().__init__(f"total size {total} bytes exceeds limit of {limit} bytes")
        self.total = total
        self.limit = limit


class TruncatedPackageError(PackageError, EOFError):
    """Package ended in the middle of an entry payload"""


class UnsafeEntryNameError(PackageError, ValueError):
    """Entry name cannot be used as a plain file name"""


class DescriptorState(enum.Enum):
    PENDING = 'pending'
    COMPRESSED = 'compressed'
    READ = 'read'
    DECOMPRESSED = 'decompressed'
    WRITTEN = 'written'


@dataclass
class Descriptor:
    """One file on its way into a package.

    `size` always equals len(data); both change only through replace_data(),
    which drops the previous buffer.
    """
    name: str
    ext: str
    data: bytes = field(default=b'', repr=False)
    source: str = ''
    state: DescriptorState = DescriptorState.PENDING
    size: int = field(init=False)

    def __post_init__(self):
        self.size = len(self.data)

    @property
    def filename(self) -> str:
        return self.name + self.ext

    def replace_data(self, data: bytes, state: DescriptorState) -> None:
        """Swaps the payload, keeping size equal to its length"""
        self.data = data
        self.size = len(data)
        self.state = state


@dataclass
class RecoveredDescriptor(Descriptor):
    """One entry read back from a package"""
    state: DescriptorState = DescriptorState.READ


@dataclass(frozen=True)
class Header:
    major: int = MAJOR_VERSION
    minor: int = MINOR_VERSION
    name_width: int = NAME_LIMIT
    ext_width: int = EXT_LIMIT
    size_width: int = SIZE_LIMIT

    @property
    def entry_overhead(self) -> int:
        return self.name_width + self.ext_width + self.size_width

    @property
    def is_supported(self) -> bool:
        return (self.major, self.minor) == (MAJOR_VERSION, MINOR_VERSION)

    def serialize(self) -> bytes:
        """Serializes the header to 32 bytes"""
        output = io.BytesIO()
        output.write(encode_number_field(self.major, VERSION_FIELD_WIDTH))
        output.write(encode_number_field(self.minor, VERSION_FIELD_WIDTH))
        output.write(encode_number_field(self.name_width, WIDTH_FIELD_WIDTH))
        output.write(encode_number_field(self.ext_width, WIDTH_FIELD_WIDTH))
        output.write(encode_number_field(self.size_width, WIDTH_FIELD_WIDTH))
        return output.getvalue()

    @staticmethod
    def deserialize(data: bytes) -> 'Header':
        """Parses the header fields without validating them"""
        if len(data) != HEADER_SIZE:
            raise MalformedHeaderError(f"header must be {HEADER_SIZE} bytes, got {len(data)}")

        values = []
        pos = 0
        for width in (VERSION_FIELD_WIDTH, VERSION_FIELD_WIDTH,
                      WIDTH_FIELD_WIDTH, WIDTH_FIELD_WIDTH, WIDTH_FIELD_WIDTH):
            try:
                values.append(decode_number_field(data[pos:pos + width]))
            except MalformedFieldError as e:
                raise MalformedHeaderError(f"header field at offset {pos}: {e}") from e
            pos += width

        return Header(*values)

    def check_widths(self) -> None:
        """Raises MalformedHeaderError for a zero or oversized field width"""
        for width in (self.name_width, self.ext_width, self.size_width):
            if width <= 0 or width > MAX_FIELD_WIDTH:
                raise MalformedHeaderError(f"invalid field width: {width}")


def encode_text_field(value: str, width: int, error: type = FieldOverflowError) -> bytes:
    """NUL-pads value to width; at least one NUL must remain."""
    raw = value.encode(TEXT_ENCODING, TEXT_ERRORS)
    if b'\0' in raw:
        raise error(f"field value contains NUL: {value!r}")
    if len(raw) >= width:
        raise error(f"{value!r} is {len(raw)} bytes, field holds at most {width - 1}")
    return raw.ljust(width, b'\0')


def encode_number_field(value: int, width: int) -> bytes:
    if value < 0:
        raise FieldOverflowError(f"negative value: {value}")
    return encode_text_field(str(value), width)


def _field_bytes(raw: bytes) -> bytes:
    return raw.split(b'\0', 1)[0]


def decode_text_field(raw: bytes) -> str:
    return _field_bytes(raw).decode(TEXT_ENCODING, TEXT_ERRORS)


def decode_number_field(raw: bytes) -> int:
    digits = _field_bytes(raw)
    if not digits:
        raise MalformedFieldError("empty numeric field")
    if not digits.isdigit():
        raise MalformedFieldError(f"not a decimal number: {digits!r}")
    return int(digits)


def write_header(sink: BinaryIO, major: int = MAJOR_VERSION, minor: int = MINOR_VERSION,
                 name_width: int = NAME_LIMIT, ext_width: int = EXT_LIMIT,
                 size_width: int = SIZE_LIMIT) -> Header:
    """Writes the package header once, before any entry"""
    header = Header(major, minor, name_width, ext_width, size_width)
    sink.write(header.serialize())
    return header


def read_header(source: BinaryIO) -> Optional[Header]:
    """Reads and validates the header.

    Returns None for an empty source. Raises MalformedHeaderError for a
    partial or non-numeric header and IncompatibleVersionError when the
    version differs from MAJOR_VERSION.MINOR_VERSION. Field widths are only
    checked once the version is known to be supported.
    """
    data = source.read(HEADER_SIZE)
    if not data:
        return None

    header = Header.deserialize(data)
    if not header.is_supported:
        raise IncompatibleVersionError(header.major, header.minor)

    header.check_widths()

    return header


def write_entry(sink: BinaryIO, descriptor: Descriptor, header: Header = Header(),
                progress: Optional[ProgressFn] = None, step: int = WRITE_STEP) -> int:
    """Writes one entry; descriptor.data must already hold the packed payload."""
    if len(descriptor.data) != descriptor.size:
        raise ValueError(f"{descriptor.filename}: size {descriptor.size} != {len(descriptor.data)} data bytes")

    # Encode every field first so a bad one leaves nothing half-written.
    name = encode_text_field(descriptor.name, header.name_width, NameTooLongError)
    ext = encode_text_field(descriptor.ext, header.ext_width, ExtTooLongError)
    size = encode_number_field(descriptor.size, header.size_width)

    sink.write(name)
    sink.write(ext)
    sink.write(size)
    write_chunked(sink, descriptor.data, step, progress)

    return header.entry_overhead + descriptor.size


def _remaining(source: BinaryIO) -> Optional[int]:
    try:
        pos = source.tell()
        end = source.seek(0, io.SEEK_END)
        source.seek(pos)
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None
    return end - pos


def read_entry(source: BinaryIO, header: Header, progress: Optional[ProgressFn] = None,
               step: int = READ_STEP) -> Optional[RecoveredDescriptor]:
    """Reads the next entry, or returns None at the end of the entries."""
    fields = source.read(header.entry_overhead)
    if len(fields) < header.entry_overhead:
        return None

    name_end = header.name_width
    ext_end = name_end + header.ext_width

    try:
        size = decode_number_field(fields[ext_end:])
    except MalformedFieldError:
        return None

    remaining = _remaining(source)
    if remaining is not None and size > remaining:
        raise TruncatedPackageError(f"entry declares {size} bytes, {remaining} left in package")

    try:
        payload = read_chunked(source, size, step, progress)
    except ShortReadError as e:
        raise TruncatedPackageError(f"entry payload cut short: {e}") from e

    return RecoveredDescriptor(
        name=decode_text_field(fields[:name_end]),
        ext=decode_text_field(fields[name_end:ext_end]),
        data=payload,
    )
