import io
import unittest
from unittest import mock

import lzma_codec
from chunked_io import ShortReadError, read_chunked, write_chunked
from console import Console
from lzma_codec import DecompressError, GrowableBuffer, Status
from package_format import (
    HEADER_SIZE,
    Descriptor,
    DescriptorState,
    ExtTooLongError,
    FieldOverflowError,
    Header,
    IncompatibleVersionError,
    MalformedFieldError,
    MalformedHeaderError,
    NameTooLongError,
    TruncatedPackageError,
    decode_number_field,
    decode_text_field,
    encode_number_field,
    encode_text_field,
    read_entry,
    read_header,
    write_entry,
    write_header,
)


EXPECTED_HEADER = (
    b'1\x00\x00\x00'
    b'1\x00\x00\x00'
    b'128\x00\x00\x00\x00\x00'
    b'32\x00\x00\x00\x00\x00\x00'
    b'32\x00\x00\x00\x00\x00\x00'
)


class RecordingSink(io.BytesIO):
    """BytesIO that records the size of every write"""

    def __init__(self):
        super().__init__()
        self.write_sizes = []

    def write(self, data):
        self.write_sizes.append(len(data))
        return super().write(data)


class NonSeekableSource:
    """Stream without tell/seek"""

    def __init__(self, data: bytes):
        self._stream = io.BytesIO(data)

    def read(self, size=-1):
        return self._stream.read(size)

    def readinto(self, buffer):
        return self._stream.readinto(buffer)


class TestChunkedIO(unittest.TestCase):
    """Tests for bounded reads and writes"""

    def test_read_in_clipped_steps(self):
        """Test reading in steps with the last step clipped"""
        calls = []
        data = read_chunked(io.BytesIO(b'abcdefghij'), 10, step=4,
                            progress=lambda done, total: calls.append((done, total)))

        self.assertEqual(bytes(data), b'abcdefghij')
        self.assertEqual(calls, [(4, 10), (8, 10), (10, 10)])

    def test_read_stops_at_total(self):
        """Test that reading stops after the requested byte count"""
        source = io.BytesIO(b'abcdefghij')
        data = read_chunked(source, 6, step=4)
        self.assertEqual(bytes(data), b'abcdef')
        self.assertEqual(source.read(), b'ghij')

    def test_read_zero_bytes(self):
        """Test reading nothing reports no progress"""
        calls = []
        data = read_chunked(io.BytesIO(b'abc'), 0, progress=lambda *a: calls.append(a))
        self.assertEqual(bytes(data), b'')
        self.assertEqual(calls, [])

    def test_short_read(self):
        """Test early EOF raises ShortReadError"""
        with self.assertRaises(ShortReadError) as ctx:
            read_chunked(io.BytesIO(b'abc'), 5, step=2)
        self.assertEqual(ctx.exception.expected, 5)
        self.assertEqual(ctx.exception.received, 3)
        self.assertIsInstance(ctx.exception, EOFError)

    def test_write_in_clipped_steps(self):
        """Test writing in steps with the last step clipped"""
        sink = RecordingSink()
        calls = []
        written = write_chunked(sink, b'0123456789', step=4,
                                progress=lambda done, total: calls.append((done, total)))

        self.assertEqual(written, 10)
        self.assertEqual(sink.getvalue(), b'0123456789')
        self.assertEqual(sink.write_sizes, [4, 4, 2])
        self.assertEqual(calls, [(4, 10), (8, 10), (10, 10)])

    def test_invalid_step(self):
        """Test non-positive steps are rejected"""
        with self.assertRaises(ValueError):
            write_chunked(io.BytesIO(), b'abc', step=0)
        with self.assertRaises(ValueError):
            read_chunked(io.BytesIO(b'abc'), 3, step=-1)


class TestGrowableBuffer(unittest.TestCase):
    """Tests for the codec output buffer"""

    def test_doubles_capacity(self):
        """Test capacity doubles on overflow"""
        buffer = GrowableBuffer(4)
        for chunk in (b'abc', b'def', b'ghi', b'jkl', b'mno'):
            buffer.append(chunk)

        self.assertEqual(len(buffer), 15)
        self.assertEqual(buffer.capacity, 16)
        self.assertEqual(buffer.getvalue(), b'abcdefghijklmno')

    def test_large_append(self):
        """Test one append larger than several doublings"""
        buffer = GrowableBuffer(2)
        buffer.append(b'x' * 100)
        self.assertEqual(buffer.capacity, 128)
        self.assertEqual(buffer.getvalue(), b'x' * 100)

    def test_empty(self):
        """Test an empty buffer yields no bytes"""
        self.assertEqual(GrowableBuffer().getvalue(), b'')


class TestCodec(unittest.TestCase):
    """Tests for LZMA compression"""

    def test_roundtrip(self):
        """Test compression and decompression"""
        data = b'Hello World! ' * 100
        packed = lzma_codec.compress(data)
        self.assertLess(len(packed), len(data))
        self.assertEqual(lzma_codec.decompress(packed), data)

    def test_empty_payload(self):
        """Test compressing empty data"""
        packed = lzma_codec.compress(b'')
        self.assertGreater(len(packed), 0)
        self.assertEqual(lzma_codec.decompress(packed), b'')

    def test_small_steps(self):
        """Test chunked push and pull with progress"""
        data = bytes(range(256)) * 20
        calls = []
        with mock.patch.object(lzma_codec, 'CODEC_STEP', 100):
            packed = lzma_codec.compress(data, lambda done, total: calls.append((done, total)))
            self.assertEqual(lzma_codec.decompress(packed), data)

        self.assertEqual(len(calls), 52)
        self.assertEqual(calls[0], (100, len(data)))
        self.assertEqual(calls[-1], (len(data), len(data)))

    def test_alone_format(self):
        """Test output uses the .lzma container"""
        packed = lzma_codec.compress(b'abc')
        # properties byte for lc=3 lp=0 pb=2
        self.assertEqual(packed[0], 0x5d)

    def test_empty_input_is_truncated(self):
        """Test decompressing nothing"""
        with self.assertRaises(DecompressError) as ctx:
            lzma_codec.decompress(b'')
        self.assertEqual(ctx.exception.status, Status.TRUNCATED)

    def test_truncated_stream(self):
        """Test a cut compressed stream"""
        packed = lzma_codec.compress(bytes(range(256)) * 50)
        with self.assertRaises(DecompressError) as ctx:
            lzma_codec.decompress(packed[:len(packed) // 2])
        self.assertEqual(ctx.exception.status, Status.TRUNCATED)

    def test_garbage(self):
        """Test decompressing invalid data"""
        with self.assertRaises(DecompressError) as ctx:
            lzma_codec.decompress(b'\xff' * 64)
        self.assertNotEqual(ctx.exception.status, Status.OK)


class TestFields(unittest.TestCase):
    """Tests for fixed-width field encoding"""

    def test_text_padding(self):
        """Test NUL padding of text fields"""
        self.assertEqual(encode_text_field('ab', 4), b'ab\x00\x00')
        self.assertEqual(decode_text_field(b'ab\x00\x00'), 'ab')

    def test_text_must_leave_terminator(self):
        """Test a text field keeps room for one NUL"""
        self.assertEqual(len(encode_text_field('a' * 127, 128)), 128)
        with self.assertRaises(FieldOverflowError):
            encode_text_field('a' * 128, 128)
        with self.assertRaises(NameTooLongError):
            encode_text_field('a' * 128, 128, NameTooLongError)

    def test_text_width_counts_bytes(self):
        """Test width is measured in encoded bytes"""
        with self.assertRaises(FieldOverflowError):
            encode_text_field('é' * 2, 4)

    def test_text_rejects_nul(self):
        """Test embedded NUL is refused"""
        with self.assertRaises(FieldOverflowError):
            encode_text_field('a\x00b', 8)

    def test_utf8_roundtrip(self):
        """Test non-ASCII names"""
        raw = encode_text_field('тест', 32)
        self.assertEqual(decode_text_field(raw), 'тест')

    def test_number(self):
        """Test decimal number fields"""
        self.assertEqual(encode_number_field(42, 8), b'42\x00\x00\x00\x00\x00\x00')
        self.assertEqual(decode_number_field(b'42\x00\x00\x00\x00\x00\x00'), 42)
        self.assertEqual(decode_number_field(b'7'), 7)

    def test_number_overflow(self):
        """Test numbers that do not fit"""
        with self.assertRaises(FieldOverflowError):
            encode_number_field(1000, 4)
        with self.assertRaises(FieldOverflowError):
            encode_number_field(-1, 4)

    def test_malformed_numbers(self):
        """Test strict decimal parsing"""
        for raw in (b'', b'\x00\x00\x00', b'1a\x00', b' 1\x00', b'-1\x00', b'\xff\x00'):
            with self.assertRaises(MalformedFieldError):
                decode_number_field(raw)

    def test_digits_after_nul_are_ignored(self):
        """Test parsing stops at the first NUL"""
        self.assertEqual(decode_number_field(b'12\x0099'), 12)


class TestHeader(unittest.TestCase):
    """Tests for the package header"""

    def test_layout(self):
        """Test the 32-byte header layout"""
        sink = io.BytesIO()
        header = write_header(sink)

        self.assertEqual(sink.getvalue(), EXPECTED_HEADER)
        self.assertEqual(len(sink.getvalue()), HEADER_SIZE)
        self.assertEqual(header, Header(1, 1, 128, 32, 32))

    def test_read_back(self):
        """Test reading the default header"""
        header = read_header(io.BytesIO(EXPECTED_HEADER))
        self.assertEqual(header, Header())
        self.assertEqual(header.entry_overhead, 192)

    def test_custom_widths(self):
        """Test non-default field widths"""
        sink = io.BytesIO()
        write_header(sink, name_width=200, ext_width=16, size_width=20)
        sink.seek(0)

        header = read_header(sink)
        self.assertEqual((header.name_width, header.ext_width, header.size_width), (200, 16, 20))

    def test_empty_source(self):
        """Test an empty package has no header"""
        self.assertIsNone(read_header(io.BytesIO(b'')))

    def test_partial_header(self):
        """Test a header cut short"""
        with self.assertRaises(MalformedHeaderError):
            read_header(io.BytesIO(EXPECTED_HEADER[:10]))

    def test_incompatible_versions(self):
        """Test the version gate"""
        for major, minor in ((2, 1), (1, 0), (0, 9)):
            sink = io.BytesIO()
            write_header(sink, major, minor)
            sink.seek(0)
            with self.assertRaises(IncompatibleVersionError) as ctx:
                read_header(sink)
            self.assertEqual((ctx.exception.major, ctx.exception.minor), (major, minor))

    def test_non_numeric_field(self):
        """Test a header with a non-numeric width"""
        data = EXPECTED_HEADER[:8] + b'abc\x00\x00\x00\x00\x00' + EXPECTED_HEADER[16:]
        with self.assertRaises(MalformedHeaderError):
            read_header(io.BytesIO(data))

    def test_zero_width(self):
        """Test a header with a zero width"""
        data = EXPECTED_HEADER[:8] + b'0\x00\x00\x00\x00\x00\x00\x00' + EXPECTED_HEADER[16:]
        with self.assertRaises(MalformedHeaderError):
            read_header(io.BytesIO(data))

    def test_newer_version_with_wide_fields(self):
        """A newer package is rejected by version even if its widths are out of range"""
        data = (encode_number_field(2, 4) + encode_number_field(0, 4) + encode_number_field(2000000, 8)
                + encode_number_field(32, 8) + encode_number_field(32, 8))
        with self.assertRaises(IncompatibleVersionError) as ctx:
            read_header(io.BytesIO(data))
        self.assertEqual((ctx.exception.major, ctx.exception.minor), (2, 0))

    def test_oversized_width(self):
        """A supported package with an oversized field width is malformed"""
        data = EXPECTED_HEADER[:8] + encode_number_field(2000000, 8) + EXPECTED_HEADER[16:]
        with self.assertRaises(MalformedHeaderError):
            read_header(io.BytesIO(data))


class TestEntry(unittest.TestCase):
    """Tests for package entries"""

    def setUp(self):
        self.header = Header()

    def _package(self, *descriptors) -> io.BytesIO:
        sink = io.BytesIO()
        write_header(sink)
        for descriptor in descriptors:
            write_entry(sink, descriptor, self.header)
        sink.seek(HEADER_SIZE)
        return sink

    def test_layout(self):
        """Test the name, ext, size and payload layout"""
        sink = io.BytesIO()
        written = write_entry(sink, Descriptor('a', '.txt', b'xyz'), self.header)
        data = sink.getvalue()

        self.assertEqual(written, 192 + 3)
        self.assertEqual(data[:128], b'a' + b'\x00' * 127)
        self.assertEqual(data[128:160], b'.txt' + b'\x00' * 28)
        self.assertEqual(data[160:192], b'3' + b'\x00' * 31)
        self.assertEqual(data[192:], b'xyz')

    def test_read_entries_until_eof(self):
        """Test reading entries until EOF"""
        source = self._package(Descriptor('a', '.txt', b'hello'), Descriptor('b', '', b''))

        first = read_entry(source, self.header)
        second = read_entry(source, self.header)

        self.assertEqual((first.name, first.ext, bytes(first.data), first.size), ('a', '.txt', b'hello', 5))
        self.assertEqual(first.state, DescriptorState.READ)
        self.assertEqual((second.filename, second.size), ('b', 0))
        self.assertIsNone(read_entry(source, self.header))

    def test_empty_size_field_terminates(self):
        """Test an empty size field ends the entries"""
        source = self._package(Descriptor('a', '.txt', b'hello'))
        source.seek(0, io.SEEK_END)
        source.write(b'\x00' * 192 + b'trailing')
        source.seek(HEADER_SIZE)

        self.assertIsNotNone(read_entry(source, self.header))
        self.assertIsNone(read_entry(source, self.header))

    def test_garbage_size_field_terminates(self):
        """Test a non-numeric size field ends the entries"""
        source = io.BytesIO(b'n'.ljust(128, b'\x00') + b'.e'.ljust(32, b'\x00') + b'zz'.ljust(32, b'\x00'))
        self.assertIsNone(read_entry(source, self.header))

    def test_truncated_payload(self):
        """Test a payload shorter than its size"""
        source = self._package(Descriptor('a', '.txt', b'hello world'))
        data = source.getvalue()[:-4]

        source = io.BytesIO(data)
        source.seek(HEADER_SIZE)
        with self.assertRaises(TruncatedPackageError):
            read_entry(source, self.header)

    def test_truncated_payload_non_seekable(self):
        """Test a short payload on a non-seekable source"""
        sink = io.BytesIO()
        write_entry(sink, Descriptor('a', '.txt', b'hello world'), self.header)

        source = NonSeekableSource(sink.getvalue()[:-4])
        with self.assertRaises(TruncatedPackageError):
            read_entry(source, self.header)

    def test_respects_header_widths(self):
        """Test entries use the widths from the header"""
        header = Header(name_width=8, ext_width=4, size_width=4)
        sink = io.BytesIO()
        write_entry(sink, Descriptor('short', '.md', b'data'), header)
        self.assertEqual(len(sink.getvalue()), 16 + 4)

        sink.seek(0)
        entry = read_entry(sink, header)
        self.assertEqual((entry.filename, bytes(entry.data)), ('short.md', b'data'))

    def test_field_errors_write_nothing(self):
        """Test oversized fields leave the sink untouched"""
        sink = io.BytesIO()
        with self.assertRaises(NameTooLongError):
            write_entry(sink, Descriptor('n' * 128, '.txt', b'x'), self.header)
        with self.assertRaises(ExtTooLongError):
            write_entry(sink, Descriptor('n', '.' + 'e' * 31, b'x'), self.header)
        self.assertEqual(sink.getvalue(), b'')

    def test_size_must_match_data(self):
        """Test size and data length must agree"""
        descriptor = Descriptor('a', '.txt', b'abc')
        descriptor.size = 5
        with self.assertRaises(ValueError):
            write_entry(io.BytesIO(), descriptor, self.header)

    def test_progress(self):
        """Test payload write progress"""
        calls = []
        sink = io.BytesIO()
        write_entry(sink, Descriptor('a', '', b'x' * 10), self.header,
                    progress=lambda done, total: calls.append((done, total)), step=4)
        self.assertEqual(calls, [(4, 10), (8, 10), (10, 10)])


class TestDescriptor(unittest.TestCase):
    """Tests for descriptors"""

    def test_replace_data_keeps_size(self):
        """Test size follows the data buffer"""
        descriptor = Descriptor('a', '.txt', b'hello')
        self.assertEqual(descriptor.size, 5)
        self.assertEqual(descriptor.state, DescriptorState.PENDING)

        descriptor.replace_data(b'xy', DescriptorState.COMPRESSED)
        self.assertEqual(descriptor.size, 2)
        self.assertEqual(descriptor.state, DescriptorState.COMPRESSED)
        self.assertEqual(descriptor.filename, 'a.txt')


class TestConsole(unittest.TestCase):
    """Tests for console output"""

    def test_progress_line(self):
        """Test the progress line format"""
        stream = io.StringIO()
        console = Console(stream=stream)

        report = console.progress('Writing', 'a.txt', ' - 5 -> 9')
        report(5, 10)
        report(10, 10)
        console.status('done')

        self.assertEqual(
            stream.getvalue(),
            '\r[Writing - 50%] a.txt - 5 -> 9\r[Writing - 100%] a.txt - 5 -> 9\ndone\n',
        )

    def test_quiet(self):
        """Test quiet mode keeps only errors"""
        stream, errors = io.StringIO(), io.StringIO()
        console = Console(stream=stream, error_stream=errors, quiet=True)

        console.progress('Reading', 'x')(1, 2)
        console.status('hidden')
        console.error('shown')

        self.assertEqual(stream.getvalue(), '')
        self.assertEqual(errors.getvalue(), 'ERROR: shown\n')


if __name__ == '__main__':
    unittest.main(verbosity=2)
