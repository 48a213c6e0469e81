"""
Tests for the packaging pipelines, the CLI and the end-to-end check
"""

import contextlib
import io
import os
import tempfile
import unittest
from collections import deque

import lzma_codec
from console import Console
from inputs import classify_paths, expand_directory
from main import main
from package_format import (
    HEADER_SIZE,
    NAME_LIMIT,
    Descriptor,
    DescriptorState,
    Header,
    OversizedTotalError,
    RecoveredDescriptor,
    write_entry,
    write_header,
)
from packager import (
    Binpressor,
    Materializer,
    PackageReader,
    PackageWriter,
    collect_descriptors,
    split_filename,
)
from verify_packager import verify_packager


def quiet_console() -> Console:
    return Console(stream=io.StringIO(), error_stream=io.StringIO(), quiet=True)


class PackagerTestCase(unittest.TestCase):
    """Temporary directory with a quiet console"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = self.temp_dir.name
        self.console = quiet_console()

    def tearDown(self):
        self.temp_dir.cleanup()

    def make_file(self, filename: str, data: bytes) -> str:
        path = os.path.join(self.temp_path, filename)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def read_file(self, path: str) -> bytes:
        with open(path, 'rb') as f:
            return f.read()


class TestCollectDescriptors(PackagerTestCase):
    """Loading source files into descriptors"""

    def test_split_filename(self):
        """Test splitting paths into name and extension"""
        self.assertEqual(split_filename('/tmp/a.txt'), ('a', '.txt'))
        self.assertEqual(split_filename('archive.tar.gz'), ('archive.tar', '.gz'))
        self.assertEqual(split_filename('README'), ('README', ''))

    def test_loads_files_in_order(self):
        """Test files are read in argument order"""
        paths = [self.make_file('b.bin', b'xy'), self.make_file('a.txt', b'hello')]
        result = collect_descriptors(paths, self.console)

        self.assertEqual([d.filename for d in result.descriptors], ['b.bin', 'a.txt'])
        self.assertEqual([bytes(d.data) for d in result.descriptors], [b'xy', b'hello'])
        self.assertEqual([d.size for d in result.descriptors], [2, 5])
        self.assertTrue(all(d.state == DescriptorState.PENDING for d in result.descriptors))
        self.assertEqual(result.rejected, [])

    def test_name_length_boundary(self):
        """Test the 128-byte name limit"""
        fits = self.make_file('n' * (NAME_LIMIT - 1) + '.txt', b'ok')
        too_long = self.make_file('n' * NAME_LIMIT + '.txt', b'too long')

        result = collect_descriptors([fits, too_long], self.console)

        self.assertEqual([d.source for d in result.descriptors], [fits])
        self.assertEqual(result.rejected, [too_long])
        self.assertIn(too_long, self.console.error_stream.getvalue())

    def test_extension_length_boundary(self):
        """Test the 32-byte extension limit"""
        fits = self.make_file('a.' + 'e' * 30, b'ok')
        too_long = self.make_file('b.' + 'e' * 31, b'too long')

        result = collect_descriptors([fits, too_long], self.console)

        self.assertEqual([d.source for d in result.descriptors], [fits])
        self.assertEqual(result.rejected, [too_long])

    def test_missing_file_is_rejected(self):
        """Test a missing file is reported and skipped"""
        present = self.make_file('a.txt', b'hello')
        missing = os.path.join(self.temp_path, 'missing.txt')

        result = collect_descriptors([missing, present], self.console)

        self.assertEqual(len(result.descriptors), 1)
        self.assertEqual(result.rejected, [missing])

    def test_oversized_total(self):
        """Test the total size limit is checked before reading"""
        paths = [self.make_file('a.txt', b'hello'), self.make_file('b.txt', b'world')]
        with self.assertRaises(OversizedTotalError) as ctx:
            collect_descriptors(paths, self.console, max_total_size=9)
        self.assertEqual(ctx.exception.total, 10)


class TestWriterReader(PackagerTestCase):
    """Writing and reading packages"""

    def setUp(self):
        super().setUp()
        self.package_path = os.path.join(self.temp_path, 'package.bin')

    def write_package(self, items):
        descriptors = deque(Descriptor(name, ext, data) for name, ext, data in items)
        writer = PackageWriter(self.console)
        return writer.write(descriptors, self.package_path), descriptors

    def test_concrete_layout(self):
        """hello -> a.txt, xy -> b.bin: header then two entries with packed sizes"""
        stats, _ = self.write_package([('a', '.txt', b'hello'), ('b', '.bin', b'xy')])
        data = self.read_file(self.package_path)

        self.assertEqual(data[:HEADER_SIZE], Header().serialize())
        self.assertTrue(data.startswith(b'1\x00\x00\x001\x00\x00\x00128\x00'))

        packed_hello = lzma_codec.compress(b'hello')
        packed_xy = lzma_codec.compress(b'xy')

        pos = HEADER_SIZE
        self.assertEqual(data[pos:pos + 128].rstrip(b'\x00'), b'a')
        self.assertEqual(data[pos + 128:pos + 160].rstrip(b'\x00'), b'.txt')
        self.assertEqual(data[pos + 160:pos + 192].rstrip(b'\x00'), str(len(packed_hello)).encode())
        pos += 192
        self.assertEqual(data[pos:pos + len(packed_hello)], packed_hello)
        pos += len(packed_hello)

        self.assertEqual(data[pos:pos + 128].rstrip(b'\x00'), b'b')
        self.assertEqual(data[pos + 128:pos + 160].rstrip(b'\x00'), b'.bin')
        self.assertEqual(data[pos + 160:pos + 192].rstrip(b'\x00'), str(len(packed_xy)).encode())
        pos += 192
        self.assertEqual(data[pos:], packed_xy)

        self.assertEqual(stats.entries, 2)
        self.assertEqual(stats.raw_size, 7)
        self.assertEqual(stats.packed_size, len(packed_hello) + len(packed_xy))
        self.assertEqual(stats.total_size, len(data))

        recovered = PackageReader(self.console).read(self.package_path)
        self.assertEqual([(d.filename, bytes(d.data), d.size) for d in recovered],
                         [('a.txt', b'hello', 5), ('b.bin', b'xy', 2)])
        self.assertTrue(all(d.state == DescriptorState.DECOMPRESSED for d in recovered))

    def test_writer_consumes_queue(self):
        """Test the writer drains its queue"""
        descriptors = deque([Descriptor('a', '.txt', b'hello'), Descriptor('b', '', b'')])
        kept = list(descriptors)

        PackageWriter(self.console).write(descriptors, self.package_path)

        self.assertEqual(len(descriptors), 0)
        for descriptor in kept:
            self.assertEqual(descriptor.state, DescriptorState.WRITTEN)
            self.assertEqual(descriptor.size, 0)

    def test_writer_open_failure(self):
        """Test an unwritable package path"""
        descriptors = deque([Descriptor('a', '.txt', b'hello')])
        bad_path = os.path.join(self.temp_path, 'missing', 'package.bin')

        with self.assertRaises(OSError):
            PackageWriter(self.console).write(descriptors, bad_path)

        self.assertFalse(os.path.exists(bad_path))
        self.assertEqual(len(descriptors), 1)

    def test_multiple_entries_keep_order(self):
        """Test entry order survives a round trip"""
        items = [
            ('c', '.dat', os.urandom(5000)),
            ('a', '.txt', b'A'),
            ('b', '.log', b'line\n' * 300),
        ]
        self.write_package(items)

        recovered = PackageReader(self.console).read(self.package_path)
        self.assertEqual([(d.name, d.ext, bytes(d.data)) for d in recovered], items)

    def test_empty_package_file(self):
        """Test an empty package file"""
        self.make_file('package.bin', b'')
        self.assertEqual(PackageReader(self.console).read(self.package_path), [])

    def test_header_only(self):
        """Test a package with only a header"""
        with open(self.package_path, 'wb') as f:
            write_header(f)
        self.assertEqual(PackageReader(self.console).read(self.package_path), [])

    def test_header_then_terminator(self):
        """Test a header followed by an empty size field"""
        with open(self.package_path, 'wb') as f:
            write_header(f)
            f.write(b'\x00' * 192)
        self.assertEqual(PackageReader(self.console).read(self.package_path), [])

    def test_decompress_failure_drops_package(self):
        """Test a bad payload drops the whole package"""
        with open(self.package_path, 'wb') as f:
            write_header(f)
            write_entry(f, Descriptor('good', '.txt', lzma_codec.compress(b'fine')))
            write_entry(f, Descriptor('bad', '.txt', b'\xffnot an lzma stream'))

        with self.assertRaises(lzma_codec.DecompressError):
            PackageReader(self.console).read(self.package_path)

    def test_scan_lists_packed_entries(self):
        """Test scanning without decompression"""
        self.write_package([('a', '.txt', b'hello'), ('b', '.bin', b'xy')])
        entries = list(PackageReader(self.console).scan(self.package_path))

        self.assertEqual([e.filename for e in entries], ['a.txt', 'b.bin'])
        self.assertEqual(entries[0].size, len(lzma_codec.compress(b'hello')))


class TestMaterializer(PackagerTestCase):
    """Writing recovered files to disk"""

    def test_writes_and_consumes(self):
        """Test recovered files are written and released"""
        output_dir = os.path.join(self.temp_path, 'out')
        recovered = [
            RecoveredDescriptor('a', '.txt', b'hello'),
            RecoveredDescriptor('b', '', b''),
        ]
        kept = list(recovered)

        result = Materializer(self.console).materialize(recovered, output_dir)

        self.assertEqual(recovered, [])
        self.assertEqual(result.written, [os.path.join(output_dir, 'a.txt'), os.path.join(output_dir, 'b')])
        self.assertEqual(self.read_file(os.path.join(output_dir, 'a.txt')), b'hello')
        self.assertEqual(self.read_file(os.path.join(output_dir, 'b')), b'')
        self.assertTrue(all(d.state == DescriptorState.WRITTEN for d in kept))

    def test_unsafe_names(self):
        """Test names that escape the output directory"""
        output_dir = os.path.join(self.temp_path, 'out')
        recovered = [
            RecoveredDescriptor('..', '', b'x'),
            RecoveredDescriptor('../evil', '.txt', b'x'),
            RecoveredDescriptor('', '', b'x'),
            RecoveredDescriptor('fine', '.txt', b'ok'),
        ]

        result = Materializer(self.console).materialize(recovered, output_dir)

        self.assertEqual(result.failed, ['..', '../evil.txt', ''])
        self.assertEqual(os.listdir(output_dir), ['fine.txt'])
        self.assertFalse(os.path.exists(os.path.join(self.temp_path, 'evil.txt')))

    def test_output_dir_cannot_be_created(self):
        """An output path that is a regular file fails every entry"""
        output_dir = self.make_file('out', b'not a directory')
        errors = io.StringIO()
        console = Console(stream=io.StringIO(), error_stream=errors, quiet=True)
        recovered = [RecoveredDescriptor('a', '.txt', b'hello'), RecoveredDescriptor('b', '', b'xy')]

        result = Materializer(console).materialize(recovered, output_dir)

        self.assertEqual(recovered, [])
        self.assertEqual(result.written, [])
        self.assertEqual(result.failed, ['a.txt', 'b'])
        self.assertIn("Could not create output directory", errors.getvalue())


class TestBinpressor(PackagerTestCase):
    """Full pack and unpack runs"""

    def setUp(self):
        super().setUp()
        self.package_path = os.path.join(self.temp_path, 'package.bin')
        self.output_dir = os.path.join(self.temp_path, 'package')
        self.binpressor = Binpressor(self.package_path, self.output_dir, console=self.console)

    def test_round_trip(self):
        """Test packing and unpacking one file"""
        data = os.urandom(3000) + b'tail'
        source = self.make_file(os.path.join('src', 'f.txt'), data)

        report = self.binpressor.run([source], [])
        self.assertEqual(report.pack.entries, 1)

        report = self.binpressor.run([], [self.package_path])
        self.assertEqual(report.unpacked, [self.package_path])
        self.assertEqual(self.read_file(os.path.join(self.output_dir, 'f.txt')), data)

    def test_pack_then_unpack_in_one_run(self):
        """Test unpacking several packages"""
        first = self.make_file(os.path.join('src', 'a.txt'), b'hello')
        second = self.make_file(os.path.join('src', 'b.bin'), b'xy')
        self.binpressor.package([first, second])

        other_package = os.path.join(self.temp_path, 'second.bin')
        Binpressor(other_package, console=self.console).package(
            [self.make_file(os.path.join('src2', 'c.md'), b'# title')]
        )

        report = self.binpressor.run([], [self.package_path, other_package])

        self.assertEqual(report.failed_packages, [])
        self.assertEqual(sorted(os.listdir(self.output_dir)), ['a.txt', 'b.bin', 'c.md'])
        self.assertEqual(self.read_file(os.path.join(self.output_dir, 'a.txt')), b'hello')
        self.assertEqual(self.read_file(os.path.join(self.output_dir, 'b.bin')), b'xy')

    def test_version_gate(self):
        """Test an unsupported version writes nothing"""
        with open(self.package_path, 'wb') as f:
            write_header(f, major=2, minor=0)
            write_entry(f, Descriptor('a', '.txt', lzma_codec.compress(b'hello')))

        report = self.binpressor.unpackage([self.package_path])

        self.assertEqual(report.failed_packages, [self.package_path])
        self.assertEqual(report.written, [])
        self.assertFalse(os.path.exists(self.output_dir))
        self.assertIn('Incompatible package version', self.console.error_stream.getvalue())

    def test_newer_version_with_wide_fields(self):
        """A newer package declaring huge widths is reported as incompatible"""
        with open(self.package_path, 'wb') as f:
            write_header(f, major=2, minor=0, name_width=2000000)

        report = self.binpressor.unpackage([self.package_path])

        self.assertEqual(report.failed_packages, [self.package_path])
        errors = self.console.error_stream.getvalue()
        self.assertIn('Incompatible package version', errors)
        self.assertNotIn('Could not read package', errors)

    def test_output_dir_is_a_file(self):
        """A read package is not reported as unreadable when its output fails"""
        self.binpressor.package([self.make_file('a.txt', b'hello')])
        blocked = self.make_file('out', b'')
        binpressor = Binpressor(self.package_path, blocked, console=self.console)

        binpressor.unpackage([self.package_path])

        errors = self.console.error_stream.getvalue()
        self.assertIn('Could not create output directory', errors)
        self.assertNotIn('Could not read package', errors)

    def test_decompress_failure_is_isolated(self):
        """Test a broken package does not stop the others"""
        bad_package = os.path.join(self.temp_path, 'bad.bin')
        with open(bad_package, 'wb') as f:
            write_header(f)
            write_entry(f, Descriptor('first', '.txt', lzma_codec.compress(b'recovered first')))
            write_entry(f, Descriptor('second', '.txt', b'\xffgarbage'))

        self.binpressor.package([self.make_file(os.path.join('src', 'good.txt'), b'good')])

        report = self.binpressor.unpackage([bad_package, self.package_path])

        self.assertEqual(report.failed_packages, [bad_package])
        self.assertEqual(report.unpacked, [self.package_path])
        self.assertEqual(os.listdir(self.output_dir), ['good.txt'])

    def test_missing_package(self):
        """Test a missing package"""
        missing = os.path.join(self.temp_path, 'missing.bin')
        report = self.binpressor.unpackage([missing])
        self.assertEqual(report.failed_packages, [missing])

    def test_zero_entries(self):
        """Test a package without entries"""
        with open(self.package_path, 'wb') as f:
            write_header(f)

        report = self.binpressor.unpackage([self.package_path])

        self.assertEqual(report.unpacked, [self.package_path])
        self.assertEqual(os.listdir(self.output_dir), [])

    def test_not_packaged_list(self):
        """Test the list of files not packaged"""
        good = self.make_file('a.txt', b'hello')
        too_long = self.make_file('n' * NAME_LIMIT + '.txt', b'x')

        stream = io.StringIO()
        binpressor = Binpressor(self.package_path, self.output_dir,
                                console=Console(stream=stream, error_stream=io.StringIO()))
        report = binpressor.run([good, too_long], [])

        self.assertEqual(report.pack.entries, 1)
        self.assertEqual(report.not_packaged, [too_long])
        self.assertIn('Files not packaged:', stream.getvalue())
        self.assertIn('Packaging complete.', stream.getvalue())

    def test_oversized_pack(self):
        """Test the size limit when packing"""
        paths = [self.make_file('a.txt', b'hello')]
        binpressor = Binpressor(self.package_path, self.output_dir, max_total_size=4, console=self.console)

        report = binpressor.run(paths, [])

        self.assertIsNone(report.pack)
        self.assertEqual(report.not_packaged, paths)
        self.assertFalse(os.path.exists(self.package_path))

    def test_oversized_unpack(self):
        """Test the size limit when unpacking"""
        self.binpressor.package([self.make_file('a.txt', b'hello')])
        binpressor = Binpressor(self.package_path, self.output_dir, max_total_size=10, console=self.console)

        report = binpressor.unpackage([self.package_path])

        self.assertEqual(report.failed_packages, [self.package_path])
        self.assertFalse(os.path.exists(self.output_dir))

    def test_unwritable_output(self):
        """Test a package path that cannot be created"""
        source = self.make_file('a.txt', b'hello')
        binpressor = Binpressor(os.path.join(self.temp_path, 'no', 'such', 'dir.bin'),
                                console=self.console)

        report = binpressor.run([source], [])

        self.assertIsNone(report.pack)
        self.assertEqual(report.not_packaged, [source])

    def test_default_output_dir(self):
        """Test the default output directory"""
        binpressor = Binpressor(console=self.console)
        self.assertEqual(binpressor.resolve_output_dir(), os.path.join(os.getcwd(), 'package'))

    def test_list_package(self):
        """Test listing package entries"""
        self.binpressor.package([self.make_file('a.txt', b'hello'), self.make_file('b.bin', b'xy')])

        entries = self.binpressor.list_package(self.package_path)

        self.assertEqual([name for name, _ in entries], ['a.txt', 'b.bin'])
        self.assertEqual(entries[0][1], len(lzma_codec.compress(b'hello')))


class TestInputs(PackagerTestCase):
    """Classifying command line paths"""

    def test_classify(self):
        """Test sorting paths into files, packages and invalid paths"""
        plain = self.make_file('a.txt', b'a')
        package = self.make_file('p.bin', b'')
        nested = self.make_file(os.path.join('dir', 'sub', 'deep', 'c.txt'), b'c')
        inner_package = self.make_file(os.path.join('dir', 'inner.bin'), b'')
        missing = os.path.join(self.temp_path, 'missing.txt')

        result = classify_paths([plain, package, os.path.join(self.temp_path, 'dir'), missing])

        self.assertEqual(result.files, [plain, inner_package, nested])
        self.assertEqual(result.packages, [package])
        self.assertEqual(result.invalid, [missing])

    def test_expand_directory_sorted(self):
        """Test directories are walked in sorted order"""
        b = self.make_file(os.path.join('d', 'b.txt'), b'')
        a = self.make_file(os.path.join('d', 'a.txt'), b'')
        z = self.make_file(os.path.join('d', 'x', 'z.txt'), b'')

        self.assertEqual(expand_directory(os.path.join(self.temp_path, 'd')), [a, b, z])


class TestCLI(PackagerTestCase):
    """Command line entry point"""

    def run_main(self, argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(io.StringIO()):
            code = main(argv)
        return code, out.getvalue()

    def test_no_command_prints_help(self):
        """Test running without a command"""
        code, output = self.run_main([])
        self.assertEqual(code, 0)
        self.assertIn('usage', output)

    def test_run_and_list(self):
        """Test the run and list commands"""
        source = self.make_file(os.path.join('src', 'notes.txt'), b'some notes\n' * 20)
        package = os.path.join(self.temp_path, 'out.bin')
        output_dir = os.path.join(self.temp_path, 'restored')

        code, _ = self.run_main(['-q', 'run', source, '-o', package])
        self.assertEqual(code, 0)
        self.assertTrue(os.path.isfile(package))

        code, output = self.run_main(['list', package])
        self.assertEqual(code, 0)
        self.assertIn('notes.txt', output)

        code, _ = self.run_main(['-q', 'run', package, '-d', output_dir])
        self.assertEqual(code, 0)
        self.assertEqual(self.read_file(os.path.join(output_dir, 'notes.txt')), b'some notes\n' * 20)

    def test_run_folder(self):
        """Test packing a folder"""
        self.make_file(os.path.join('tree', 'a.txt'), b'a')
        self.make_file(os.path.join('tree', 'sub', 'b.txt'), b'b')
        package = os.path.join(self.temp_path, 'tree.bin')

        code, _ = self.run_main(['-q', 'run', os.path.join(self.temp_path, 'tree'), '-o', package])

        self.assertEqual(code, 0)
        entries = list(PackageReader(quiet_console()).scan(package))
        self.assertEqual([e.filename for e in entries], ['a.txt', 'b.txt'])


class TestVerifyScript(unittest.TestCase):
    """End-to-end check script"""

    def test_verify_packager(self):
        """Test the end-to-end check script"""
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertTrue(verify_packager(quiet_console()))


if __name__ == '__main__':
    unittest.main(verbosity=2)
