"""
Packaging and unpackaging pipelines.

Packing: collect_descriptors() loads source files, PackageWriter compresses
and frames them into one package. Unpacking: PackageReader parses and
decompresses a package, Materializer writes the recovered files to disk.
Binpressor drives both and reports through a Console.
"""

import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Iterable, Iterator, List, Optional, Tuple

import lzma_codec
from chunked_io import ShortReadError, read_chunked, write_chunked
from console import Console
from package_format import (
    DEFAULT_MAX_TOTAL_SIZE,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PACKAGE_NAME,
    HEADER_SIZE,
    Descriptor,
    DescriptorState,
    ExtTooLongError,
    Header,
    IncompatibleVersionError,
    NameTooLongError,
    OversizedTotalError,
    PackageError,
    RecoveredDescriptor,
    UnsafeEntryNameError,
    encode_text_field,
    read_entry,
    read_header,
    write_entry,
    write_header,
)


@dataclass
class CollectResult:
    """Descriptors ready to pack and the paths left out"""

    descriptors: Deque[Descriptor] = field(default_factory=deque)
    rejected: List[str] = field(default_factory=list)


@dataclass
class PackStats:
    """Size summary of one written package"""

    output_path: str
    entries: int = 0
    raw_size: int = 0
    packed_size: int = 0
    header_size: int = HEADER_SIZE

    @property
    def total_size(self) -> int:
        """Header, field and payload bytes together"""
        return self.packed_size + self.header_size

    @property
    def ratio(self) -> float:
        """Packed size as a percentage of the raw size"""
        return (self.packed_size / self.raw_size * 100) if self.raw_size > 0 else 0


@dataclass
class MaterializeResult:
    """Files written and entries that failed"""

    written: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Outcome of a Binpressor run"""

    pack: Optional[PackStats] = None
    not_packaged: List[str] = field(default_factory=list)
    unpacked: List[str] = field(default_factory=list)
    failed_packages: List[str] = field(default_factory=list)
    written: List[str] = field(default_factory=list)


def split_filename(path: str) -> Tuple[str, str]:
    """Splits a path into the (name, ext) pair stored in a package entry."""
    p = Path(path)
    return p.stem, p.suffix


def _total_size(paths: Iterable[str], console: Console, failed: List[str]) -> int:
    total = 0
    for path in paths:
        try:
            total += os.path.getsize(path)
        except OSError as e:
            console.error(f"Could not read file size: {path} ({e})")
            failed.append(path)
    return total


def collect_descriptors(paths: Iterable[str], console: Optional[Console] = None,
                        header: Header = Header(),
                        max_total_size: int = DEFAULT_MAX_TOTAL_SIZE) -> CollectResult:
    """Loads each file into a pending descriptor.

    The aggregate size is checked before any file is opened. Files whose name
    or extension does not fit the header widths, and files that cannot be
    read, are reported and returned in `rejected`.
    """
    console = console or Console()
    result = CollectResult()

    paths = list(paths)
    total = _total_size(paths, console, result.rejected)
    if total > max_total_size:
        raise OversizedTotalError(total, max_total_size)

    for path in paths:
        if path in result.rejected:
            continue

        name, ext = split_filename(path)
        try:
            encode_text_field(name, header.name_width, NameTooLongError)
            encode_text_field(ext, header.ext_width, ExtTooLongError)
        except (NameTooLongError, ExtTooLongError) as e:
            console.error(f"Not packaging {path}: {e}")
            result.rejected.append(path)
            continue

        try:
            with open(path, 'rb') as f:
                size = os.fstat(f.fileno()).st_size
                data = read_chunked(f, size, progress=console.progress('Reading', name + ext))
        except (OSError, ShortReadError) as e:
            console.error(f"Could not open file for reading: {path} ({e})")
            result.rejected.append(path)
            continue

        console.end_line()
        result.descriptors.append(Descriptor(name=name, ext=ext, data=data, source=path))

    return result


class PackageWriter:
    """Writes pending descriptors into a package, consuming the queue"""

    def __init__(self, console: Optional[Console] = None, header: Header = Header(), codec=None):
        self.console = console or Console()
        self.header = header
        self.codec = codec or lzma_codec

    def write(self, descriptors: Deque[Descriptor], output_path: str) -> PackStats:
        """Compresses and writes every queued descriptor, emptying the queue"""
        stats = PackStats(output_path)

        with open(output_path, 'wb') as f:
            h = self.header
            write_header(f, h.major, h.minor, h.name_width, h.ext_width, h.size_width)

            while descriptors:
                descriptor = descriptors.popleft()
                label = descriptor.filename
                raw_size = descriptor.size

                packed = self.codec.compress(descriptor.data, self.console.progress('Compressing', label))
                descriptor.replace_data(packed, DescriptorState.COMPRESSED)
                del packed

                written = write_entry(
                    f, descriptor, h,
                    self.console.progress('Writing', label, f" - {raw_size} -> {descriptor.size}"),
                )
                self.console.end_line()

                stats.entries += 1
                stats.raw_size += raw_size
                stats.packed_size += descriptor.size
                stats.header_size += written - descriptor.size

                descriptor.replace_data(b'', DescriptorState.WRITTEN)

        return stats


class PackageReader:
    """Parses a package and decompresses its entries"""

    def __init__(self, console: Optional[Console] = None, codec=None):
        self.console = console or Console()
        self.codec = codec or lzma_codec

    def scan(self, path: str) -> Iterator[RecoveredDescriptor]:
        """Yields entries with their payloads still compressed."""
        progress = self.console.progress('Reading', os.path.basename(path))
        with open(path, 'rb') as f:
            header = read_header(f)
            if header is None:
                return

            while True:
                descriptor = read_entry(f, header, progress)
                if descriptor is None:
                    break
                yield descriptor

    def read(self, path: str) -> List[RecoveredDescriptor]:
        """Recovers every entry of a package.

        On a decompression failure the entries recovered so far are dropped
        and the DecompressError propagates.
        """
        recovered = []

        try:
            for descriptor in self.scan(path):
                self.console.status(f"[Reading - 100%] {descriptor.filename}")
                packed_size = descriptor.size

                data = self.codec.decompress(descriptor.data)
                descriptor.replace_data(data, DescriptorState.DECOMPRESSED)
                del data

                self.console.status(
                    f"[Uncompressed - 100%] {descriptor.filename} - {packed_size} -> {descriptor.size}"
                )
                recovered.append(descriptor)
        except lzma_codec.DecompressError:
            recovered.clear()
            raise

        return recovered


def entry_target(output_dir: str, descriptor: Descriptor) -> str:
    """Path for an entry inside output_dir; refuses names that leave it"""
    filename = descriptor.filename
    if filename in ('', '.', '..') or os.path.basename(filename) != filename:
        raise UnsafeEntryNameError(f"refusing to write entry named {filename!r}")
    return os.path.join(output_dir, filename)


class Materializer:
    """Writes recovered descriptors to files, consuming them"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def materialize(self, recovered: List[RecoveredDescriptor], output_dir: str) -> MaterializeResult:
        """Writes each descriptor to output_dir and drops it"""
        result = MaterializeResult()
        queue = deque(recovered)
        recovered.clear()

        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            self.console.error(f"Could not create output directory: {output_dir} ({e})")
            result.failed.extend(descriptor.filename for descriptor in queue)
            return result

        while queue:
            descriptor = queue.popleft()
            label = descriptor.filename

            try:
                target = entry_target(output_dir, descriptor)
                with open(target, 'wb') as f:
                    write_chunked(f, descriptor.data, progress=self.console.progress('Saved', label))
            except (OSError, UnsafeEntryNameError) as e:
                self.console.error(f"Could not open file for writing: {label} ({e})")
                result.failed.append(label)
                continue

            self.console.end_line()
            descriptor.replace_data(b'', DescriptorState.WRITTEN)
            result.written.append(target)

        return result


class Binpressor:
    """Packs files into one package and unpacks packages into a directory"""

    def __init__(self, output_path: str = DEFAULT_PACKAGE_NAME, output_dir: Optional[str] = None,
                 max_total_size: int = DEFAULT_MAX_TOTAL_SIZE, console: Optional[Console] = None,
                 codec=None):
        self.output_path = output_path
        self.output_dir = output_dir
        self.max_total_size = max_total_size
        self.console = console or Console()
        self.codec = codec or lzma_codec
        self.header = Header()

    def resolve_output_dir(self) -> str:
        """Returns the output directory, package/ under the cwd by default"""
        if self.output_dir is not None:
            return self.output_dir
        return os.path.join(os.getcwd(), DEFAULT_OUTPUT_DIR)

    def run(self, files: List[str], packages: List[str]) -> RunReport:
        """Packs files, unpacks packages, then lists what was not packaged"""
        report = RunReport()

        self.package(files, report)
        self.unpackage(packages, report)

        if report.not_packaged:
            self.print_not_packaged(report.not_packaged)

        return report

    def package(self, files: List[str], report: Optional[RunReport] = None) -> Optional[PackStats]:
        """Packs files into output_path and prints the size summary"""
        report = report if report is not None else RunReport()
        if not files:
            return None

        self.console.status("Reading File(s)...")
        try:
            collected = collect_descriptors(files, self.console, self.header, self.max_total_size)
        except OversizedTotalError as e:
            self.console.error(f"Total file size too large to package: {e}")
            self.console.status("Packaging canceled.")
            report.not_packaged.extend(files)
            return None

        report.not_packaged.extend(collected.rejected)
        self.console.status("Reading complete.")
        self.console.status()

        if not collected.descriptors:
            return None

        self.console.status("Packaging File(s)...")
        sources = [d.source for d in collected.descriptors]
        writer = PackageWriter(self.console, self.header, self.codec)
        try:
            stats = writer.write(collected.descriptors, self.output_path)
        except (OSError, PackageError) as e:
            self.console.error(f"Could not write package: {self.output_path} ({e})")
            report.not_packaged.extend(sources)
            return None

        self.console.status()
        self.console.status("Packaging complete.")
        self.console.status()
        self.console.status(f"Data size: {stats.raw_size} bytes.")
        self.console.status(f"Packed size: {stats.packed_size} bytes ({stats.ratio:.1f}%).")
        self.console.status(f"Header size: {stats.header_size} bytes.")
        self.console.status(f"Total size: {stats.total_size} bytes.")

        report.pack = stats
        return stats

    def unpackage(self, packages: List[str], report: Optional[RunReport] = None) -> RunReport:
        """Unpacks each package into the output directory independently"""
        report = report if report is not None else RunReport()
        if not packages:
            return report

        failed = []
        total = _total_size(packages, self.console, failed)
        report.failed_packages.extend(failed)
        if total > self.max_total_size:
            self.console.error(f"Total file size too large to read: {OversizedTotalError(total, self.max_total_size)}")
            self.console.status("Unpackaging canceled.")
            report.failed_packages.extend(p for p in packages if p not in failed)
            return report

        self.console.status("Reading Package File(s)...")
        reader = PackageReader(self.console, self.codec)
        materializer = Materializer(self.console)

        for path in packages:
            if path in failed:
                continue

            try:
                recovered = reader.read(path)
                result = materializer.materialize(recovered, self.resolve_output_dir())
            except IncompatibleVersionError as e:
                self.console.error(f"Incompatible package version: {path} ({e})")
                report.failed_packages.append(path)
                continue
            except lzma_codec.DecompressError as e:
                self.console.error(f"Could not decompress package: {path} ({e.status.name}: {e})")
                report.failed_packages.append(path)
                continue
            except (OSError, PackageError) as e:
                self.console.error(f"Could not read package: {path} ({e})")
                report.failed_packages.append(path)
                continue

            report.written.extend(result.written)
            report.unpacked.append(path)

        self.console.status()
        self.console.status("Unpackaging complete.")
        return report

    def list_package(self, path: str) -> List[Tuple[str, int]]:
        """Prints the entries of a package with their packed sizes."""
        reader = PackageReader(Console(self.console.stream, quiet=True), self.codec)
        entries = []

        print("Filename".ljust(40), "Packed".rjust(12), file=self.console.stream)
        print("-" * 53, file=self.console.stream)

        total = 0
        for entry in reader.scan(path):
            print(entry.filename.ljust(40), str(entry.size).rjust(12), file=self.console.stream)
            total += entry.size
            entries.append((entry.filename, entry.size))

        print("-" * 53, file=self.console.stream)
        print("TOTAL".ljust(40), str(total).rjust(12), file=self.console.stream)
        return entries

    def print_not_packaged(self, paths: List[str]) -> None:
        """Prints the files that were left out of the package"""
        self.console.status()
        self.console.status("Files not packaged:")
        self.console.status("--------")
        for path in paths:
            self.console.status(path)
        self.console.status()
