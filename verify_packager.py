"""
End-to-end check of Binpressor

Full cycle: create files -> pack -> inspect header -> list -> unpack -> compare
"""

import os
import sys
import tempfile

from console import Console
from package_format import HEADER_SIZE, NAME_LIMIT, Header
from packager import Binpressor


def verify_packager(console: Console = None) -> bool:
    console = console or Console()

    print("=" * 70)
    print("BINPRESSOR END-TO-END CHECK")
    print("=" * 70)

    with tempfile.TemporaryDirectory() as temp_dir:
        # Step 1: source files
        print("\n1. Creating test files...")
        print("-" * 70)

        files_to_create = {
            'file1.txt': ("Hello, world!\n" * 100 + "First test file.\n").encode('utf-8'),
            'file2.txt': ("The quick brown fox\n" * 80 + "Second file.\n").encode('utf-8'),
            'image.raw': bytes(range(256)) * 40,
            'empty.dat': b'',
            'x' * NAME_LIMIT + '.txt': b'never packed',
        }

        source_dir = os.path.join(temp_dir, 'source')
        os.makedirs(source_dir)

        test_files = []
        for filename, content in files_to_create.items():
            filepath = os.path.join(source_dir, filename)
            with open(filepath, 'wb') as f:
                f.write(content)
            test_files.append(filepath)
            print(f"   {filename[:40]}: {len(content):,} bytes")

        # Step 2: pack
        print("\n2. Packing...")
        print("-" * 70)

        package_path = os.path.join(temp_dir, 'package.bin')
        output_dir = os.path.join(temp_dir, 'package')
        binpressor = Binpressor(output_path=package_path, output_dir=output_dir, console=console)

        stats = binpressor.package(test_files)
        if stats is None or not os.path.isfile(package_path):
            print("   error: package was not created")
            return False

        if stats.entries != len(files_to_create) - 1:
            print(f"   error: expected {len(files_to_create) - 1} entries, got {stats.entries}")
            return False

        # Step 3: header
        print("\n3. Checking header...")
        print("-" * 70)

        with open(package_path, 'rb') as f:
            prologue = f.read(HEADER_SIZE)

        if prologue != Header().serialize():
            print(f"   error: unexpected header {prologue!r}")
            return False
        print(f"   header OK: {prologue!r}")

        # Step 4: list
        print("\n4. Listing package...")
        print("-" * 70)

        listed = binpressor.list_package(package_path)
        if len(listed) != stats.entries:
            print("   error: listing does not match the packed entries")
            return False

        # Step 5: unpack
        print("\n5. Unpacking...")
        print("-" * 70)

        report = binpressor.unpackage([package_path])
        if report.failed_packages:
            print(f"   error: failed packages {report.failed_packages}")
            return False

        # Step 6: compare
        print("\n6. Comparing files...")
        print("-" * 70)

        all_match = True
        for filename, original in files_to_create.items():
            extracted_path = os.path.join(output_dir, filename)
            packed = len(os.path.splitext(filename)[0]) < NAME_LIMIT

            if not packed:
                if os.path.exists(extracted_path):
                    print(f"   {filename[:40]}: should not have been packed")
                    all_match = False
                continue

            if not os.path.isfile(extracted_path):
                print(f"   {filename}: MISSING")
                all_match = False
                continue

            with open(extracted_path, 'rb') as f:
                extracted = f.read()

            if extracted == original:
                print(f"   {filename}: identical")
            else:
                print(f"   {filename}: DIFFERS ({len(original)} -> {len(extracted)} bytes)")
                all_match = False

        if not all_match:
            return False

        print("\n" + "=" * 70)
        print(f"All checks passed: {stats.entries} entries, "
              f"{stats.raw_size:,} -> {stats.total_size:,} bytes ({stats.ratio:.1f}%)")
        print("=" * 70)

        return True


if __name__ == '__main__':
    try:
        success = verify_packager()
        sys.exit(0 if success else 1)
    except Exception as e:
        print(f"\n  Fatal error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
