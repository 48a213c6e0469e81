"""
Command line interface for Binpressor.
"""

import argparse
import sys

from console import Console
from inputs import classify_paths
from package_format import (
    DEFAULT_MAX_TOTAL_SIZE,
    DEFAULT_PACKAGE_NAME,
    MAJOR_VERSION,
    MINOR_VERSION,
    PackageError,
)
from packager import Binpressor


def build_parser() -> argparse.ArgumentParser:
    """Creates the command line parser"""
    parser = argparse.ArgumentParser(
        prog='binpressor',
        description='Binary packaging tool: bundles files into one LZMA-compressed package',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run file1.txt file2.png assets/
  python main.py run package.bin -d ./restored
  python main.py list package.bin
        """
    )
    parser.add_argument('-q', '--quiet', action='store_true', help='Only print errors')

    subparsers = parser.add_subparsers(dest='command', help='Command')

    run_parser = subparsers.add_parser(
        'run', help='Pack files and folders, unpack .bin packages'
    )
    run_parser.add_argument('paths', nargs='+', help='Files, folders and packages')
    run_parser.add_argument('-o', '--output', default=DEFAULT_PACKAGE_NAME,
                            help=f'Package to create (default: {DEFAULT_PACKAGE_NAME})')
    run_parser.add_argument('-d', '--directory', default=None,
                            help='Output folder for unpacked files (default: ./package)')
    run_parser.add_argument('--max-total-size', type=int, default=DEFAULT_MAX_TOTAL_SIZE,
                            help='Refuse to pack or unpack more than this many bytes')

    list_parser = subparsers.add_parser('list', help='List package contents')
    list_parser.add_argument('packages', nargs='+', help='Packages to list')

    return parser


def main(argv=None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    console = Console(quiet=args.quiet)
    console.status(f"Binpressor - V{MAJOR_VERSION}.{MINOR_VERSION}")
    console.status("-" * 34)

    try:
        if args.command == 'run':
            classified = classify_paths(args.paths)
            for path in classified.invalid:
                console.error(f"Not a file or folder: {path}")

            binpressor = Binpressor(
                output_path=args.output,
                output_dir=args.directory,
                max_total_size=args.max_total_size,
                console=console,
            )
            binpressor.run(classified.files, classified.packages)

        elif args.command == 'list':
            binpressor = Binpressor(console=console)
            for package in args.packages:
                try:
                    binpressor.list_package(package)
                except (OSError, PackageError) as e:
                    console.error(f"Could not list package: {package} ({e})")

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
