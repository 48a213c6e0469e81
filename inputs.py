"""
Sorting command line paths into files to pack, packages to unpack and
directories to expand.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from package_format import PACKAGE_EXTENSION


@dataclass
class ClassifiedPaths:
    """Command line paths sorted by what to do with them"""

    files: List[str] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)


def expand_directory(folder: str) -> List[str]:
    """Returns every regular file below folder, at any depth, in sorted order."""
    found = []
    for root, dirs, files in os.walk(folder):
        dirs.sort()
        for name in sorted(files):
            path = os.path.join(root, name)
            if os.path.isfile(path):
                found.append(path)
    return found


def classify_paths(paths: Iterable[str], package_extension: str = PACKAGE_EXTENSION) -> ClassifiedPaths:
    """Sorts paths into files to pack, packages to unpack and invalid paths"""
    result = ClassifiedPaths()

    for path in paths:
        if os.path.isdir(path):
            # Everything found inside a directory is packed, packages included.
            result.files.extend(expand_directory(path))
        elif os.path.isfile(path):
            if Path(path).suffix == package_extension:
                result.packages.append(path)
            else:
                result.files.append(path)
        else:
            result.invalid.append(path)

    return result
