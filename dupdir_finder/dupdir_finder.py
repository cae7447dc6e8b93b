"""
Duplicate Directory Finder
Reports the largest directories whose contents are duplicated elsewhere.

Directories are fingerprinted from the names and sizes of the files they
contain (file contents are never read), then groups sharing a fingerprint
are reduced so that only maximal duplicates are reported: when two
directories are duplicates, their duplicated children are not listed again.

Author: Generated for Python_Scripts_4_Fun
Python Version: 3.8+
Platform: Linux / macOS / Windows
"""

import argparse
import csv
import hashlib
import json
import logging
import os
import re
import struct
import sys
import threading
from collections import defaultdict
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple


Fingerprint = bytes
PhysicalId = Optional[Tuple[int, int]]


# ============================================================================
# ERRORS
# ============================================================================

class MetadataUnavailable(Exception):
    """The size of a file could not be read. Aborts the whole run."""

    def __init__(self, path: str, error: OSError):
        super().__init__(f"Impossible to access metadata at path: {path} ({error})")
        self.path = path
        self.error = error


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class DirectoryRecord:
    """A directory visited during a walk, built once all its children are done."""
    path: str
    fingerprint: Fingerprint
    children_fingerprints: Tuple[Fingerprint, ...]
    descendant_count: int
    disk_size: int


@dataclass
class GroupSummary:
    """One report row: a member of an accepted duplicate group."""
    root: str
    fingerprint: str
    member_count: int
    disk_size: int
    wasted_space: int
    path: str


def wasted_space(group: List[DirectoryRecord]) -> int:
    """Bytes that would be freed by keeping a single member of the group."""
    return (len(group) - 1) * group[0].disk_size


# ============================================================================
# LEAF FINGERPRINTER
# ============================================================================

class LeafFingerprinter:
    """Fingerprints a single file from its base name and byte size."""

    NO_FILE_NAME = b"no file name"

    @staticmethod
    def file_name(path: str) -> bytes:
        """
        Raw base name of the path.
        Paths without a base name all share the NO_FILE_NAME sentinel.
        """
        name = os.path.basename(path)
        if not name:
            logging.warning(f"No filename at path: {path}")
            return LeafFingerprinter.NO_FILE_NAME
        return os.fsencode(name)

    @staticmethod
    def file_size(path: str) -> int:
        try:
            return os.stat(path).st_size
        except OSError as e:
            raise MetadataUnavailable(path, e) from e

    @staticmethod
    def digest(name: bytes, size: int) -> Fingerprint:
        hasher = hashlib.blake2b()
        hasher.update(name)
        hasher.update(struct.pack("<Q", size))
        return hasher.digest()

    @staticmethod
    def fingerprint(path: str) -> Tuple[Fingerprint, int]:
        """Return the file's fingerprint together with the size it was computed from."""
        size = LeafFingerprinter.file_size(path)
        return LeafFingerprinter.digest(LeafFingerprinter.file_name(path), size), size


# ============================================================================
# INODE GUARD
# ============================================================================

class InodeGuard:
    """
    Remembers every physical directory already descended into.

    One guard is shared by all the roots of a run, so a directory reachable
    through several paths (bind mounts, hardlinked directories) is walked
    only the first time it is met.
    """

    def __init__(self):
        self._visited = set()
        self._lock = threading.Lock()

    @staticmethod
    def physical_id(entry: os.DirEntry) -> PhysicalId:
        """(device, inode) of a directory entry, or None where the platform has no stable one."""
        if os.name != "posix":
            return None
        stat = entry.stat(follow_symlinks=False)
        return (stat.st_dev, stat.st_ino)

    def visit(self, physical_id: PhysicalId) -> bool:
        """True the first time an identity is presented, False afterwards."""
        if physical_id is None:
            return True
        with self._lock:
            if physical_id in self._visited:
                return False
            self._visited.add(physical_id)
            return True

    def __len__(self) -> int:
        return len(self._visited)

    def __bool__(self) -> bool:
        return True


# ============================================================================
# FINGERPRINT INDEX
# ============================================================================

class FingerprintIndex:
    """Directory records of one walk, bucketed by fingerprint in insertion order."""

    def __init__(self):
        self._buckets: Dict[Fingerprint, List[DirectoryRecord]] = {}
        self._lock = threading.Lock()

    def add(self, record: DirectoryRecord):
        with self._lock:
            self._buckets.setdefault(record.fingerprint, []).append(record)

    def buckets(self) -> List[Tuple[Fingerprint, List[DirectoryRecord]]]:
        return list(self._buckets.items())

    def __getitem__(self, fingerprint: Fingerprint) -> List[DirectoryRecord]:
        return self._buckets[fingerprint]

    def __contains__(self, fingerprint: Fingerprint) -> bool:
        return fingerprint in self._buckets

    def __len__(self) -> int:
        return len(self._buckets)


# ============================================================================
# DIRECTORY FINGERPRINTER
# ============================================================================

class DirectoryFingerprinter:
    """
    Recursively fingerprints a directory tree and fills a FingerprintIndex.

    A directory's fingerprint is the BLAKE2b digest of its children's
    fingerprints: sub-directories first, then files, each in the order the
    filesystem lists them. With canonical_order the children are sorted
    before digesting, which makes the result independent of listing order.

    The walk uses one call frame per directory level, so trees nested deeper
    than the interpreter recursion limit raise RecursionError.
    """

    PROGRESS_STEP = 1000

    def __init__(self, index: FingerprintIndex, guard: InodeGuard,
                 canonical_order: bool = False, executor: Optional[Executor] = None):
        self.index = index
        self.guard = guard
        self.canonical_order = canonical_order
        self.executor = executor
        self.directories_walked = 0
        self.files_fingerprinted = 0
        self.entries_skipped = 0
        self.directories_pruned = 0

    def walk(self, root) -> DirectoryRecord:
        """Fingerprint the tree under root. The root itself is never inode-guarded."""
        logging.debug(f"Walking {root}")
        return self._walk_directory(str(root))

    def _list_entries(self, path: str) -> Tuple[List[str], List[str]]:
        """
        Split the immediate entries of a directory into (sub-directories, files).
        Symlinks and special files are ignored, unreadable entries are logged
        and skipped, and sub-directories already seen are pruned here.
        """
        subdirs = []
        files = []
        try:
            with os.scandir(path) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            if self.guard.visit(InodeGuard.physical_id(entry)):
                                subdirs.append(entry.path)
                            else:
                                logging.debug(f"Already visited, skipping: {entry.path}")
                                self.directories_pruned += 1
                        elif entry.is_file(follow_symlinks=False):
                            files.append(entry.path)
                    except OSError as e:
                        logging.warning(f"Cannot access {entry.path}: {e}")
                        self.entries_skipped += 1
        except OSError as e:
            logging.warning(f"Cannot list {path}: {e}")
            self.entries_skipped += 1
        return subdirs, files

    def _map(self, func: Callable, items: List[str]) -> Iterable:
        if self.executor is None:
            return map(func, items)
        return self.executor.map(func, items)

    def _digest(self, children: List[Fingerprint]) -> Fingerprint:
        hasher = hashlib.blake2b()
        for child in (sorted(children) if self.canonical_order else children):
            hasher.update(child)
        return hasher.digest()

    def _walk_directory(self, path: str) -> DirectoryRecord:
        subdirs, files = self._list_entries(path)

        children: List[Fingerprint] = []
        descendant_count = 0
        disk_size = 0

        for subdir in subdirs:
            child = self._walk_directory(subdir)
            children.append(child.fingerprint)
            descendant_count += 1 + child.descendant_count
            disk_size += child.disk_size

        for fingerprint, size in self._map(LeafFingerprinter.fingerprint, files):
            children.append(fingerprint)
            descendant_count += 1
            disk_size += size
            self.files_fingerprinted += 1

        record = DirectoryRecord(
            path=path,
            fingerprint=self._digest(children),
            children_fingerprints=tuple(children),
            descendant_count=descendant_count,
            disk_size=disk_size
        )
        self.index.add(record)

        self.directories_walked += 1
        if self.directories_walked % self.PROGRESS_STEP == 0:
            logging.info(f"Walked {self.directories_walked} directories...")

        return record


# ============================================================================
# DUPLICATE SET REDUCER
# ============================================================================

def reduce_duplicates(index: FingerprintIndex, min_size: int) -> List[List[DirectoryRecord]]:
    """
    Reduce the buckets of an index to the maximal duplicate groups.

    Buckets are visited from the deepest directories down. Every duplicate
    bucket adds its size to the expected count of each of its children's
    fingerprints; a bucket whose size equals the count already expected for
    it is entirely made of copies inside an ancestor group and is dropped.
    Empty directories and groups smaller than min_size are never reported,
    but still account for their children.
    """
    pairs = sorted(index.buckets(), key=lambda pair: pair[1][0].descendant_count, reverse=True)

    expected: Dict[Fingerprint, int] = defaultdict(int)
    result = []

    for fingerprint, bucket in pairs:
        # A single directory explains none of its children's copies
        if len(bucket) == 1:
            continue

        accept = expected.get(fingerprint) != len(bucket)

        representative = bucket[0]
        for child in representative.children_fingerprints:
            expected[child] += len(bucket)

        if representative.descendant_count == 0 or representative.disk_size < min_size:
            accept = False

        if accept:
            result.append(bucket)

    return result


def find_duplicate_directories(root, min_size: int = 1, guard: Optional[InodeGuard] = None,
                               canonical_order: bool = False,
                               executor: Optional[Executor] = None) -> List[List[DirectoryRecord]]:
    """Walk one root with a fresh index and return its maximal duplicate groups."""
    index = FingerprintIndex()
    fingerprinter = DirectoryFingerprinter(
        index,
        guard if guard is not None else InodeGuard(),
        canonical_order=canonical_order,
        executor=executor
    )
    fingerprinter.walk(root)

    logging.info(f"Walked {fingerprinter.directories_walked} directories and "
                 f"{fingerprinter.files_fingerprinted} files under {root}")
    if fingerprinter.entries_skipped:
        logging.info(f"{fingerprinter.entries_skipped} unreadable entries skipped")
    if fingerprinter.directories_pruned:
        logging.debug(f"{fingerprinter.directories_pruned} directories already visited")

    return reduce_duplicates(index, min_size)


# ============================================================================
# SIZES
# ============================================================================

SIZE_UNITS = "KMGTPE"
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*([KMGTPE]?)(I?B)?\s*$", re.IGNORECASE)


def parse_size(text: str) -> int:
    """
    Parse a human-readable byte quantity such as "512", "10K", "1.5 MiB" or "2gb".
    All units are binary (1K = 1024 bytes).
    """
    match = _SIZE_PATTERN.match(text)
    if not match:
        raise ValueError(f"{text!r} is not a byte size")

    number, unit, suffix = match.groups()
    if suffix and suffix.upper() == "IB" and not unit:
        raise ValueError(f"{text!r} is not a byte size")

    multiplier = 1024 ** (SIZE_UNITS.index(unit.upper()) + 1) if unit else 1
    if "." in number:
        return int(float(number) * multiplier)
    return int(number) * multiplier


def format_size(size_bytes: int) -> str:
    """Format size with one decimal and a binary unit."""
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} EiB"


# ============================================================================
# REPORTER
# ============================================================================

class Reporter:
    """Prints duplicate groups and optionally exports them as CSV and JSON."""

    def __init__(self, report_dir: Optional[str] = None):
        self.report_dir = Path(report_dir) if report_dir else None
        self.rows: List[GroupSummary] = []
        self.group_count = 0

    def print_root(self, root: str):
        print(f"Checking {root} directory")
        print()

    def add_groups(self, root: str, groups: List[List[DirectoryRecord]]):
        """Print the groups found under root and keep them for the exported reports."""
        for group in groups:
            wasted = wasted_space(group)
            print(f"Duplicate of {len(group)} directories")
            print(f"    Space wasted {format_size(wasted)}")
            for record in group:
                print(record.path)
                self.rows.append(GroupSummary(
                    root=root,
                    fingerprint=record.fingerprint.hex(),
                    member_count=len(group),
                    disk_size=record.disk_size,
                    wasted_space=wasted,
                    path=record.path
                ))
            print()
        print()
        self.group_count += len(groups)

    def total_wasted(self) -> int:
        seen = {}
        for row in self.rows:
            seen[(row.root, row.fingerprint)] = row.wasted_space
        return sum(seen.values())

    def write_reports(self):
        """Write CSV, JSON and summary reports to the report directory."""
        if self.report_dir is None:
            return
        self.report_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        csv_path = self.report_dir / f"duplicate_dirs_{timestamp}.csv"
        with open(csv_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=[field.name for field in fields(GroupSummary)])
            writer.writeheader()
            for row in self.rows:
                writer.writerow(asdict(row))

        logging.info(f"CSV report: {csv_path}")

        json_path = self.report_dir / f"duplicate_dirs_{timestamp}.json"
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump([asdict(row) for row in self.rows], f, indent=2)

        logging.info(f"JSON report: {json_path}")

        summary_path = self.report_dir / f"summary_{timestamp}.txt"
        with open(summary_path, 'w', encoding='utf-8') as f:
            f.write("Duplicate Directory Finder Summary\n")
            f.write(f"Generated: {datetime.now().isoformat()}\n")
            f.write("=" * 60 + "\n\n")
            f.write(f"Duplicate groups: {self.group_count}\n")
            f.write(f"Duplicated directories: {len(self.rows)}\n")
            f.write(f"Space wasted: {format_size(self.total_wasted())}\n")

        logging.info(f"Summary: {summary_path}")


# ============================================================================
# MAIN ORCHESTRATOR
# ============================================================================

class DuplicateDirectoryFinder:
    """Runs the walk and the reduction for every root, sharing one inode guard."""

    def __init__(self, args):
        self.args = args
        self.guard = InodeGuard()
        self.reporter = Reporter(args.report_dir)

    def check_root(self, root: str, executor: Optional[Executor] = None) -> List[List[DirectoryRecord]]:
        """Find and report the duplicate groups of one root."""
        self.reporter.print_root(root)
        groups = find_duplicate_directories(
            root,
            min_size=self.args.min_size,
            guard=self.guard,
            canonical_order=self.args.canonical_order,
            executor=executor
        )
        logging.info(f"Found {len(groups)} duplicate groups under {root}")
        self.reporter.add_groups(root, groups)
        return groups

    def run(self):
        """Main execution flow."""
        logging.info("=" * 60)
        logging.info("Duplicate Directory Finder")
        logging.info("=" * 60)
        logging.info(f"Roots: {', '.join(self.args.roots)}")
        logging.info(f"Minimum size: {format_size(self.args.min_size)}")
        logging.info(f"Canonical order: {self.args.canonical_order}")
        logging.info("=" * 60)

        executor = ThreadPoolExecutor(max_workers=self.args.workers) if self.args.workers > 1 else None
        try:
            for root in self.args.roots:
                self.check_root(root, executor)
        finally:
            if executor is not None:
                executor.shutdown()

        self.reporter.write_reports()


# ============================================================================
# CLI
# ============================================================================

def _byte_size(text: str) -> int:
    try:
        return parse_size(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _worker_count(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("at least one worker is required")
    return value


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="dupdir-finder",
        description="A duplicate directory finder.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report duplicated directories under a single root
  dupdir-finder ~/backups

  # Several roots, ignoring duplicates smaller than 10 MiB
  dupdir-finder -m 10M /mnt/disk1 /mnt/disk2

  # Also export CSV/JSON reports
  dupdir-finder --report-dir ./reports ~/photos
        """
    )

    parser.add_argument('roots', nargs='+', metavar='root',
                        help='Root directory or directories to search')

    parser.add_argument('-m', '--min-size', type=_byte_size, default=1,
                        help='Minimum directory size to report, e.g. 512, 10K, 1.5G (default: 1)')

    parser.add_argument('--canonical-order', action='store_true',
                        help='Sort children before fingerprinting, so listing order does not matter')

    parser.add_argument('--workers', type=_worker_count, default=1,
                        help='Number of worker threads for file fingerprinting (default: 1)')

    parser.add_argument('--report-dir', default=None,
                        help='Directory for CSV/JSON reports (default: no reports)')

    parser.add_argument('--log-file', default=None,
                        help='Also write the log to this file')

    parser.add_argument('--verbose', action='store_true',
                        help='Enable verbose logging')

    return parser.parse_args(argv)


def setup_logging(verbose: bool, log_file: Optional[str] = None):
    """Setup logging configuration. The report goes to stdout, the log to stderr."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    for root in args.roots:
        if not Path(root).is_dir():
            logging.error(f"Root path is not a directory: {root}")
            sys.exit(1)

    try:
        finder = DuplicateDirectoryFinder(args)
        finder.run()
    except MetadataUnavailable as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)
    except RecursionError:
        logging.error("Fatal error: directory nesting is deeper than the recursion limit")
        sys.exit(1)
    except KeyboardInterrupt:
        logging.warning("\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logging.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
