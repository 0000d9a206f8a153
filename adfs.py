"""
adfs.py — read-only access to Acorn ADFS disk images.

Decodes old-map ADFS floppy and hard-disc images into a directory
catalogue and extracts file contents by dotted path.

Image layout (256-byte sectors):
    Sectors 0-1    Free space map
    Sectors 2-6    Root directory ($)
    Sectors 7+     Files and subdirectories

Floppy images (80 tracks/side, 16 sectors/track, double-sided) store
side 0 and side 1 tracks alternately; hard-disc images are linear.

Directory table (5 sectors, 1280 bytes):
    +0x000  sequence[1]      master sequence number
    +0x001  magic[4]         b"Hugo" (or b"Nick")
    +0x005  entries[47×26]   terminated by a slot whose first byte is 0
    +0x4CC  name[10]         directory name
    +0x4D6  parent[3]        LE24 sector of the parent directory
    +0x4D9  title[19]        directory title
    +0x4FA  sequence[1]      repeat of +0x000
    +0x4FB  magic[4]         repeat of +0x001

Directory entry (26 bytes):
    +0   name[10]       7-bit ASCII, CR-terminated; top bits are
                        R (byte 0), W (1), L (2), D (3), E (4)
    +10  load[4]        u32 LE
    +14  exec[4]        u32 LE
    +18  length[4]      u32 LE
    +22  sector[3]      u24 LE
    +25  sequence[1]
"""

from __future__ import annotations

import enum
import logging
import os
import struct
import sys
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from byte_sources import ByteSource, FileSource, MemorySource, ReadError

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

SECTOR_SIZE = 256
TRACKS_PER_SIDE = 80
SECTORS_PER_TRACK = 16

ROOT_SECTOR = 2
DIR_SECTORS = 5
DIR_ENTRIES_START = 5
DIR_ENTRY_SIZE = 26
MAX_ENTRIES = 47

NAME_LEN = 10
NAME_END = 13               # CR

DIR_MAGICS = (b"Hugo", b"Nick")
DIR_FOOT_NAME = 0x4CC
DIR_FOOT_PARENT = 0x4D6
DIR_FOOT_TITLE = 0x4D9
DIR_TITLE_LEN = 19
DIR_FOOT_SEQUENCE = 0x4FA
DIR_FOOT_MAGIC = 0x4FB

DEFAULT_MAX_DEPTH = 32
DEFAULT_MAX_FILE_SIZE = 16 * 1024 * 1024


def _env_int(name: str, default: int) -> int:
    """Integer from environment variable *name*, or *default*."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer, using %d",
                       name, raw, default)
        return default


MAX_FILE_SIZE = _env_int("ADFS_MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE)


# ── Errors ─────────────────────────────────────────────────────────────

class AdfsError(Exception):
    """Base for catalogue and path errors."""
    pass

class NotFound(AdfsError, FileNotFoundError):
    pass

class NotADirectory(AdfsError, NotADirectoryError):
    pass

class IsADirectory(AdfsError, IsADirectoryError):
    pass

class InvalidSize(AdfsError, ValueError):
    pass

class DirectoryTooDeep(AdfsError):
    pass

class DirectoryLoop(AdfsError):
    """A directory table is reachable by more than one path."""
    pass


# ── Data classes ───────────────────────────────────────────────────────

class AddressingMode(enum.Enum):
    """How logical sectors map onto image bytes."""
    INTERLEAVED = "interleaved"     # double-sided floppy
    LINEAR = "linear"               # hard disc


class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "dir"


class Access(enum.IntFlag):
    """Access bits, numbered as in .inf attribute bytes."""
    READ = 0x01
    WRITE = 0x02
    EXECUTE = 0x04
    LOCKED = 0x08

    def __str__(self) -> str:
        return "".join(ch for ch, bit in (("L", Access.LOCKED),
                                          ("E", Access.EXECUTE),
                                          ("W", Access.WRITE),
                                          ("R", Access.READ))
                       if self & bit)


@dataclass
class CatalogueEntry:
    """One 26-byte directory slot."""
    name: str
    kind: EntryKind
    load_address: int
    exec_address: int
    size: int
    start_sector: int
    access: Access = Access(0)
    sequence: int = 0
    children: Directory | None = field(default=None, repr=False)

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE


@dataclass
class FileStat:
    size: int
    start_sector: int
    load_address: int
    exec_address: int
    access: Access


class Directory(Mapping):
    """Decoded directory: entries in slot order, keyed by name.

    Indexing is exact; ``find()`` matches case-insensitively.  When two
    slots collide, the earlier one wins for both.
    """

    def __init__(self, entries=(), *, sector: int = ROOT_SECTOR,
                 name: str = "$", title: str = "",
                 parent_sector: int = 0, sequence: int = 0):
        self.sector = sector
        self.name = name
        self.title = title
        self.parent_sector = parent_sector
        self.sequence = sequence
        self._entries: list[CatalogueEntry] = []
        self._by_name: dict[str, CatalogueEntry] = {}
        self._folded: dict[str, CatalogueEntry] = {}
        for entry in entries:
            self._add(entry)

    def _add(self, entry: CatalogueEntry):
        self._entries.append(entry)
        folded = entry.name.lower()
        if folded in self._folded:
            logger.warning("Duplicate name %r in directory at sector %d; "
                           "keeping %r", entry.name, self.sector,
                           self._folded[folded].name)
        self._by_name.setdefault(entry.name, entry)
        self._folded.setdefault(folded, entry)

    @property
    def entries(self) -> list[CatalogueEntry]:
        """Every decoded slot, including shadowed duplicates."""
        return list(self._entries)

    def find(self, name: str) -> CatalogueEntry | None:
        """Case-insensitive lookup; None if absent."""
        return self._folded.get(name.lower())

    def __getitem__(self, name: str) -> CatalogueEntry:
        return self._by_name[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_name)

    def __len__(self) -> int:
        return len(self._by_name)

    def __repr__(self) -> str:
        return (f"Directory(sector={self.sector}, name={self.name!r}, "
                f"entries={list(self._by_name)!r})")


@dataclass
class ResolvedEntry:
    """Result of walking a dotted path.

    *parents* are the directory entries descended through, outermost
    first; every one of them is a directory.
    """
    entry: CatalogueEntry
    parents: tuple[CatalogueEntry, ...] = ()

    @property
    def path(self) -> str:
        return ".".join([p.name for p in self.parents] + [self.entry.name])


# ── Sector addressing ──────────────────────────────────────────────────

def sector_offset(sector: int, mode: AddressingMode) -> int:
    """Byte offset of logical *sector* within the image.

    Interleaved images put track N of side 0 at physical track 2N and
    track N of side 1 at 2N+1.  Logical track 79 takes the side-1
    branch and yields a negative offset, which no read can satisfy.
    """
    if sector < 0:
        raise ValueError(f"Negative sector number {sector}")
    if mode is AddressingMode.LINEAR:
        return sector * SECTOR_SIZE

    track = sector // SECTORS_PER_TRACK
    in_track = sector - SECTORS_PER_TRACK * track
    if track < TRACKS_PER_SIDE - 1:
        return (2 * track * SECTORS_PER_TRACK * SECTOR_SIZE
                + in_track * SECTOR_SIZE)
    return (SECTORS_PER_TRACK * SECTOR_SIZE
            + 2 * (track - TRACKS_PER_SIDE) * SECTORS_PER_TRACK * SECTOR_SIZE
            + in_track * SECTOR_SIZE)


class SectorAddressor:
    """Reads logical sectors from a ByteSource."""

    def __init__(self, source: ByteSource, mode: AddressingMode):
        self.source = source
        self.mode = mode

    def sector_offset(self, sector: int) -> int:
        return sector_offset(sector, self.mode)

    def read_sector(self, sector: int) -> bytes:
        return self.source.read_range(self.sector_offset(sector),
                                      SECTOR_SIZE)

    def read_sectors(self, start: int, count: int) -> bytes:
        """Concatenate *count* logical sectors from *start* upwards.

        Each sector is addressed on its own, so an interleaved run that
        crosses a track boundary is still returned in logical order.
        """
        return b"".join(self.read_sector(start + i) for i in range(count))


# ── Catalogue decoding ─────────────────────────────────────────────────

def _u24(raw: bytes, offset: int) -> int:
    return int.from_bytes(raw[offset : offset + 3], "little")


def _footer_string(raw: bytes, offset: int, length: int) -> str:
    chars = []
    for b in raw[offset : offset + length]:
        c = b & 0x7F
        if c in (0, NAME_END):
            break
        chars.append(chr(c))
    return "".join(chars)


def _read_entry(block: bytes, offset: int) -> CatalogueEntry | None:
    """Parse a 26-byte slot.  Returns None for the end-of-table marker."""
    raw = block[offset : offset + DIR_ENTRY_SIZE]
    if raw[0] == 0:
        return None

    chars = []
    for b in raw[:NAME_LEN]:
        c = b & 0x7F
        if c == NAME_END:
            break
        chars.append(chr(c))

    access = Access(0)
    if raw[0] & 0x80:
        access |= Access.READ
    if raw[1] & 0x80:
        access |= Access.WRITE
    if raw[2] & 0x80:
        access |= Access.LOCKED
    if raw[4] & 0x80:
        access |= Access.EXECUTE

    kind = EntryKind.DIRECTORY if raw[3] & 0x80 else EntryKind.FILE
    load, exec_, size = struct.unpack_from("<III", raw, 10)
    return CatalogueEntry(
        name="".join(chars), kind=kind,
        load_address=load, exec_address=exec_, size=size,
        start_sector=_u24(raw, 22), access=access, sequence=raw[25],
    )


def decode_directory(sectors: SectorAddressor,
                     start_sector: int = ROOT_SECTOR, *,
                     max_depth: int = DEFAULT_MAX_DEPTH,
                     _depth: int = 0,
                     _seen: set[int] | None = None) -> Directory:
    """Decode the directory table at *start_sector* and everything below it.

    Any read failure aborts the whole decode; no partial tree is
    returned.  Raises DirectoryTooDeep if nesting exceeds *max_depth*, and
    DirectoryLoop if one table is reached twice, so every table is read
    at most once per decode.
    """
    if _seen is None:
        _seen = set()
    if start_sector in _seen:
        raise DirectoryLoop(
            f"Directory table at sector {start_sector} is reached twice")
    _seen.add(start_sector)
    if _depth > max_depth:
        raise DirectoryTooDeep(
            f"Directory nesting exceeds {max_depth} levels "
            f"at sector {start_sector}")

    block = sectors.read_sectors(start_sector, DIR_SECTORS)

    head_magic = block[1:5]
    foot_magic = block[DIR_FOOT_MAGIC : DIR_FOOT_MAGIC + 4]
    if head_magic not in DIR_MAGICS or foot_magic != head_magic:
        logger.warning("Directory at sector %d has bad signature "
                       "(head=%r foot=%r)", start_sector,
                       head_magic, foot_magic)
    if block[0] != block[DIR_FOOT_SEQUENCE]:
        logger.warning("Directory at sector %d is broken: sequence %d "
                       "at head, %d at foot", start_sector, block[0],
                       block[DIR_FOOT_SEQUENCE])

    directory = Directory(
        sector=start_sector,
        name=_footer_string(block, DIR_FOOT_NAME, NAME_LEN),
        title=_footer_string(block, DIR_FOOT_TITLE, DIR_TITLE_LEN),
        parent_sector=_u24(block, DIR_FOOT_PARENT),
        sequence=block[0],
    )

    for i in range(MAX_ENTRIES):
        entry = _read_entry(block, DIR_ENTRIES_START + i * DIR_ENTRY_SIZE)
        if entry is None:
            break
        if entry.is_dir:
            entry.children = decode_directory(
                sectors, entry.start_sector,
                max_depth=max_depth, _depth=_depth + 1,
                _seen=_seen)
        directory._add(entry)

    logger.debug("Decoded directory %r at sector %d: %d entries",
                 directory.name, start_sector, len(directory.entries))
    return directory


def walk(directory: Directory, prefix: str = "$"
         ) -> Iterator[tuple[str, CatalogueEntry]]:
    """Yield (dotted_path, entry) depth-first, in slot order."""
    for entry in directory.entries:
        path = f"{prefix}.{entry.name}" if prefix else entry.name
        yield path, entry
        if entry.is_dir and entry.children is not None:
            yield from walk(entry.children, path)


# ── Path resolution ────────────────────────────────────────────────────

def _root_entry(root: Directory) -> CatalogueEntry:
    return CatalogueEntry(
        name="$", kind=EntryKind.DIRECTORY, load_address=0, exec_address=0,
        size=DIR_SECTORS * SECTOR_SIZE, start_sector=root.sector,
        children=root)


def resolve_path(root: Directory, path: str) -> ResolvedEntry:
    """Walk a dotted *path* from *root*, matching names case-insensitively.

    A bare ``$`` resolves to the root itself, as a directory entry; a
    leading ``$.`` is skipped.  Raises NotFound if a component is
    missing, NotADirectory if a non-final component is a file.  The
    final entry may be of either kind.
    """
    if path == "$":
        return ResolvedEntry(_root_entry(root))
    parts = path.split(".")
    if len(parts) > 1 and parts[0] == "$":
        parts = parts[1:]

    current = root
    parents: list[CatalogueEntry] = []
    for i, part in enumerate(parts):
        entry = current.find(part)
        if entry is None:
            where = ".".join(["$"] + [p.name for p in parents])
            raise NotFound(f"{part!r} not found in {where} (path {path!r})")
        if i == len(parts) - 1:
            return ResolvedEntry(entry, tuple(parents))
        if not entry.is_dir:
            raise NotADirectory(
                f"{entry.name!r} is a file, cannot descend (path {path!r})")
        parents.append(entry)
        current = entry.children if entry.children is not None else Directory()


# ── File extraction ────────────────────────────────────────────────────

def extract_file(sectors: SectorAddressor, start_sector: int, size: int, *,
                 max_size: int = MAX_FILE_SIZE) -> bytes:
    """Read exactly *size* bytes stored from *start_sector* onwards."""
    if size < 0 or size > max_size:
        raise InvalidSize(
            f"File size {size} outside 0..{max_size} "
            f"(sector {start_sector})")
    whole, remainder = divmod(size, SECTOR_SIZE)
    data = sectors.read_sectors(start_sector, whole)
    if remainder:
        data += sectors.read_sector(start_sector + whole)[:remainder]
    logger.debug("Extracted %d bytes from sector %d", size, start_sector)
    return data


# ── Image-level reader ─────────────────────────────────────────────────

class AdfsReader:
    """Read-only view of one ADFS image.

    Give exactly one of *path* or *data*.  The root catalogue is decoded
    on first use and cached; ``force_refresh()`` decodes it again.
    """

    def __init__(self, path: str | os.PathLike | None = None,
                 data: bytes | bytearray | None = None,
                 mode: AddressingMode = AddressingMode.INTERLEAVED, *,
                 max_file_size: int = MAX_FILE_SIZE,
                 max_depth: int = DEFAULT_MAX_DEPTH):
        if (path is None) == (data is None):
            raise ValueError("Give exactly one of path or data")
        if path is not None:
            self.source: ByteSource = FileSource(path)
        else:
            self.source = MemorySource(data)
        self.mode = AddressingMode(mode)
        self.sectors = SectorAddressor(self.source, self.mode)
        self.max_file_size = max_file_size
        self.max_depth = max_depth
        self._catalogue: Directory | None = None
        self._lock = threading.Lock()

    @classmethod
    def floppy(cls, path: str | os.PathLike | None = None,
               data: bytes | bytearray | None = None,
               **kwargs) -> "AdfsReader":
        """Interleaved double-sided floppy image, from a file or buffer."""
        return cls(path, data, AddressingMode.INTERLEAVED, **kwargs)

    @classmethod
    def hard_disk(cls, path: str | os.PathLike, **kwargs) -> "AdfsReader":
        """Linear hard-disc image.  Always file-backed."""
        return cls(path=path, mode=AddressingMode.LINEAR, **kwargs)

    # ── catalogue ──────────────────────────────────────────────────

    def _decode(self, start_sector: int) -> Directory:
        return decode_directory(self.sectors, start_sector,
                                max_depth=self.max_depth)

    def get_catalogue(self, start_sector: int = ROOT_SECTOR,
                      use_cache: bool = True) -> Directory:
        """Decoded directory tree rooted at *start_sector*.

        Only the root with *use_cache* set is served from (and stored
        in) the cache.
        """
        if start_sector != ROOT_SECTOR or not use_cache:
            return self._decode(start_sector)
        with self._lock:
            if self._catalogue is None:
                self._catalogue = self._decode(ROOT_SECTOR)
            return self._catalogue

    def force_refresh(self) -> Directory:
        """Discard the cached root catalogue and decode it again."""
        fresh = self._decode(ROOT_SECTOR)
        with self._lock:
            self._catalogue = fresh
        return fresh

    def walk(self) -> Iterator[tuple[str, CatalogueEntry]]:
        return walk(self.get_catalogue())

    # ── paths ──────────────────────────────────────────────────────

    def resolve(self, path: str) -> ResolvedEntry:
        return resolve_path(self.get_catalogue(), path)

    def _resolve_file(self, path: str) -> CatalogueEntry:
        entry = self.resolve(path).entry
        if entry.is_dir:
            raise IsADirectory(f"{path!r} is a directory")
        return entry

    def read_entry(self, entry: CatalogueEntry) -> bytes:
        """Contents of a file entry already taken from the catalogue."""
        if entry.is_dir:
            raise IsADirectory(f"{entry.name!r} is a directory")
        return extract_file(self.sectors, entry.start_sector, entry.size,
                            max_size=self.max_file_size)

    def get_file(self, path: str) -> bytes:
        """Contents of the file at dotted *path*."""
        return self.read_entry(self._resolve_file(path))

    def get_stat(self, path: str) -> FileStat:
        entry = self._resolve_file(path)
        return FileStat(size=entry.size, start_sector=entry.start_sector,
                        load_address=entry.load_address,
                        exec_address=entry.exec_address,
                        access=entry.access)

    def is_file(self, path: str) -> bool:
        """True if *path* names a file.

        Missing paths, and paths that run through a file, give False
        rather than an error.  Use get_stat() to tell the cases apart.
        """
        try:
            return self.resolve(path).entry.is_file
        except (NotFound, NotADirectory):
            return False

    def is_dir(self, path: str) -> bool:
        """True if *path* names a directory.  Never raises for bad paths."""
        try:
            return self.resolve(path).entry.is_dir
        except (NotFound, NotADirectory):
            return False


# ── Convenience functions ──────────────────────────────────────────────

def get_catalogue(image_path: str | os.PathLike,
                  mode: AddressingMode = AddressingMode.INTERLEAVED
                  ) -> Directory:
    """Open an image file and decode its root catalogue."""
    return AdfsReader(image_path, mode=mode).get_catalogue()


def read_file(image_path: str | os.PathLike, name: str,
              mode: AddressingMode = AddressingMode.INTERLEAVED) -> bytes:
    """Open an image file and read the file at dotted path *name*."""
    return AdfsReader(image_path, mode=mode).get_file(name)


# ── CLI ────────────────────────────────────────────────────────────────

def _host_name(name: str) -> str:
    for ch in ("/", os.sep, "\x00"):
        name = name.replace(ch, "_")
    return name or "_"


def main(argv: list[str] | None = None):
    import argparse

    parser = argparse.ArgumentParser(
        prog="adfs",
        description="Read-only Acorn ADFS disk image utility",
    )
    parser.add_argument("--hd", action="store_true",
                        help="Hard-disc image (linear addressing)")
    parser.add_argument("--max-size", type=int, default=MAX_FILE_SIZE,
                        help=f"Largest file to extract "
                             f"(default: {MAX_FILE_SIZE})")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    sub = parser.add_subparsers(dest="cmd")

    p_ls = sub.add_parser("ls", help="List the catalogue tree")
    p_ls.add_argument("image", help="Disk image path")

    p_cat = sub.add_parser("cat", help="Write a file to stdout")
    p_cat.add_argument("image", help="Disk image path")
    p_cat.add_argument("name", help="Dotted path, e.g. Games.Elite")

    p_stat = sub.add_parser("stat", help="Show a file's catalogue entry")
    p_stat.add_argument("image", help="Disk image path")
    p_stat.add_argument("name", help="Dotted path")

    p_ext = sub.add_parser("extract", help="Copy every file to a host dir")
    p_ext.add_argument("image", help="Disk image path")
    p_ext.add_argument("output", help="Output directory")

    p_info = sub.add_parser("info", help="Show image summary")
    p_info.add_argument("image", help="Disk image path")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.cmd is None:
        parser.print_help()
        return

    mode = AddressingMode.LINEAR if args.hd else AddressingMode.INTERLEAVED
    reader = AdfsReader(args.image, mode=mode, max_file_size=args.max_size)

    try:
        if args.cmd == "ls":
            entries = list(reader.walk())
            if not entries:
                print("(empty)")
                return
            print(f"{'Name':<24} {'Type':<4} {'Load':>8} {'Exec':>8} "
                  f"{'Size':>8} {'Sector':>6}  Access")
            print("-" * 72)
            for path, e in entries:
                indent = "  " * (path.count(".") - 1)
                label = f"{indent}{e.name}"
                print(f"{label:<24} {e.kind.value:<4} {e.load_address:08X} "
                      f"{e.exec_address:08X} {e.size:>8} "
                      f"{e.start_sector:>6}  {str(e.access)}")

        elif args.cmd == "cat":
            data = reader.get_file(args.name)
            sys.stdout.buffer.write(data)

        elif args.cmd == "stat":
            st = reader.get_stat(args.name)
            print(f"  size: {st.size}")
            print(f"  start_sector: {st.start_sector}")
            print(f"  load: {st.load_address:08X}")
            print(f"  exec: {st.exec_address:08X}")
            print(f"  access: {str(st.access)}")

        elif args.cmd == "extract":
            out = Path(args.output)
            out.mkdir(parents=True, exist_ok=True)
            count = 0
            written: set[str] = set()
            skipped: list[str] = []
            for path, e in reader.walk():
                key = path.lower()
                if any(key.startswith(s + ".") for s in skipped):
                    continue
                if key in written:
                    logger.warning("Skipping %s: shadowed by an earlier "
                                   "entry of the same name", path)
                    skipped.append(key)
                    continue
                written.add(key)
                target = out.joinpath(
                    *[_host_name(p) for p in path.split(".")[1:]])
                if e.is_dir:
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.write_bytes(reader.read_entry(e))
                    count += 1
            print(f"Extracted {count} file(s) to {out}")

        elif args.cmd == "info":
            root = reader.get_catalogue()
            entries = list(walk(root))
            files = [e for _, e in entries if e.is_file]
            print(f"  image: {reader.source.name}")
            print(f"  size: {reader.source.size}")
            print(f"  mode: {reader.mode.value}")
            print(f"  title: {root.title}")
            print(f"  root_entries: {len(root)}")
            print(f"  files: {len(files)}")
            print(f"  directories: {len(entries) - len(files)}")
            print(f"  bytes: {sum(e.size for e in files)}")

    except (AdfsError, OSError) as e:
        print(f"adfs: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
