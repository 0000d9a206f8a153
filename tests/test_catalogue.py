"""Tests for directory table decoding."""

import unittest

from adfs import (
    Access, AddressingMode, DirectoryLoop, DirectoryTooDeep, EntryKind,
    SectorAddressor, decode_directory, walk,
)
from byte_sources import MemorySource, ReadError
from imagebuild import ImageBuilder, entry_bytes


class CountingSource(MemorySource):
    """MemorySource that records every range read."""

    def __init__(self, data):
        super().__init__(data)
        self.reads = []

    def read_range(self, offset, length):
        self.reads.append((offset, length))
        return super().read_range(offset, length)


def walk_all(directory):
    return list(walk(directory))


def _linear(builder: ImageBuilder) -> SectorAddressor:
    return SectorAddressor(MemorySource(builder.bytes()), AddressingMode.LINEAR)


def _root_only(entries, **kwargs) -> SectorAddressor:
    b = ImageBuilder(total_sectors=64, interleaved=False)
    b.put_directory(2, entries, **kwargs)
    return _linear(b)


class TestDecodeDirectory(unittest.TestCase):

    def test_stops_at_zero_slot(self):
        """k used slots followed by zeros decode to exactly k entries."""
        for k in (0, 1, 5, 46):
            entries = [entry_bytes(f"F{i}", sector=40) for i in range(k)]
            root = decode_directory(_root_only(entries))
            self.assertEqual(len(root), k)
            self.assertEqual(list(root), [f"F{i}" for i in range(k)])

    def test_full_table(self):
        """All 47 slots are read when none terminates early."""
        entries = [entry_bytes(f"F{i:02d}", sector=40) for i in range(47)]
        root = decode_directory(_root_only(entries))
        self.assertEqual(len(root), 47)
        self.assertIn("F46", root)

    def test_entries_after_terminator_ignored(self):
        """Slots after the first zero slot are never read."""
        b = ImageBuilder(total_sectors=64, interleaved=False)
        b.put_directory(2, [entry_bytes("First", sector=40)])
        # Plant a well-formed slot in position 2, after the empty slot 1.
        b.put(2, bytes(b.img[512 : 512 + 5 + 2 * 26])
              + entry_bytes("Hidden", sector=41))
        root = decode_directory(_linear(b))
        self.assertEqual(list(root), ["First"])

    def test_ten_character_name(self):
        """A 10-character name with no CR decodes in full."""
        root = decode_directory(_root_only([entry_bytes("ABCDEFGHIJ")]))
        self.assertEqual(list(root), ["ABCDEFGHIJ"])

    def test_cr_terminated_name(self):
        root = decode_directory(_root_only([entry_bytes("Elite")]))
        self.assertEqual(root["Elite"].name, "Elite")

    def test_fields(self):
        """Little-endian load, exec, length and 24-bit sector fields."""
        root = decode_directory(_root_only([
            entry_bytes("Prog", load=0xFFFF1900, exec_=0x00008023,
                        size=0x0001_2345, sector=0xABCDEF, sequence=9),
        ]))
        e = root["Prog"]
        self.assertEqual(e.kind, EntryKind.FILE)
        self.assertEqual(e.load_address, 0xFFFF1900)
        self.assertEqual(e.exec_address, 0x00008023)
        self.assertEqual(e.size, 0x12345)
        self.assertEqual(e.start_sector, 0xABCDEF)
        self.assertEqual(e.sequence, 9)
        self.assertIsNone(e.children)

    def test_directory_bit_not_in_name(self):
        """The D bit on byte 3 marks a directory and is masked from the name."""
        b = ImageBuilder(total_sectors=64, interleaved=False)
        b.put_directory(2, [entry_bytes("Library", is_dir=True, sector=10)])
        b.put_directory(10, [], name="Library")
        root = decode_directory(_linear(b))
        e = root["Library"]
        self.assertEqual(e.name, "Library")
        self.assertTrue(e.is_dir)
        self.assertEqual(len(e.children), 0)

    def test_access_bits(self):
        """R, W, L and E are taken from the top bits of name bytes."""
        root = decode_directory(_root_only([
            entry_bytes("Locked", access="LR"),
            entry_bytes("Open", access="WR"),
            entry_bytes("RunOnly", access="E"),
            entry_bytes("None"),
        ]))
        self.assertEqual(root["Locked"].access, Access.LOCKED | Access.READ)
        self.assertEqual(root["Open"].access, Access.WRITE | Access.READ)
        self.assertEqual(root["RunOnly"].access, Access.EXECUTE)
        self.assertEqual(root["None"].access, Access(0))
        self.assertEqual(str(root["Locked"].access), "LR")
        self.assertEqual(str(root["None"].access), "")

    def test_footer(self):
        """Directory name, title, parent and sequence come from the footer."""
        root = decode_directory(_root_only(
            [], name="$", title="My Disc", parent=2, sequence=0x42))
        self.assertEqual(root.name, "$")
        self.assertEqual(root.title, "My Disc")
        self.assertEqual(root.parent_sector, 2)
        self.assertEqual(root.sequence, 0x42)
        self.assertEqual(root.sector, 2)

    def test_bad_signature_warns(self):
        """A missing Hugo marker is logged but decoding continues."""
        sectors = _root_only([entry_bytes("Still")], magic=b"\x00\x00\x00\x00")
        with self.assertLogs("adfs", level="WARNING") as cm:
            root = decode_directory(sectors)
        self.assertIn("bad signature", cm.output[0])
        self.assertEqual(list(root), ["Still"])

    def test_nick_signature_accepted(self):
        sectors = _root_only([entry_bytes("New")], magic=b"Nick")
        root = decode_directory(sectors)
        self.assertEqual(list(root), ["New"])

    def test_duplicate_names(self):
        """Case-insensitive duplicates keep the first slot and warn."""
        sectors = _root_only([
            entry_bytes("Data", sector=40),
            entry_bytes("DATA", sector=41),
        ])
        with self.assertLogs("adfs", level="WARNING"):
            root = decode_directory(sectors)
        self.assertEqual(root.find("data").start_sector, 40)
        self.assertEqual(len(root.entries), 2)


class TestRecursion(unittest.TestCase):

    def _tree(self) -> SectorAddressor:
        b = ImageBuilder(total_sectors=64, interleaved=False)
        b.put_directory(2, [
            entry_bytes("A", is_dir=True, sector=7),
            entry_bytes("Top", sector=40, size=1),
        ])
        b.put_directory(7, [
            entry_bytes("B", is_dir=True, sector=12),
        ], name="A")
        b.put_directory(12, [
            entry_bytes("Leaf", sector=41, size=2),
        ], name="B", parent=7)
        return _linear(b)

    def test_nested(self):
        """Subdirectories are decoded recursively into children."""
        root = decode_directory(self._tree())
        leaf = root["A"].children["B"].children["Leaf"]
        self.assertEqual(leaf.size, 2)
        self.assertEqual(root["A"].children["B"].children.parent_sector, 7)

    def test_walk_order(self):
        """walk() is depth-first in slot order."""
        root = decode_directory(self._tree())
        paths = [p for p, _ in walk(root)]
        self.assertEqual(paths, ["$.A", "$.A.B", "$.A.B.Leaf", "$.Top"])

    def test_start_sector(self):
        """Decoding can start from any directory table."""
        sub = decode_directory(self._tree(), 7)
        self.assertEqual(list(sub), ["B"])
        self.assertEqual(sub.sector, 7)

    def test_loop_guarded(self):
        """A directory pointing at its own table fails instead of recursing forever."""
        sectors = _root_only([entry_bytes("Self", is_dir=True, sector=2)])
        with self.assertRaises(DirectoryLoop):
            decode_directory(sectors, max_depth=8)

    def test_shared_table(self):
        """Two entries pointing at one table fail rather than decode it twice."""
        b = ImageBuilder(total_sectors=64, interleaved=False)
        b.put_directory(2, [
            entry_bytes("Left", is_dir=True, sector=7),
            entry_bytes("Right", is_dir=True, sector=7),
        ])
        b.put_directory(7, [entry_bytes("Leaf", sector=40)], name="Left")
        with self.assertRaises(DirectoryLoop):
            decode_directory(_linear(b))

    def test_shared_chain_fails_fast(self):
        """A long chain of doubly-referenced tables stops at the first repeat."""
        b = ImageBuilder(total_sectors=2 + 5 * 41, interleaved=False)
        tables = [2 + 5 * i for i in range(41)]
        for here, nxt in zip(tables, tables[1:]):
            b.put_directory(here, [
                entry_bytes("A", is_dir=True, sector=nxt),
                entry_bytes("B", is_dir=True, sector=nxt),
            ])
        b.put_directory(tables[-1], [])
        src = CountingSource(b.bytes())
        sectors = SectorAddressor(src, AddressingMode.LINEAR)
        with self.assertRaises(DirectoryLoop):
            decode_directory(sectors, max_depth=64)
        # Each table is read once (5 sectors), plus the repeat that trips.
        self.assertLessEqual(len(src.reads), 5 * 42)

    def test_depth_guarded(self):
        """A chain of distinct tables deeper than max_depth fails."""
        b = ImageBuilder(total_sectors=2 + 5 * 6, interleaved=False)
        tables = [2 + 5 * i for i in range(6)]
        for here, nxt in zip(tables, tables[1:]):
            b.put_directory(here, [entry_bytes("Down", is_dir=True, sector=nxt)])
        b.put_directory(tables[-1], [])
        self.assertEqual(len(walk_all(decode_directory(_linear(b)))), 5)
        with self.assertRaises(DirectoryTooDeep):
            decode_directory(_linear(b), max_depth=3)

    def test_unreadable_subdirectory(self):
        """A read failure anywhere aborts the whole decode."""
        sectors = _root_only([
            entry_bytes("Fine", sector=40),
            entry_bytes("Lost", is_dir=True, sector=62),
        ])
        with self.assertRaises(ReadError):
            decode_directory(sectors)


if __name__ == "__main__":
    unittest.main()
