"""
Tests for hashing, locking and timestamp helpers.
"""

import threading
import time
from datetime import datetime

import pytest

from lorekeep.utils.hashing import calculate_content_hash, calculate_partial_hash
from lorekeep.utils.locks import KeyedLocks
from lorekeep.utils.timestamps import make_ordering_key, parse_timestamp, to_utc_naive


class TestHashing:
    """Tests for content and partial file hashes."""

    def test_content_hash(self):
        """Test that str and bytes hash the same."""
        digest = calculate_content_hash("hello")

        assert len(digest) == 64
        assert digest == calculate_content_hash(b"hello")
        assert digest != calculate_content_hash("hello!")

    def test_partial_hash_matches_prefix(self, tmp_path):
        """Test that a partial hash equals the hash of the prefix."""
        log = tmp_path / "session.jsonl"
        log.write_bytes(b'{"a": 1}\n{"b": 2}\n')

        assert calculate_partial_hash(log, 9) == calculate_content_hash(b'{"a": 1}\n')
        assert calculate_partial_hash(log, 0) == calculate_content_hash(b"")

    def test_partial_hash_bad_offsets(self, tmp_path):
        """Test that negative and past-the-end offsets raise ValueError."""
        log = tmp_path / "session.jsonl"
        log.write_bytes(b"abc")

        with pytest.raises(ValueError, match="non-negative"):
            calculate_partial_hash(log, -1)
        with pytest.raises(ValueError, match="exceeds file size"):
            calculate_partial_hash(log, 4)


class TestKeyedLocks:
    """Tests for KeyedLocks."""

    def test_entries_released(self):
        """Test that the table is empty once nobody holds a key."""
        locks = KeyedLocks()

        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2

        assert len(locks) == 0

    def test_same_key_serializes(self):
        """Test that two holders of one key never overlap."""
        locks = KeyedLocks()
        active = []
        overlaps = []

        def work():
            with locks.hold("conv-1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.05)
                active.pop()

        threads = [threading.Thread(target=work) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
        assert len(locks) == 0


class TestTimestamps:
    """Tests for timestamp parsing and ordering keys."""

    def test_parse_iso_with_offset(self):
        """Test that offsets are converted to naive UTC."""
        assert parse_timestamp("2025-03-01T10:00:00+02:00") == datetime(2025, 3, 1, 8, 0, 0)
        assert parse_timestamp("2025-03-01T10:00:00Z") == datetime(2025, 3, 1, 10, 0, 0)

    def test_parse_epoch(self):
        """Test epoch seconds."""
        assert parse_timestamp(0) == datetime(1970, 1, 1)
        assert parse_timestamp(1.5) == datetime(1970, 1, 1, 0, 0, 1, 500000)

    def test_parse_empty_and_invalid(self):
        """Test that empty input is None and garbage raises ValueError."""
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        with pytest.raises(ValueError, match="Invalid timestamp"):
            parse_timestamp("yesterday-ish")

    def test_naive_values_assumed_utc(self):
        """Test that naive datetimes pass through unchanged."""
        value = datetime(2025, 3, 1, 9, 0)
        assert to_utc_naive(value) is value

    def test_ordering_keys_sort_by_time_then_sequence(self):
        """Test that keys order lexicographically like (timestamp, sequence)."""
        early = datetime(2025, 3, 1, 9, 0, 0)
        late = datetime(2025, 3, 1, 9, 0, 0, 1)

        keys = [
            make_ordering_key(late, 0),
            make_ordering_key(early, 10),
            make_ordering_key(early, 2),
        ]

        assert sorted(keys) == [keys[2], keys[1], keys[0]]
        assert make_ordering_key(early, 2) == "20250301T090000.000000Z:00000002"
