"""Tests for bill numbering."""

import sqlite3
from datetime import datetime

import pytest

from scrapledger.numbering import (
    bill_prefix,
    format_bill_number,
    next_bill_number,
)


class TestBillPrefix:
    """Tests for prefix generation."""

    def test_day_then_month(self):
        """Test that 2 March gives FAM0203."""
        assert bill_prefix(datetime(2024, 3, 2)) == "FAM0203"

    def test_custom_tag(self):
        """Test a shop-specific tag."""
        assert bill_prefix(datetime(2024, 12, 25), "SHOP") == "SHOP2512"


class TestSequence:
    """Tests for formatting sequences."""

    def test_format_pads_to_four_digits(self):
        """Test zero padding."""
        assert format_bill_number("FAM0203", 7) == "FAM02030007"

    def test_format_grows_past_four_digits(self):
        """Test that large sequences are not truncated."""
        assert format_bill_number("FAM0203", 12345) == "FAM020312345"


class TestNextBillNumber:
    """Tests for next_bill_number against a bills table."""

    @pytest.fixture
    def conn(self):
        """In-memory database with a bills table."""
        connection = sqlite3.connect(":memory:")
        connection.execute("CREATE TABLE bills (id INTEGER PRIMARY KEY, bill_number TEXT UNIQUE)")
        yield connection
        connection.close()

    def _insert(self, conn, *numbers):
        conn.executemany("INSERT INTO bills (bill_number) VALUES (?)", [(n,) for n in numbers])

    def test_first_bill_of_the_day(self, conn):
        """Test that an unused prefix starts at 0001."""
        assert next_bill_number(conn, "FAM0203") == "FAM02030001"

    def test_second_bill_of_the_day(self, conn):
        """Test the increment after one bill."""
        self._insert(conn, "FAM02030001")

        assert next_bill_number(conn, "FAM0203") == "FAM02030002"

    def test_uses_highest_sequence(self, conn):
        """Test that the maximum sequence wins over insertion order."""
        self._insert(conn, "FAM02030010", "FAM02030009", "FAM02030003")

        assert next_bill_number(conn, "FAM0203") == "FAM02030011"

    def test_sequence_past_9999(self, conn):
        """Test that a five-digit sequence still increments numerically."""
        self._insert(conn, "FAM02039999", "FAM020310000")

        assert next_bill_number(conn, "FAM0203") == "FAM020310001"

    def test_other_days_are_ignored(self, conn):
        """Test that each day has its own sequence."""
        self._insert(conn, "FAM01030005", "FAM03030002")

        assert next_bill_number(conn, "FAM0203") == "FAM02030001"

    def test_wildcards_in_tag_are_literal(self, conn):
        """Test that LIKE wildcards in the tag do not match other tags."""
        self._insert(conn, "AXB02030005")

        assert next_bill_number(conn, "A_B0203") == "A_B02030001"

    def test_hand_entered_numbers_are_ignored(self, conn):
        """Test that a non-numeric suffix does not reset the sequence."""
        self._insert(conn, "FAM02030001", "FAM0203-MANUAL", "FAM02030002X")

        assert next_bill_number(conn, "FAM0203") == "FAM02030002"

    def test_prefix_match_is_case_sensitive(self, conn):
        """Test that a lowercase tag is a different prefix."""
        self._insert(conn, "fam02030007")

        assert next_bill_number(conn, "FAM0203") == "FAM02030001"
