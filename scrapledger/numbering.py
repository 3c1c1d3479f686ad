"""Date-scoped bill numbering.

Bill numbers look like ``<TAG><DD><MM><NNNN>``: a fixed tag, the day
and month of creation, then a 4-digit sequence that restarts each day.
Numbering reads the current maximum and increments it, so callers must
run it in the same transaction as the bill insert.
"""

import sqlite3
from datetime import datetime

DEFAULT_TAG = "FAM"
SEQUENCE_WIDTH = 4


def bill_prefix(moment: datetime, tag: str = DEFAULT_TAG) -> str:
    """Prefix for bills created on ``moment``'s day, e.g. FAM0203."""
    return f"{tag}{moment.day:02d}{moment.month:02d}"


def format_bill_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:0{SEQUENCE_WIDTH}d}"


def next_bill_number(conn: sqlite3.Connection, prefix: str) -> str:
    """Next free bill number for ``prefix``.

    Args:
        conn: Open connection, ideally inside the insert's transaction.
        prefix: Today's prefix from ``bill_prefix``.

    Returns:
        The highest existing numeric sequence for the prefix plus one,
        or ``<prefix>0001`` when no bill uses the prefix yet. Hand-entered
        numbers whose suffix is not all digits are ignored.
    """
    start = len(prefix) + 1
    row = conn.execute(
        "SELECT MAX(CAST(substr(bill_number, ?) AS INTEGER)) FROM bills "
        "WHERE substr(bill_number, 1, ?) = ? AND length(bill_number) > ? "
        "AND substr(bill_number, ?) NOT GLOB '*[^0-9]*'",
        (start, len(prefix), prefix, len(prefix), start),
    ).fetchone()

    last = row[0] if row and row[0] is not None else 0
    return format_bill_number(prefix, last + 1)
