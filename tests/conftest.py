"""Shared fixtures for ledger tests."""

from datetime import datetime, timedelta

import pytest

from scrapledger.store import LedgerStore


class FixedClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock fixed at 2 March 2024, 10:30."""
    return FixedClock(datetime(2024, 3, 2, 10, 30, 0))


@pytest.fixture
def store(tmp_path, clock):
    """Open ledger store on a temporary SQLite file."""
    ledger = LedgerStore(tmp_path / "ledger.db", clock=clock).open()
    yield ledger
    ledger.close()


@pytest.fixture
def copper(store):
    """Weight item priced at 50/kg."""
    return store.add_item("Copper Wire", 50)


@pytest.fixture
def bottle(store):
    """Count item priced at 20/unit."""
    return store.add_item("Beer Bottle", 20, "count")
