"""Shared fixtures: a temporary mirror database and an in-memory ledger."""

from __future__ import annotations

import pytest

from futures_mirror.store import EventStore

from ledger_fakes import CONTRACT, FakeLedger


@pytest.fixture
def store(tmp_path):
    s = EventStore(database_url=f"sqlite:///{tmp_path / 'events.db'}", contract_address=CONTRACT)
    s.open()
    yield s
    s.close()


@pytest.fixture
def ledger():
    return FakeLedger()
