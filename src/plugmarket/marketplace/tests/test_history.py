from __future__ import annotations

import pytest

from plugmarket.exceptions import InvalidStateError
from plugmarket.marketplace.history import UpdateHistoryLog
from plugmarket.marketplace.models import Installation, PackageListing


@pytest.fixture()
def installation(session):
    listing = PackageListing(slug="audit-kit", name="Audit Kit")
    session.add(listing)
    session.flush()
    inst = Installation(
        listing_id=listing.id, tenant_id="t1", installed_version="1.0.0", status="active"
    )
    session.add(inst)
    session.flush()
    return inst


def test_entry_lifecycle_records_duration(session, installation):
    log = UpdateHistoryLog(session)
    entry = log.start(installation, "1.1.0")

    assert entry.status == "in_progress"
    assert entry.from_version == "1.0.0"
    assert log.interrupted() == [entry]

    log.attach_backup(entry, "backups/audit-kit/1.0.0/x.zip")
    log.mark_success(entry)

    assert entry.status == "success"
    assert entry.completed_at is not None
    assert entry.duration_seconds is not None and entry.duration_seconds >= 0
    assert log.interrupted() == []


@pytest.mark.parametrize("first", ["mark_success", "mark_rolled_back", "mark_failed"])
def test_terminal_entries_are_immutable(session, installation, first):
    log = UpdateHistoryLog(session)
    entry = log.start(installation, "1.1.0")
    if first == "mark_success":
        log.mark_success(entry)
    else:
        getattr(log, first)(entry, "boom")

    with pytest.raises(InvalidStateError):
        log.mark_failed(entry, "again")
    with pytest.raises(InvalidStateError):
        log.mark_rolled_back(entry, "again")
    with pytest.raises(InvalidStateError):
        log.attach_backup(entry, "elsewhere.zip")


def test_for_installation_and_recent(session, installation):
    log = UpdateHistoryLog(session)
    first = log.start(installation, "1.1.0")
    log.mark_failed(first, "network")
    second = log.start(installation, "1.2.0")
    log.mark_rolled_back(second, "hash mismatch")

    entries = log.for_installation(installation.id)
    assert {e.id for e in entries} == {first.id, second.id}
    assert len(log.for_installation(installation.id, limit=1)) == 1
    assert len(log.recent(limit=5)) == 2
    assert log.get(second.id).error == "hash mismatch"
