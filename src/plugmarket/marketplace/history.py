from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from plugmarket.exceptions import InvalidStateError
from plugmarket.marketplace.models import Installation, UpdateHistoryEntry, UpdateStatus

logger = logging.getLogger(__name__)


class UpdateHistoryLog:
    """
    Append-only log of update and rollback attempts.

    Entries start ``in_progress`` and receive exactly one terminal status.
    """

    def __init__(self, session: Session):
        self.session = session

    def start(
        self,
        installation: Installation,
        to_version: str,
        *,
        from_version: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> UpdateHistoryEntry:
        entry = UpdateHistoryEntry(
            installation_id=installation.id,
            from_version=from_version if from_version is not None else installation.installed_version,
            to_version=to_version,
            status=UpdateStatus.IN_PROGRESS.value,
            reason=reason,
            started_at=datetime.utcnow(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def attach_backup(self, entry: UpdateHistoryEntry, backup_path: str) -> UpdateHistoryEntry:
        self._require_open(entry)
        entry.backup_path = backup_path
        self.session.add(entry)
        self.session.flush()
        return entry

    def mark_success(self, entry: UpdateHistoryEntry) -> UpdateHistoryEntry:
        return self._finish(entry, UpdateStatus.SUCCESS, None)

    def mark_failed(self, entry: UpdateHistoryEntry, error: str) -> UpdateHistoryEntry:
        return self._finish(entry, UpdateStatus.FAILED, error)

    def mark_rolled_back(self, entry: UpdateHistoryEntry, error: str) -> UpdateHistoryEntry:
        return self._finish(entry, UpdateStatus.ROLLED_BACK, error)

    def get(self, entry_id: str) -> Optional[UpdateHistoryEntry]:
        return self.session.get(UpdateHistoryEntry, entry_id)

    def for_installation(
        self, installation_id: str, *, limit: Optional[int] = None
    ) -> List[UpdateHistoryEntry]:
        query = (
            self.session.query(UpdateHistoryEntry)
            .filter(UpdateHistoryEntry.installation_id == installation_id)
            .order_by(UpdateHistoryEntry.started_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def recent(self, limit: int = 20) -> List[UpdateHistoryEntry]:
        return (
            self.session.query(UpdateHistoryEntry)
            .order_by(UpdateHistoryEntry.started_at.desc())
            .limit(limit)
            .all()
        )

    def interrupted(self) -> List[UpdateHistoryEntry]:
        return (
            self.session.query(UpdateHistoryEntry)
            .filter(UpdateHistoryEntry.status == UpdateStatus.IN_PROGRESS.value)
            .order_by(UpdateHistoryEntry.started_at.asc())
            .all()
        )

    def _require_open(self, entry: UpdateHistoryEntry) -> None:
        if entry.is_terminal:
            raise InvalidStateError(
                f"Update history entry {entry.id} is already {entry.status}",
                state=entry.status,
            )

    def _finish(
        self, entry: UpdateHistoryEntry, status: UpdateStatus, error: Optional[str]
    ) -> UpdateHistoryEntry:
        self._require_open(entry)
        now = datetime.utcnow()
        entry.status = status.value
        entry.error = error
        entry.completed_at = now
        if entry.started_at is not None:
            entry.duration_seconds = (now - entry.started_at).total_seconds()
        self.session.add(entry)
        self.session.flush()
        logger.info(
            "Update %s -> %s for installation %s: %s",
            entry.from_version,
            entry.to_version,
            entry.installation_id,
            entry.status,
        )
        return entry
