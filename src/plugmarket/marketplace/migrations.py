"""
Package database migrations.

A package ships ``migrations/*.sql``; files run in name order and each file
runs at most once per (package, tenant). Statements execute in the caller's
session transaction, so a rollback of that transaction undoes them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from sqlalchemy.orm import Session

from plugmarket.exceptions import MigrationFailedError
from plugmarket.marketplace.models import AppliedMigration

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = "migrations"


class MigrationRunner(ABC):
    @abstractmethod
    def run(self, path: Path, *, slug: str, tenant_id: str) -> List[str]:
        """Apply pending migrations under ``path``; return the names applied."""


def split_statements(sql: str) -> List[str]:
    statements = []
    for chunk in sql.split(";"):
        lines = [ln for ln in chunk.splitlines() if not ln.strip().startswith("--")]
        stmt = "\n".join(lines).strip()
        if stmt:
            statements.append(stmt)
    return statements


class SqlMigrationRunner(MigrationRunner):
    def __init__(self, session: Session):
        self.session = session

    def pending(self, path: Path, *, slug: str, tenant_id: str) -> List[Path]:
        path = Path(path)
        if not path.is_dir():
            return []
        done = {
            name
            for (name,) in self.session.query(AppliedMigration.name).filter(
                AppliedMigration.slug == slug,
                AppliedMigration.tenant_id == tenant_id,
            )
        }
        return sorted(
            (p for p in path.iterdir() if p.is_file() and p.suffix == ".sql" and p.name not in done),
            key=lambda p: p.name,
        )

    def run(self, path: Path, *, slug: str, tenant_id: str) -> List[str]:
        applied: List[str] = []
        try:
            files = self.pending(path, slug=slug, tenant_id=tenant_id)
            conn = self.session.connection()
            for sql_file in files:
                for stmt in split_statements(sql_file.read_text(encoding="utf-8")):
                    conn.exec_driver_sql(stmt)
                self.session.add(
                    AppliedMigration(slug=slug, tenant_id=tenant_id, name=sql_file.name)
                )
                self.session.flush()
                applied.append(sql_file.name)
        except Exception as exc:
            logger.error("Migrations failed for %s (tenant %s): %s", slug, tenant_id, exc)
            raise MigrationFailedError(
                f"Migration failed for {slug}: {exc}",
                details={"applied_before_failure": applied},
            ) from exc

        if applied:
            logger.info("Applied %d migration(s) for %s: %s", len(applied), slug, ", ".join(applied))
        return applied
