from __future__ import annotations

import shutil
from pathlib import Path

import pytest
from sqlalchemy import text

from plugmarket.exceptions import RemoteUnreachableError
from plugmarket.marketplace.locks import CancellationToken
from plugmarket.marketplace.models import AppliedMigration, PendingUpdate, UpdateHistoryEntry


@pytest.fixture()
def orchestrator(services):
    return services.orchestrator


@pytest.fixture()
def listing(services):
    return services.catalog.create_listing("report-kit", "Report Kit", marketplace_id="mp-1")


@pytest.fixture()
def installed(services, listing, publish, recording_hooks):
    publish(listing, "1.0.0", hooks_source=recording_hooks())
    result = services.lifecycle.install(listing, "t1")
    assert result.success, result.message
    return result.installation


def _version_file(installation) -> str:
    return (Path(installation.install_path) / "VERSION").read_text()


def _history(services, installation):
    return services.history.for_installation(installation.id)


def test_up_to_date_installation_is_a_noop(services, orchestrator, installed):
    result = orchestrator.update(installed)

    assert not result.success
    assert result.error_code == "NO_UPDATE_AVAILABLE"
    assert _history(services, installed) == []


def test_successful_update(services, orchestrator, listing, installed, publish, recording_hooks, hook_events):
    publish(listing, "1.1.0", hooks_source=recording_hooks())

    result = orchestrator.update(installed)

    assert result.success, result.message
    assert (result.from_version, result.to_version) == ("1.0.0", "1.1.0")
    assert installed.installed_version == "1.1.0"
    assert installed.version.version == "1.1.0"
    assert installed.status == "active"
    assert _version_file(installed) == "1.1.0"
    assert hook_events() == ["install", "activate", "deactivate", "update:1.0.0>1.1.0", "activate"]

    (entry,) = _history(services, installed)
    assert entry.status == "success"
    assert entry.backup_path
    assert services.package_files.backup_exists(entry.backup_path)


@pytest.mark.e2e
def test_tampered_update_rolls_back_to_previous_release(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0")
    assert orchestrator.update(installed).success

    publish(listing, "1.2.0", content_hash="f" * 64)
    result = orchestrator.update(installed)

    assert not result.success
    assert result.error_code == "PACKAGE_VERIFICATION_FAILED"
    assert result.rolled_back is True
    assert installed.installed_version == "1.1.0"
    assert installed.status == "active"
    assert _version_file(installed) == "1.1.0"
    statuses = sorted(e.status for e in _history(services, installed))
    assert statuses == ["rolled_back", "success"]


def test_failing_update_hook_restores_files_and_reactivates(
    services, orchestrator, listing, installed, publish, recording_hooks, hook_events
):
    publish(listing, "1.1.0", hooks_source=recording_hooks(fail_on=["update"]))

    result = orchestrator.update(installed)

    assert result.error_code == "HOOK_FAILED"
    assert result.rolled_back
    assert installed.installed_version == "1.0.0"
    assert installed.status == "active"
    assert _version_file(installed) == "1.0.0"
    assert hook_events()[-3:] == ["deactivate", "update:1.0.0>1.1.0", "activate"]
    (entry,) = _history(services, installed)
    assert entry.status == "rolled_back"
    assert "exploded" in entry.error


def test_inactive_installation_stays_inactive(services, orchestrator, listing, installed, publish, hook_events):
    services.lifecycle.deactivate(installed)
    publish(listing, "1.1.0")

    result = orchestrator.update(installed)

    assert result.success
    assert installed.status == "inactive"
    assert hook_events() == ["install", "activate", "deactivate"]


def test_migrations_run_once_per_tenant(services, orchestrator, listing, installed, publish):
    init = (
        "CREATE TABLE report_kit_rows (id INTEGER PRIMARY KEY, label TEXT);\n"
        "-- seed data\n"
        "INSERT INTO report_kit_rows (label) VALUES ('seed');"
    )
    publish(listing, "1.1.0", migrations={"001_init.sql": init})
    assert orchestrator.update(installed).success

    publish(
        listing,
        "1.2.0",
        migrations={
            "001_init.sql": init,
            "002_more.sql": "INSERT INTO report_kit_rows (label) VALUES ('second');",
        },
    )
    assert orchestrator.update(installed).success

    labels = services.session.execute(text("SELECT label FROM report_kit_rows ORDER BY id")).scalars().all()
    assert labels == ["seed", "second"]
    names = sorted(m.name for m in services.session.query(AppliedMigration).all())
    assert names == ["001_init.sql", "002_more.sql"]


def test_failed_migration_is_undone(services, orchestrator, listing, installed, publish):
    publish(
        listing,
        "1.1.0",
        migrations={
            "001_init.sql": "CREATE TABLE report_kit_rows (id INTEGER PRIMARY KEY);",
            "002_bad.sql": "INSERT INTO no_such_table VALUES (1);",
        },
    )

    result = orchestrator.update(installed)

    assert result.error_code == "MIGRATION_FAILED"
    assert result.rolled_back
    assert installed.installed_version == "1.0.0"
    assert services.session.query(AppliedMigration).count() == 0
    tables = services.session.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name='report_kit_rows'")
    ).all()
    assert tables == []


def test_requirements_not_met(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0", min_platform_version="3.0")

    result = orchestrator.update(installed)

    assert result.error_code == "REQUIREMENTS_NOT_MET"
    assert result.issues == ["Requires platform version 3.0 or higher (current: 2.0.0)"]
    assert _history(services, installed) == []


def test_premium_update_needs_license_or_trial(services, orchestrator, publish):
    paid = services.catalog.create_listing("pro-charts", "Pro Charts", pricing_model="paid")
    trial = services.catalog.create_listing(
        "pro-maps", "Pro Maps", pricing_model="paid", trial_days=7
    )
    for listing in (paid, trial):
        publish(listing, "1.0.0")
    paid_inst = services.lifecycle.install(paid, "t1").installation
    trial_inst = services.lifecycle.install(trial, "t1").installation
    for listing in (paid, trial):
        publish(listing, "1.1.0")

    assert orchestrator.update(paid_inst).error_code == "LICENSE_REQUIRED"
    assert orchestrator.update(trial_inst).success

    services.license_gate.activate(paid_inst, "KEY-1", "ops@example.com")
    assert orchestrator.update(paid_inst).success


def test_suspended_installation_cannot_update(services, orchestrator, listing, installed, publish):
    services.lifecycle.suspend(installed, "review")
    publish(listing, "1.1.0")

    assert orchestrator.update(installed).error_code == "INVALID_STATE"


def test_explicit_target_and_rollback_to(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0")
    publish(listing, "1.2.0")

    assert orchestrator.update(installed, "1.1.0").to_version == "1.1.0"
    assert orchestrator.update(installed, "1.0.0").error_code == "NO_UPDATE_AVAILABLE"
    assert orchestrator.update(installed, "9.9.9").error_code == "NO_VERSION_AVAILABLE"

    services.catalog.yank(services.catalog.resolve(listing, "1.2.0"), "broken export")
    assert orchestrator.update(installed, "1.2.0").error_code == "NO_VERSION_AVAILABLE"

    result = orchestrator.rollback_to(installed, "1.0.0")
    assert result.success
    assert installed.installed_version == "1.0.0"
    assert _version_file(installed) == "1.0.0"


def test_cancelled_before_backup(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0")
    token = CancellationToken()
    token.cancel()

    result = orchestrator.update(installed, cancel=token)

    assert result.error_code == "CANCELLED"
    assert _history(services, installed) == []


def test_cancelled_mid_pipeline_rolls_back(services, orchestrator, listing, installed, publish, downloader):
    publish(listing, "1.1.0")
    token = CancellationToken()

    class CancellingDownloader:
        def fetch(self, version, destination, *, timeout_s):
            path = downloader.fetch(version, destination, timeout_s=timeout_s)
            token.cancel()
            return path

    orchestrator.downloader = CancellingDownloader()
    result = orchestrator.update(installed, cancel=token)

    assert result.error_code == "CANCELLED"
    assert result.rolled_back
    assert installed.installed_version == "1.0.0"
    assert installed.status == "active"


def test_deadline_is_enforced(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0")

    result = orchestrator.update(installed, timeout_s=1e-9)

    assert result.error_code == "TIMEOUT"
    assert installed.installed_version == "1.0.0"


def test_rollback_failure_is_reported(services, orchestrator, listing, installed, publish, downloader, tmp_path):
    publish(listing, "1.1.0", content_hash="0" * 64)

    class BackupWipingDownloader:
        def fetch(self, version, destination, *, timeout_s):
            shutil.rmtree(tmp_path / "backups" / "backups")
            return downloader.fetch(version, destination, timeout_s=timeout_s)

    orchestrator.downloader = BackupWipingDownloader()
    result = orchestrator.update(installed)

    assert result.error_code == "ROLLBACK_FAILED"
    assert result.rolled_back is False
    (entry,) = _history(services, installed)
    assert entry.status == "failed"
    assert "rollback failed" in entry.error


def test_update_all_and_security(services, orchestrator, publish):
    kits = {
        slug: services.catalog.create_listing(slug, slug.title())
        for slug in ("alpha-kit", "beta-kit", "gamma-kit")
    }
    for listing in kits.values():
        publish(listing, "1.0.0")
        services.lifecycle.install(listing, "t1")
    services.lifecycle.get_installation("gamma-kit", "t1").auto_update = False

    publish(kits["alpha-kit"], "1.1.0")
    publish(kits["gamma-kit"], "1.1.0")

    results = orchestrator.update_all("t1")
    assert list(results) == ["alpha-kit"]
    assert results["alpha-kit"]["success"] is True

    publish(kits["beta-kit"], "1.0.1", is_security_update=True)
    security = orchestrator.update_security()
    assert list(security) == ["t1/beta-kit"]
    assert services.lifecycle.get_installation("beta-kit", "t1").installed_version == "1.0.1"
    assert services.lifecycle.get_installation("gamma-kit", "t1").installed_version == "1.0.0"


def test_pending_updates_are_cleared_after_update(services, orchestrator, listing, installed, publish):
    publish(listing, "1.1.0", is_security_update=True, changelog="Fixes")

    found = orchestrator.check_updates("t1")

    assert found["report-kit"]["latest_version"] == "1.1.0"
    assert found["report-kit"]["is_security_update"] is True
    assert len(orchestrator.pending_updates("t1")) == 1
    assert orchestrator.update_summary("t1")["security"] == 1

    assert orchestrator.update(installed).success

    assert orchestrator.pending_updates("t1") == []
    pending = services.session.query(PendingUpdate).one()
    assert pending.status == "installed"
    summary = orchestrator.update_summary("t1")
    assert summary["pending"] == 0
    assert summary["installed_today"] == 1
    assert orchestrator.check_updates("t1") == {}


def test_sync_remote_updates_mirrors_new_versions(
    services, orchestrator, listing, installed, remote, downloader, make_archive, tmp_path
):
    archive = tmp_path / "remote" / "report-kit-1.1.0.zip"
    digest = make_archive(archive, "report-kit", "1.1.0")
    downloader.register("https://cdn.test/report-kit/remote-1.1.0.zip", archive)
    remote.check_updates.return_value = [
        {
            "marketplace_id": "mp-1",
            "latest_version": "1.1.0",
            "package_hash": digest,
            "download_url": "https://cdn.test/report-kit/remote-1.1.0.zip",
            "changelog": "Remote release",
        },
        {"marketplace_id": "unknown", "latest_version": "3.0.0"},
    ]

    result = orchestrator.sync_remote_updates("t1")

    assert result["success"] is True
    assert result["mirrored"] == ["report-kit@1.1.0"]
    assert result["pending"]["report-kit"]["latest_version"] == "1.1.0"
    remote.check_updates.assert_called_once_with(
        [{"marketplace_id": "mp-1", "slug": "report-kit", "version": "1.0.0"}], tenant_id="t1"
    )

    assert orchestrator.update(installed).success
    assert _version_file(installed) == "1.1.0"


def test_sync_remote_updates_when_unreachable(orchestrator, installed, remote):
    remote.check_updates.side_effect = RemoteUnreachableError("down")

    result = orchestrator.sync_remote_updates("t1")

    assert result == {"success": False, "error_code": "REMOTE_UNREACHABLE", "message": "down"}


def test_recover_interrupted_update(services, orchestrator, installed):
    install_dir = Path(installed.install_path)
    entry = services.history.start(installed, "1.1.0")
    backup = services.package_files.create_backup(install_dir, "report-kit", "1.0.0")
    services.history.attach_backup(entry, backup)
    orphan = services.history.start(installed, "1.2.0")
    services.session.commit()
    (install_dir / "VERSION").write_text("half-swapped")

    results = orchestrator.recover_interrupted()

    assert results[entry.id] == {"slug": "report-kit", "status": "rolled_back"}
    assert results[orphan.id] == {"slug": "report-kit", "status": "failed"}
    assert _version_file(installed) == "1.0.0"
    assert services.session.query(UpdateHistoryEntry).filter_by(status="in_progress").count() == 0
