from __future__ import annotations

import pytest

from plugmarket.exceptions import InvalidStateError, ValidationError
from plugmarket.marketplace.models import PackageVersion

HASH = "a" * 64


@pytest.fixture()
def catalog(services):
    return services.catalog


@pytest.fixture()
def listing(catalog):
    return catalog.create_listing("report-kit", "Report Kit")


def _current(session, listing, channel):
    return (
        session.query(PackageVersion)
        .filter(
            PackageVersion.listing_id == listing.id,
            PackageVersion.channel == channel,
            PackageVersion.is_current.is_(True),
        )
        .all()
    )


def test_publish_derives_channel_and_moves_current_pointer(session, catalog, listing):
    first = catalog.publish(listing, "1.0.0", {"content_hash": HASH})
    beta = catalog.publish(listing, "1.1.0-beta.1", {"content_hash": HASH})
    second = catalog.publish(listing, "1.1.0", {"content_hash": HASH})

    assert beta.channel == "beta"
    assert first.channel == second.channel == "stable"
    assert [v.version for v in _current(session, listing, "stable")] == ["1.1.0"]
    assert [v.version for v in _current(session, listing, "beta")] == ["1.1.0-beta.1"]
    assert first.is_current is False


def test_single_current_version_per_channel_after_many_publishes(session, catalog, listing):
    for version in ["1.0.0", "1.0.1", "0.9.0", "2.0.0-rc.1", "2.0.0-rc.2", "1.2.0"]:
        catalog.publish(listing, version, {"content_hash": HASH})

    for channel in ("stable", "rc"):
        assert len(_current(session, listing, channel)) == 1


def test_publish_rejects_duplicate_and_invalid_versions(catalog, listing):
    catalog.publish(listing, "1.0.0", {"content_hash": HASH})

    with pytest.raises(ValidationError):
        catalog.publish(listing, "1.0.0", {"content_hash": HASH})
    with pytest.raises(ValidationError):
        catalog.publish(listing, "one-point-oh", {"content_hash": HASH})
    with pytest.raises(ValidationError):
        catalog.publish(listing, "1.0.1", {"content_hash": "not-a-hash"})
    with pytest.raises(ValidationError):
        catalog.publish(
            listing, "1.0.2", {"content_hash": HASH, "dependencies": {"x": ">=nope"}}
        )


def test_publish_on_retired_listing_is_rejected(catalog, listing):
    catalog.retire_listing(listing)
    assert listing.status == "retired"
    with pytest.raises(InvalidStateError):
        catalog.publish(listing, "1.0.0", {"content_hash": HASH})


def test_latest_uses_semantic_order_and_skips_yanked(catalog, listing):
    catalog.publish(listing, "1.10.0", {"content_hash": HASH})
    catalog.publish(listing, "1.9.0", {"content_hash": HASH})
    assert catalog.latest(listing, "stable").version == "1.10.0"

    catalog.yank(catalog.resolve(listing, "1.10.0"), "broken migration")
    assert catalog.latest(listing, "stable").version == "1.9.0"
    assert catalog.latest(listing, "beta") is None


def test_yank_keeps_current_pointer(catalog, listing):
    version = catalog.publish(listing, "1.0.0", {"content_hash": HASH})
    catalog.yank(version, "security issue")

    assert version.is_yanked
    assert version.yank_reason == "security issue"
    assert version.yanked_at is not None
    assert catalog.current(listing, "stable").id == version.id


def test_history_lists_non_yanked_newest_first(catalog, listing):
    for version in ["1.0.0", "1.1.0", "1.2.0"]:
        catalog.publish(listing, version, {"content_hash": HASH})
    catalog.yank(catalog.resolve(listing, "1.1.0"), "bad")

    assert [v.version for v in catalog.history(listing)] == ["1.2.0", "1.0.0"]
    assert [v.version for v in catalog.history(listing, limit=1)] == ["1.2.0"]


def test_resolve_and_compare(catalog, listing):
    catalog.publish(listing, "1.0.0", {"content_hash": HASH})
    assert catalog.resolve(listing, "1.0.0") is not None
    assert catalog.resolve(listing, "9.9.9") is None
    assert catalog.compare("1.0.0", "1.0.1") == -1


def test_create_listing_validation(catalog, listing):
    with pytest.raises(ValidationError):
        catalog.create_listing("report-kit", "Duplicate")
    with pytest.raises(ValidationError):
        catalog.create_listing("Bad Slug!", "Nope")
    with pytest.raises(ValidationError):
        catalog.create_listing("priced", "Priced", pricing_model="expensive")
    assert catalog.get_listing("report-kit").id == listing.id
