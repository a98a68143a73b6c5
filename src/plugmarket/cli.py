from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import typer

from plugmarket import __version__
from plugmarket.config import get_settings

app = typer.Typer(add_completion=False, help="Plugin marketplace lifecycle CLI")


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@contextmanager
def _services() -> Iterator[Any]:
    from plugmarket.database import get_db_session
    from plugmarket.marketplace.services import build_services

    with get_db_session() as session:
        yield build_services(session)


def _installation(services: Any, slug: str, tenant: str):
    installation = services.lifecycle.get_installation(slug, tenant)
    if installation is None:
        _echo({"success": False, "error_code": "NOT_INSTALLED", "message": f"{slug} is not installed for {tenant}"})
        raise typer.Exit(code=1)
    return installation


def _listing(services: Any, slug: str):
    listing = services.catalog.get_listing(slug)
    if listing is None:
        _echo({"success": False, "error_code": "NOT_FOUND", "message": f"Unknown package {slug}"})
        raise typer.Exit(code=1)
    return listing


def _finish(result: Any) -> None:
    payload = result.to_dict()
    _echo(payload)
    if not payload.get("success", payload.get("valid", True)):
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command("init-db")
def init_db_cmd() -> None:
    """Create the marketplace tables (SCHEMA_MODE=create_all)."""
    from plugmarket.database import init_db

    init_db(create_tables=True)
    typer.echo(f"Database initialized: {get_settings().DATABASE_URL}")


@app.command("create-listing")
def create_listing(
    slug: str = typer.Argument(..., help="Package slug"),
    name: str = typer.Option(..., help="Display name"),
    pricing: str = typer.Option("free", help="free|paid|freemium"),
    trial_days: int = typer.Option(0, help="Trial length for paid packages"),
    marketplace_id: Optional[str] = typer.Option(None, help="Remote marketplace id"),
) -> None:
    from plugmarket.exceptions import MarketplaceError

    with _services() as services:
        try:
            listing = services.catalog.create_listing(
                slug,
                name,
                pricing_model=pricing,
                trial_days=trial_days,
                marketplace_id=marketplace_id,
            )
        except MarketplaceError as exc:
            _echo({"success": False, **exc.to_dict()})
            raise typer.Exit(code=1)
        _echo({"success": True, "id": listing.id, "slug": listing.slug})


@app.command()
def publish(
    slug: str = typer.Argument(..., help="Package slug"),
    version_string: str = typer.Argument(..., metavar="VERSION", help="Version string"),
    content_hash: str = typer.Option(..., "--hash", help="sha256 of the package archive"),
    package_url: str = typer.Option(..., "--url", help="Download URL of the archive"),
    size: int = typer.Option(0, help="Archive size in bytes"),
    min_runtime: Optional[str] = typer.Option(None, help="Minimum runtime version"),
    min_platform: Optional[str] = typer.Option(None, help="Minimum platform version"),
    depends: Optional[str] = typer.Option(
        None, help='Dependencies as JSON, e.g. \'{"base-kit": "^1.2"}\''
    ),
    changelog: Optional[str] = typer.Option(None, help="Changelog text"),
    security: bool = typer.Option(False, help="Mark as a security update"),
) -> None:
    from plugmarket.exceptions import MarketplaceError

    with _services() as services:
        listing = _listing(services, slug)
        try:
            published = services.catalog.publish(
                listing,
                version_string,
                {
                    "content_hash": content_hash,
                    "package_url": package_url,
                    "size_bytes": size,
                    "min_runtime_version": min_runtime,
                    "min_platform_version": min_platform,
                    "dependencies": json.loads(depends) if depends else {},
                    "changelog": changelog,
                    "is_security_update": security,
                },
            )
        except MarketplaceError as exc:
            _echo({"success": False, **exc.to_dict()})
            raise typer.Exit(code=1)
        _echo({"success": True, "version": published.version, "channel": published.channel})


@app.command()
def yank(
    slug: str = typer.Argument(...),
    version_string: str = typer.Argument(..., metavar="VERSION"),
    reason: str = typer.Option(..., help="Why the version is withdrawn"),
) -> None:
    with _services() as services:
        listing = _listing(services, slug)
        target = services.catalog.resolve(listing, version_string)
        if target is None:
            _echo({"success": False, "error_code": "NO_VERSION_AVAILABLE"})
            raise typer.Exit(code=1)
        services.catalog.yank(target, reason)
        _echo({"success": True, "version": target.version, "yanked": True})


@app.command()
def install(
    slug: str = typer.Argument(...),
    tenant: str = typer.Option(..., "--tenant", help="Tenant id"),
    channel: Optional[str] = typer.Option(None, help="stable|beta|alpha|rc"),
) -> None:
    with _services() as services:
        _finish(services.lifecycle.install(_listing(services, slug), tenant, channel))


@app.command()
def activate(slug: str = typer.Argument(...), tenant: str = typer.Option(..., "--tenant")) -> None:
    with _services() as services:
        _finish(services.lifecycle.activate(_installation(services, slug, tenant)))


@app.command()
def deactivate(slug: str = typer.Argument(...), tenant: str = typer.Option(..., "--tenant")) -> None:
    with _services() as services:
        _finish(services.lifecycle.deactivate(_installation(services, slug, tenant)))


@app.command()
def uninstall(slug: str = typer.Argument(...), tenant: str = typer.Option(..., "--tenant")) -> None:
    with _services() as services:
        _finish(services.lifecycle.uninstall(_installation(services, slug, tenant)))


@app.command()
def suspend(
    slug: str = typer.Argument(...),
    reason: str = typer.Option(..., help="Reason recorded on the installation(s)"),
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Only this tenant; all tenants if omitted"),
) -> None:
    with _services() as services:
        if tenant is None:
            count = services.lifecycle.suspend_all(_listing(services, slug), reason)
            _echo({"success": True, "suspended": count})
            return
        _finish(services.lifecycle.suspend(_installation(services, slug, tenant), reason))


@app.command("activate-license")
def activate_license(
    slug: str = typer.Argument(...),
    key: str = typer.Option(..., help="License key"),
    email: str = typer.Option(..., help="Contact email"),
    tenant: str = typer.Option(..., "--tenant"),
) -> None:
    with _services() as services:
        _finish(services.lifecycle.activate_license(_installation(services, slug, tenant), key, email))


@app.command()
def update(
    slug: str = typer.Argument(...),
    tenant: str = typer.Option(..., "--tenant"),
    to: Optional[str] = typer.Option(None, "--to", help="Explicit target version"),
    timeout: Optional[float] = typer.Option(None, help="Pipeline deadline in seconds"),
) -> None:
    with _services() as services:
        _finish(
            services.orchestrator.update(
                _installation(services, slug, tenant), to, timeout_s=timeout
            )
        )


@app.command()
def rollback(
    slug: str = typer.Argument(...),
    version_string: str = typer.Argument(..., metavar="VERSION"),
    tenant: str = typer.Option(..., "--tenant"),
) -> None:
    with _services() as services:
        _finish(
            services.orchestrator.rollback_to(
                _installation(services, slug, tenant), version_string
            )
        )


@app.command("update-all")
def update_all(tenant: str = typer.Option(..., "--tenant")) -> None:
    with _services() as services:
        _echo(services.orchestrator.update_all(tenant))


@app.command("update-security")
def update_security(tenant: Optional[str] = typer.Option(None, "--tenant")) -> None:
    with _services() as services:
        _echo(services.orchestrator.update_security(tenant))


@app.command("expire-trials")
def expire_trials() -> None:
    with _services() as services:
        _echo({"expired": services.lifecycle.expire_trials()})


@app.command("verify-licenses")
def verify_licenses(tenant: Optional[str] = typer.Option(None, "--tenant")) -> None:
    with _services() as services:
        _echo(services.license_gate.verify_all(tenant))


@app.command("check-updates")
def check_updates(
    tenant: str = typer.Option(..., "--tenant"),
    remote: bool = typer.Option(False, help="Query the remote marketplace feed first"),
) -> None:
    with _services() as services:
        if remote:
            _echo(services.orchestrator.sync_remote_updates(tenant))
        else:
            _echo(services.orchestrator.check_updates(tenant))


@app.command()
def recover() -> None:
    """Restore installations left mid-update by a crashed process."""
    with _services() as services:
        _echo(services.orchestrator.recover_interrupted())


@app.command()
def status(tenant: str = typer.Option(..., "--tenant")) -> None:
    with _services() as services:
        _echo(
            {
                "installations": [
                    services.lifecycle.describe(i)
                    for i in services.lifecycle.list_installations(tenant)
                ],
                "stats": services.lifecycle.stats(tenant),
                "updates": services.orchestrator.update_summary(tenant),
                "licenses": services.license_gate.status_summary(),
            }
        )


if __name__ == "__main__":
    app()
