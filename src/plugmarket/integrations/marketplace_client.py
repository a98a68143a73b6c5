from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from plugmarket.config import get_settings
from plugmarket.exceptions import RemoteRejectedError, RemoteUnreachableError
from plugmarket.integrations.http import build_outbound_headers

logger = logging.getLogger(__name__)


class MarketplaceClient:
    """
    Client for the remote marketplace authority (licenses, update feed and
    package downloads).

    Transport failures and timeouts surface as ``RemoteUnreachableError``;
    non-2xx answers surface as ``RemoteRejectedError`` carrying the
    authority's message.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        download_timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.MARKETPLACE_BASE_URL).rstrip("/")
        self.api_key = (api_key if api_key is not None else settings.MARKETPLACE_API_KEY).strip()
        self.timeout_s = timeout_s or settings.MARKETPLACE_TIMEOUT_SECONDS
        self.download_timeout_s = download_timeout_s or settings.DOWNLOAD_TIMEOUT_SECONDS
        self.site_url = settings.INSTANCE_URL
        self.runtime_version = settings.effective_runtime_version
        self.platform_version = settings.PLATFORM_VERSION
        self._instance_id = settings.INSTANCE_ID.strip()
        self._transport = transport

    @property
    def instance_id(self) -> str:
        if not self._instance_id:
            seed = f"{self.site_url}|{self.base_url}"
            self._instance_id = hashlib.sha256(seed.encode("utf-8")).hexdigest()
        return self._instance_id

    # -- licenses -------------------------------------------------------

    def activate_license(
        self,
        license_key: str,
        plugin_slug: str,
        email: str,
        *,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._post(
            "/licenses/activate",
            {
                "license_key": license_key,
                "plugin_slug": plugin_slug,
                "email": email,
                "domain": self.site_url,
                "instance_id": self.instance_id,
            },
            tenant_id=tenant_id,
        )

    def verify_license(
        self, license_key: str, plugin_slug: str, *, tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return self._post(
            "/licenses/verify",
            {
                "license_key": license_key,
                "plugin_slug": plugin_slug,
                "domain": self.site_url,
                "instance_id": self.instance_id,
            },
            tenant_id=tenant_id,
        )

    def deactivate_license(
        self, license_key: str, instance_id: Optional[str], *, tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return self._post(
            "/licenses/deactivate",
            {"license_key": license_key, "instance_id": instance_id or self.instance_id},
            tenant_id=tenant_id,
        )

    # -- updates --------------------------------------------------------

    def check_updates(
        self, plugins: List[Dict[str, Any]], *, tenant_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Ask the authority which of ``plugins`` (``marketplace_id``, ``slug``,
        ``version``) have a newer release.
        """
        data = self._post(
            "/updates/check",
            {
                "plugins": plugins,
                "runtime_version": self.runtime_version,
                "platform_version": self.platform_version,
            },
            tenant_id=tenant_id,
        )
        updates = data.get("updates", data.get("data", []))
        return [u for u in updates or [] if isinstance(u, dict)]

    def get_download_url(
        self,
        marketplace_id: str,
        version: str,
        *,
        license_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[str]:
        data = self._post(
            "/downloads/url",
            {
                "plugin_id": marketplace_id,
                "version": version,
                "license_key": license_key,
                "instance_id": self.instance_id,
            },
            tenant_id=tenant_id,
        )
        return data.get("download_url")

    def download_package(
        self,
        url: str,
        destination: Path,
        *,
        timeout_s: Optional[float] = None,
        tenant_id: Optional[str] = None,
    ) -> Path:
        headers = self._headers(tenant_id)
        timeout = timeout_s or self.download_timeout_s
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")
        try:
            with self._client(timeout) as client:
                with client.stream("GET", url, headers=headers) as resp:
                    resp.raise_for_status()
                    with open(partial, "wb") as handle:
                        for chunk in resp.iter_bytes():
                            handle.write(chunk)
            os.replace(partial, destination)
        except httpx.HTTPStatusError as exc:
            raise RemoteRejectedError(
                f"Package download rejected ({exc.response.status_code}): {url}",
                details={"status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteUnreachableError(f"Package download failed: {exc}") from exc
        finally:
            if partial.exists():
                partial.unlink()
        return destination

    # -- helpers --------------------------------------------------------

    def _client(self, timeout_s: float) -> httpx.Client:
        kwargs: Dict[str, Any] = {"base_url": self.base_url, "timeout": timeout_s}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def _headers(self, tenant_id: Optional[str]) -> dict[str, str]:
        return build_outbound_headers(
            tenant_id=tenant_id,
            instance_id=self.instance_id,
            site_url=self.site_url,
            api_key=self.api_key,
        ).as_dict()

    def _post(
        self, path: str, payload: Dict[str, Any], *, tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        headers = self._headers(tenant_id)
        try:
            with self._client(self.timeout_s) as client:
                resp = client.post(path, json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500:
                raise RemoteUnreachableError(
                    f"Marketplace unavailable ({status}) for {path}",
                    details={"status": status, "path": path},
                ) from exc
            raise RemoteRejectedError(
                _error_message(exc.response),
                details={"status": status, "path": path},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Marketplace request %s failed: %s", path, exc)
            raise RemoteUnreachableError(f"Marketplace unreachable: {exc}") from exc
        except ValueError as exc:
            raise RemoteRejectedError(f"Marketplace returned invalid JSON for {path}") from exc
        return data if isinstance(data, dict) else {"data": data}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"Marketplace API error: {response.status_code}"


class MarketplaceDownloader:
    """Fetches a version's archive from its package URL via the client."""

    def __init__(self, client: MarketplaceClient, *, tenant_id: Optional[str] = None) -> None:
        self.client = client
        self.tenant_id = tenant_id

    def fetch(self, version, destination: Path, *, timeout_s: float) -> Path:
        url = version.package_url
        listing = version.listing
        if not url and listing is not None and listing.marketplace_id:
            url = self.client.get_download_url(
                listing.marketplace_id, version.version, tenant_id=self.tenant_id
            )
        if not url:
            raise RemoteRejectedError(
                f"No download URL for {listing.slug if listing else '?'}@{version.version}"
            )
        return self.client.download_package(
            url, destination, timeout_s=timeout_s, tenant_id=self.tenant_id
        )
