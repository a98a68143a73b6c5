from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class OutboundHeaders:
    tenant_id: Optional[str]
    instance_id: Optional[str]
    site_url: Optional[str]
    authorization: Optional[str]

    def as_dict(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.tenant_id:
            headers["x-tenant-id"] = self.tenant_id
        if self.instance_id:
            headers["x-instance-id"] = self.instance_id
        if self.site_url:
            headers["X-Site-URL"] = self.site_url
        if self.authorization:
            headers["Authorization"] = self.authorization
        return headers


def build_outbound_headers(
    *,
    tenant_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    site_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> OutboundHeaders:
    authorization = None
    if api_key:
        authorization = api_key if api_key.lower().startswith("bearer ") else f"Bearer {api_key}"
    return OutboundHeaders(
        tenant_id=tenant_id,
        instance_id=instance_id,
        site_url=site_url,
        authorization=authorization,
    )
