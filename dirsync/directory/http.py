"""REST client for the directory service, built on ``httpx.AsyncClient``.

Resource layout::

    GET    /directories/{d}
    GET    /directories/{d}/grants/{g}
    GET    /directories/{d}/principals?limit=&after=
    GET    /directories/{d}/principals/{p}
    DELETE /directories/{d}/principals/{p}                 (expel)
    PUT    /directories/{d}/principals/{p}/grants/{g}
    DELETE /directories/{d}/principals/{p}/grants/{g}
    GET    /directories/{d}/exclusions
    GET    /directories/{d}/exclusions/{p}
    PUT    /directories/{d}/exclusions/{p}
    DELETE /directories/{d}/exclusions/{p}
    GET    /directories/{d}/audit-log?action=principal.expel&limit=

Audit reasons travel in the ``X-Audit-Log-Reason`` header. Status codes are
mapped onto the engine's error taxonomy; the client itself never retries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from dirsync.errors import NotFoundError, RateLimitedError, TransientError, UnauthorizedError
from dirsync.models.directory import AdminRemovalRecord, Directory, Exclusion, Grant, Member
from dirsync.directory.base import DirectoryService

PAGE_SIZE = 1000
EXPEL_ACTION = "principal.expel"
REASON_HEADER = "X-Audit-Log-Reason"


class HttpDirectoryService(DirectoryService):
    """``DirectoryService`` over HTTP.

    Parameters
    ----------
    base_url : str
        Root of the REST API.
    token : str
        Bearer token sent with every request.
    timeout : float
        Per-request timeout in seconds (one retry-engine attempt).
    transport : httpx.AsyncBaseTransport | None
        Optional transport, mainly for tests (``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- transport -----------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        reason: str = "",
    ) -> httpx.Response:
        headers = {REASON_HEADER: reason} if reason else None
        try:
            resp = await self._client.request(method, path, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError(f"{method} {path} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientError(f"Failed to reach directory service: {exc}") from exc

        status = resp.status_code
        if status == 429:
            raise RateLimitedError(f"{method} {path} rate limited", retry_after=_retry_after(resp))
        if status in (401, 403):
            raise UnauthorizedError(f"{method} {path} rejected with {status}")
        if status == 404:
            raise NotFoundError(f"{method} {path} not found")
        if status >= 500:
            raise TransientError(f"{method} {path} failed with {status}")
        if status >= 400:
            raise UnauthorizedError(f"{method} {path} refused with {status}: {resp.text[:200]}")
        return resp

    async def _get_optional(self, path: str) -> Optional[dict]:
        try:
            resp = await self._request("GET", path)
        except NotFoundError:
            return None
        return resp.json()

    # -- reads ---------------------------------------------------------------

    async def fetch_directory(self, directory_id: str) -> Optional[Directory]:
        data = await self._get_optional(f"/directories/{directory_id}")
        if data is None:
            return None
        return Directory(id=str(data.get("id", directory_id)), name=data.get("name", ""))

    async def fetch_principal(self, directory_id: str, principal_id: str) -> Optional[Member]:
        data = await self._get_optional(f"/directories/{directory_id}/principals/{principal_id}")
        if data is None:
            return None
        return _member(directory_id, data)

    async def fetch_grant(self, directory_id: str, grant_id: str) -> Optional[Grant]:
        data = await self._get_optional(f"/directories/{directory_id}/grants/{grant_id}")
        if data is None:
            return None
        return Grant(id=str(data.get("id", grant_id)), directory_id=directory_id, name=data.get("name", ""))

    async def list_principals(self, directory_id: str) -> list[Member]:
        members: list[Member] = []
        after: str | None = None
        while True:
            params: dict[str, Any] = {"limit": PAGE_SIZE}
            if after:
                params["after"] = after
            resp = await self._request("GET", f"/directories/{directory_id}/principals", params=params)
            data = resp.json()
            page = data.get("principals", [])
            members.extend(_member(directory_id, item) for item in page)
            after = data.get("next_cursor")
            if not after or not page:
                break
        return members

    async def list_exclusions(self, directory_id: str) -> list[Exclusion]:
        resp = await self._request("GET", f"/directories/{directory_id}/exclusions")
        return [
            Exclusion(
                principal_id=str(item["principal_id"]),
                directory_id=directory_id,
                reason=item.get("reason") or "",
            )
            for item in resp.json().get("exclusions", [])
        ]

    async def fetch_exclusion(self, directory_id: str, principal_id: str) -> Optional[Exclusion]:
        data = await self._get_optional(f"/directories/{directory_id}/exclusions/{principal_id}")
        if data is None:
            return None
        return Exclusion(principal_id=principal_id, directory_id=directory_id, reason=data.get("reason") or "")

    async def list_admin_removals(self, directory_id: str, limit: int = 5) -> list[AdminRemovalRecord]:
        resp = await self._request(
            "GET",
            f"/directories/{directory_id}/audit-log",
            params={"action": EXPEL_ACTION, "limit": limit},
        )
        records = []
        for entry in resp.json().get("entries", []):
            if entry.get("action", EXPEL_ACTION) != EXPEL_ACTION:
                continue
            records.append(
                AdminRemovalRecord(
                    principal_id=str(entry.get("target_id", "")),
                    directory_id=directory_id,
                    created_at=_timestamp(entry.get("created_at")),
                    actor_id=str(entry.get("actor_id", "")),
                    reason=entry.get("reason") or "",
                )
            )
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    # -- mutations -----------------------------------------------------------

    async def add_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        await self._request(
            "PUT", f"/directories/{directory_id}/principals/{principal_id}/grants/{grant_id}", reason=reason
        )

    async def remove_grant(self, directory_id: str, principal_id: str, grant_id: str, reason: str = "") -> None:
        await self._request(
            "DELETE", f"/directories/{directory_id}/principals/{principal_id}/grants/{grant_id}", reason=reason
        )

    async def add_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        await self._request("PUT", f"/directories/{directory_id}/exclusions/{principal_id}", reason=reason)

    async def remove_exclusion(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        await self._request("DELETE", f"/directories/{directory_id}/exclusions/{principal_id}", reason=reason)

    async def remove_principal(self, directory_id: str, principal_id: str, reason: str = "") -> None:
        await self._request("DELETE", f"/directories/{directory_id}/principals/{principal_id}", reason=reason)


def _member(directory_id: str, data: dict) -> Member:
    return Member(
        principal_id=str(data["id"]),
        directory_id=directory_id,
        grant_ids=frozenset(str(g) for g in data.get("grant_ids", [])),
        display_name=data.get("display_name", ""),
    )


def _retry_after(resp: httpx.Response) -> float:
    header = resp.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        return float(resp.json().get("retry_after", 0.0))
    except (ValueError, AttributeError):
        return 0.0


def _timestamp(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return 0.0
