"""
Minimal async client for the Supabase REST (PostgREST) interface.

Usage:
    client = SupabaseClient(settings.supabase_url, settings.supabase_service_key)
    user = await client.select_one("users", {"email": "a@b.co"})
    row = await client.insert("users", {...})
"""
from typing import Any, Dict, List, Mapping, Optional

import httpx

from lms_server.utils.logger import get_logger

log = get_logger(__name__)

UNIQUE_VIOLATION = "23505"


class SupabaseError(Exception):
    """Non-2xx response from the REST endpoint"""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION


def _eq_filters(filters: Mapping[str, Any]) -> Dict[str, str]:
    params = {}
    for column, value in filters.items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


class SupabaseClient:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, table: str, **kwargs) -> List[Dict[str, Any]]:
        response = await self._client.request(method, f"/{table}", **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"message": response.text}
            if not isinstance(body, dict):
                body = {"message": str(body)}
            message = body.get("message") or f"HTTP {response.status_code}"
            log.warning(
                f"[supabase] {method} {table} failed",
                extra={"status": response.status_code, "error": message[:200]},
            )
            raise SupabaseError(response.status_code, message, body.get("code"))
        if not response.content:
            return []
        data = response.json()
        return data if isinstance(data, list) else [data]

    async def select_one(
        self,
        table: str,
        filters: Mapping[str, Any],
        columns: str = "*",
    ) -> Optional[Dict[str, Any]]:
        """First row matching all equality filters, or None"""
        params = {"select": columns, "limit": "1", **_eq_filters(filters)}
        rows = await self._request("GET", table, params=params)
        return rows[0] if rows else None

    async def insert(self, table: str, row: Mapping[str, Any], columns: str = "*") -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            table,
            params={"select": columns},
            json=[dict(row)],
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise SupabaseError(500, f"Insert into {table} returned no rows")
        return rows[0]

    async def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> Optional[Dict[str, Any]]:
        rows = await self._request(
            "PATCH",
            table,
            params=_eq_filters(filters),
            json=dict(values),
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else None
