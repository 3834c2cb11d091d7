#Purpose: The backend "adapter/client".
#Sole responsibility: talk to the hosted REST/RPC API via HTTP and return plain rows.
#Encapsulates API-specific details:
#auth headers (apikey + bearer)
#URL construction (/rest/v1/<table>, /rest/v1/rpc/<name>)
#filter encoding (col=eq.value, col=in.(a,b), order=col.desc)
#error handling (every failure becomes BackendError)
#It should not contain order rules or visibility logic.

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .settings import BackendSettings, settings_from_env

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

_RESERVED = set(',()":')


class BackendError(Exception):
    """Raised when a REST/RPC call fails (HTTP error body or network failure)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 code: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(ch in _RESERVED for ch in text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class Query:
    """
    Chainable table query. Filters accumulate; a terminal call sends the request.

        client.table("orders").select("*").eq("user_id", uid).order("created_at").fetch()
    """

    def __init__(self, client: "BackendClient", table: str):
        self.client = client
        self.table_name = table
        self._columns = "*"
        self._filters: List[Tuple[str, str]] = []
        self._order: Optional[str] = None
        self._limit: Optional[int] = None

    # --- filters ---

    def select(self, columns: str = "*") -> "Query":
        # collapse whitespace so multi-line embed strings stay URL friendly
        self._columns = "".join(columns.split())
        return self

    def eq(self, column: str, value: Any) -> "Query":
        if value is None:
            self._filters.append((column, "is.null"))
        else:
            self._filters.append((column, f"eq.{_format_value(value)}"))
        return self

    def in_(self, column: str, values: Sequence[Any]) -> "Query":
        joined = ",".join(_format_value(v) for v in values)
        self._filters.append((column, f"in.({joined})"))
        return self

    def gte(self, column: str, value: Any) -> "Query":
        self._filters.append((column, f"gte.{_format_value(value)}"))
        return self

    def lte(self, column: str, value: Any) -> "Query":
        self._filters.append((column, f"lte.{_format_value(value)}"))
        return self

    def order(self, column: str, *, ascending: bool = True) -> "Query":
        self._order = f"{column}.{'asc' if ascending else 'desc'}"
        return self

    def limit(self, count: int) -> "Query":
        self._limit = count
        return self

    def params(self, include_select: bool = True) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        if include_select:
            params.append(("select", self._columns))
        params.extend(self._filters)
        if self._order:
            params.append(("order", self._order))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    # --- terminal calls ---

    def fetch(self) -> List[Row]:
        data = self.client.request("GET", self.table_name, params=self.params())
        return data or []

    def single(self) -> Row:
        """
        Exactly one row, otherwise BackendError.
        """
        rows = self.fetch()
        if len(rows) != 1:
            raise BackendError(
                f"Expected exactly one row from {self.table_name}, got {len(rows)}",
                code="PGRST116",
            )
        return rows[0]

    def maybe_single(self) -> Optional[Row]:
        """
        Zero or one row; more than one is an error.
        """
        rows = self.fetch()
        if len(rows) > 1:
            raise BackendError(
                f"Expected at most one row from {self.table_name}, got {len(rows)}",
                code="PGRST116",
            )
        return rows[0] if rows else None

    def update(self, values: Row) -> List[Row]:
        data = self.client.request(
            "PATCH", self.table_name,
            params=self.params(include_select=False),
            json=values,
            prefer="return=representation",
        )
        return data or []

    def insert(self, values: Any) -> List[Row]:
        data = self.client.request(
            "POST", self.table_name, json=values, prefer="return=representation"
        )
        return data or []

    def upsert(self, values: Any, *, on_conflict: Optional[str] = None) -> List[Row]:
        params = [("on_conflict", on_conflict)] if on_conflict else None
        data = self.client.request(
            "POST", self.table_name, params=params, json=values,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return data or []

    def delete(self) -> List[Row]:
        data = self.client.request(
            "DELETE", self.table_name,
            params=self.params(include_select=False),
            prefer="return=representation",
        )
        return data or []


class BackendClient:
    """
    REST / RPC adapter for the hosted backend.

    Sole responsibility:
    - Talk to the backend via HTTP
    - Attach auth headers
    - Return decoded JSON or raise BackendError
    """

    def __init__(self, settings: Optional[BackendSettings] = None,
                 session: Optional[requests.Session] = None):
        self.settings = settings or settings_from_env()
        self.session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        token = self.settings.access_token or self.settings.anon_key
        headers = {
            "apikey": self.settings.anon_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def request(self, method: str, path: str, *, params=None, json=None,
                prefer: Optional[str] = None) -> Any:
        url = f"{self.settings.rest_url}/{path}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(prefer),
                timeout=self.settings.timeout,
            )
        except requests.RequestException as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        if not response.ok:
            raise self._error_from(response, f"{method} {path}")

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_from(response, action: str) -> BackendError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or response.text or f"HTTP {response.status_code}"
        return BackendError(
            f"{action}: {message}",
            status_code=response.status_code,
            code=body.get("code"),
            details=body.get("details"),
        )

    # --- public API ---

    def table(self, name: str) -> Query:
        return Query(self, name)

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Call a stored procedure by name. Returns its decoded result.
        """
        logger.debug("rpc %s", name)
        return self.request("POST", f"rpc/{name}", json=params or {})
