"""
Remote data API client for the WorkforceOne backend.
Talks to the hosted Postgres through Supabase's PostgREST endpoint.
"""

from typing import Any, Dict, Iterable, List, Optional

import requests

from wfo_shared.logging_config import get_sync_logger
from wfo_shared.models import ApiResponse, SyncConfig

logger = get_sync_logger()

REST_PATH = '/rest/v1'
HEALTH_PATH = '/auth/v1/health'


class RemoteApiError(Exception):
    """Raised by callers that want an exception instead of an ApiResponse"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _eq_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Translate {column: value} into PostgREST equality filters"""
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


def _in_filter(values: Iterable[Any]) -> str:
    return f"in.({','.join(str(v) for v in values)})"


class SupabaseClient:
    """
    Thin CRUD client returning ApiResponse(data, error).

    HTTP-level failures come back as ApiResponse.error; transport failures
    (timeouts, refused connections) raise requests exceptions to the caller.
    """

    def __init__(self, config: SyncConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or requests.Session()
        self._session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'WorkforceOne-Offline/1.0'
        })
        self.apply_credentials(config)

    def apply_credentials(self, config: SyncConfig):
        """Refresh auth headers after a config or session change"""
        self.config = config
        if config.api_key:
            self._session.headers['apikey'] = config.api_key
        else:
            self._session.headers.pop('apikey', None)

        bearer = config.access_token or config.api_key
        if bearer:
            self._session.headers['Authorization'] = f'Bearer {bearer}'
            logger.debug(f"Session initialized with credentials: {bearer[:8]}... (length={len(bearer)})")
        else:
            self._session.headers.pop('Authorization', None)
            logger.debug("No API credentials configured for session")

    def is_configured(self) -> bool:
        return bool(self.config.supabase_url and self.config.api_key)

    def _url(self, table: str) -> str:
        return f"{self.config.supabase_url}{REST_PATH}/{table}"

    @staticmethod
    def _to_response(response: requests.Response) -> ApiResponse:
        """Map an HTTP response to ApiResponse"""
        if response.status_code >= 400:
            try:
                body = response.json()
                message = body.get('message') or body.get('error') or response.text
            except ValueError:
                message = response.text
            return ApiResponse(
                error=f"HTTP {response.status_code}: {message}",
                status_code=response.status_code
            )

        data = None
        if response.content:
            try:
                data = response.json()
            except ValueError:
                data = response.text
        return ApiResponse(data=data, status_code=response.status_code)

    def health(self) -> bool:
        """True if the backend answers its health endpoint"""
        response = self._session.get(
            f"{self.config.supabase_url}{HEALTH_PATH}",
            timeout=3
        )
        if response.status_code == 401:
            logger.warning("Unauthorized (401) on health check - API key may be invalid")
        return response.status_code == 200

    def insert(self, table: str, rows: Any, returning: bool = False) -> ApiResponse:
        """Insert one row (dict) or many (list of dicts)"""
        headers = {'Prefer': 'return=representation' if returning else 'return=minimal'}
        response = self._session.post(
            self._url(table),
            json=rows,
            headers=headers,
            timeout=self.config.timeout
        )
        return self._to_response(response)

    def update(self, table: str, values: Dict[str, Any], filters: Dict[str, Any]) -> ApiResponse:
        """Update rows matching equality filters"""
        if not filters:
            # PostgREST would refuse anyway; never update a whole table
            return ApiResponse(error=f"Refusing unfiltered update on {table}")

        response = self._session.patch(
            self._url(table),
            params=_eq_filters(filters),
            json=values,
            headers={'Prefer': 'return=minimal'},
            timeout=self.config.timeout
        )
        return self._to_response(response)

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: Optional[str] = None) -> ApiResponse:
        """Insert or merge on the given conflict columns"""
        params = {'on_conflict': on_conflict} if on_conflict else None
        response = self._session.post(
            self._url(table),
            params=params,
            json=row,
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'},
            timeout=self.config.timeout
        )
        return self._to_response(response)

    def select(self, table: str, columns: str = '*', filters: Optional[Dict[str, Any]] = None,
               in_filters: Optional[Dict[str, Iterable[Any]]] = None,
               order: Optional[str] = None) -> ApiResponse:
        """Fetch rows; columns accepts PostgREST embedding syntax"""
        params: Dict[str, str] = {'select': ' '.join(columns.split())}
        params.update(_eq_filters(filters))
        for column, values in (in_filters or {}).items():
            params[column] = _in_filter(values)
        if order:
            params['order'] = order

        response = self._session.get(
            self._url(table),
            params=params,
            timeout=self.config.timeout
        )
        return self._to_response(response)

    def select_single(self, table: str, columns: str = '*',
                      filters: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Fetch exactly one row; zero or many rows is an error"""
        result = self.select(table, columns=columns, filters=filters)
        if not result.ok:
            return result
        rows: List[Dict[str, Any]] = result.data or []
        if len(rows) != 1:
            return ApiResponse(
                error=f"Expected one row from {table}, got {len(rows)}",
                status_code=result.status_code
            )
        return ApiResponse(data=rows[0], status_code=result.status_code)
