# -*- coding: utf-8 -*-
"""
API HTTP Client

Talks to the PSLoader financial-data API.
Bearer token authentication and a retry policy for transient errors.
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import AppConfig

logger = logging.getLogger(__name__)


class NetworkOrApiError(Exception):
    """Generic non-2xx response or transport failure."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ValidationError(NetworkOrApiError):
    """Response carrying a list of field-level errors (usually 422)."""

    def __init__(self, errors: List[Dict[str, Any]], status_code: int = 422):
        self.errors = list(errors)
        super().__init__(format_validation_errors(self.errors), status_code, self.errors)


class AuthenticationError(NetworkOrApiError):
    """Token rejected (401). Terminal for the session."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Login rejected."""
    pass


class DeviceNotRegisteredError(NetworkOrApiError):
    """Device unknown to the server; register it first."""
    pass


class DevicePendingApprovalError(NetworkOrApiError):
    """Device registered but not yet approved by an administrator."""
    pass


class DeviceIdentityUnavailableError(Exception):
    """
    The device identity could not be built because the local store is
    unusable. Terminal for the device step; the level is left unchanged.
    """
    pass


class InsufficientSecurityLevelError(Exception):
    """A session step was called before the required level was reached."""

    def __init__(self, required: int, current: int):
        self.required = required
        self.current = current
        super().__init__(f"Security level {required} required, current level is {current}")


def format_validation_errors(errors: List[Dict[str, Any]]) -> str:
    """
    One readable message out of a FastAPI style detail array.

    Each entry becomes "loc -> path: msg"; entries without loc use "Field".
    """
    lines = []
    for error in errors:
        if isinstance(error, dict):
            loc = error.get('loc')
            path = " -> ".join(str(part) for part in loc) if loc else "Field"
            lines.append(f"{path}: {error.get('msg', 'invalid value')}")
        else:
            lines.append(str(error))
    return "Validation errors:\n" + "\n".join(lines)


def _detail_text(detail: Any) -> str:
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        return str(detail.get('message') or detail.get('detail') or detail)
    return str(detail) if detail is not None else ""


class ApiClient:
    """
    PSLoader API HTTP client.

    Features:
    - Bearer token from an injected token provider (the session manager)
    - Automatic retry of idempotent requests (GET, PUT, DELETE) on 429/5xx;
      POST and PATCH are sent once
    - requests exceptions wrapped in NetworkOrApiError
    - Field-level detail arrays raised as ValidationError
    """

    def __init__(self, config: AppConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or self._create_session()
        self.token_provider: Callable[[], Optional[str]] = lambda: None
        self.on_unauthorized: Optional[Callable[[], None]] = None

    def _create_session(self) -> requests.Session:
        """Session with the retry policy mounted."""
        session = requests.Session()

        retry_strategy = Retry(
            total=self.config.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            'Accept': 'application/json',
        })

        return session

    def _get_url(self, endpoint: str) -> str:
        return urljoin(self.config.api_base_url.rstrip('/') + '/', endpoint.lstrip('/'))

    def _auth_headers(self) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            raise AuthenticationError("No access token available")
        return {'Authorization': f'Bearer {token}'}

    def _request(self, method: str, endpoint: str, *, auth: bool = True,
                 timeout: Optional[int] = None, **kwargs) -> Any:
        """
        Send a request and decode the JSON body.

        Raises:
            AuthenticationError: 401 or no token
            ValidationError: detail list (422)
            NetworkOrApiError: any other failure
        """
        headers = kwargs.pop('headers', {})
        if auth:
            headers.update(self._auth_headers())

        url = self._get_url(endpoint)
        try:
            response = self._session.request(
                method,
                url,
                headers=headers,
                timeout=timeout or self.config.request_timeout,
                verify=self.config.verify_ssl,
                **kwargs
            )
        except requests.RequestException as e:
            logger.warning(f"{method} {endpoint} failed: {e}")
            raise NetworkOrApiError(f"Request to {endpoint} failed: {e}") from e

        if not response.ok:
            self._raise_for_response(method, endpoint, response)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkOrApiError(
                f"Invalid JSON from {endpoint}", response.status_code
            ) from e

    def _raise_for_response(self, method: str, endpoint: str, response: requests.Response):
        try:
            detail = response.json().get('detail')
        except (ValueError, AttributeError):
            detail = response.text or None

        status = response.status_code
        logger.warning(f"{method} {endpoint} -> {status}: {detail}")

        if status == 401:
            if self.on_unauthorized is not None:
                self.on_unauthorized()
            raise AuthenticationError(_detail_text(detail) or "Not authenticated", status, detail)
        if isinstance(detail, list):
            raise ValidationError(detail, status)
        raise NetworkOrApiError(
            _detail_text(detail) or f"{method} {endpoint} failed with status {status}",
            status,
            detail,
        )

    # ============================================================
    # AUTH ENDPOINTS
    # ============================================================

    def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Password login (form encoded).

        Returns:
            {access_token, token_type, settings}
        """
        return self._request(
            'POST', '/auth/login',
            auth=False,
            data={'username': username, 'password': password},
        )

    def get_current_user(self) -> Dict[str, Any]:
        return self._request('GET', '/auth/me')

    def get_my_ou_access(self) -> List[Dict[str, Any]]:
        return self._request('GET', '/users/ou-access/my-access') or []

    def verify_device(self, device_id: str, device_secret: str) -> Dict[str, Any]:
        return self._request(
            'POST', '/devices/verify',
            json={'device_id': device_id, 'device_secret': device_secret},
        )

    def register_device(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns:
            {message, device_id, status: pending|approved}
        """
        return self._request('POST', '/devices/register', json=payload)

    def generate_totp(self) -> Dict[str, Any]:
        return self._request('POST', '/auth/totp/generate')

    def verify_totp(self, code: str) -> Dict[str, Any]:
        return self._request('POST', '/auth/totp/verify', json={'totp_code': code})

    # ============================================================
    # HOTELS / IMPORT GROUPS
    # ============================================================

    def get_hotels(self) -> List[Dict[str, Any]]:
        return self._request('GET', '/hotels/') or []

    def get_import_groups(self, ou: str) -> List[Dict[str, Any]]:
        return self._request('GET', f'/hotels/{ou}/import_groups') or []

    # ============================================================
    # MAPPING CONFIGS
    # ============================================================

    def get_mapping_config(self, config_id: int) -> Dict[str, Any]:
        return self._request('GET', f'/mappings/configs/{config_id}')

    def get_mappings(self, config_id: int) -> List[Dict[str, Any]]:
        return self._request('GET', f'/mappings/configs/{config_id}/mappings') or []

    def patch_mapping_config(self, config_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._request('PATCH', f'/mappings/configs/{config_id}', json=updates)

    # ============================================================
    # MAPPING TABLES
    # ============================================================

    def get_mapping_tables_version(self) -> Dict[str, Any]:
        return self._request('GET', '/mapping-tables/version')

    def get_mapping_tables_data(self) -> Dict[str, Any]:
        """account_maps and department_maps; several thousand rows."""
        return self._request('GET', '/mapping-tables/data', timeout=self.config.upload_timeout)

    def get_mapping_tables_combos(self) -> Dict[str, Any]:
        return self._request('GET', '/mapping-tables/combos', timeout=self.config.upload_timeout)

    # ============================================================
    # SUBMITTED DATA / UPLOAD PERIODS
    # ============================================================

    def upload_submitted_data(self, data: List[Dict[str, Any]], signed_by: str) -> Dict[str, Any]:
        return self._request(
            'POST', '/submitted-data/bulk',
            json={'data': data, 'signed_by': signed_by},
            timeout=self.config.upload_timeout,
        )

    def get_upload_periods(self, ou: str) -> List[Dict[str, Any]]:
        return self._request('GET', '/upload-periods/', params={'ou': ou}) or []

    # ============================================================
    # VALIDATIONS / FINANCIAL DATA
    # ============================================================

    def get_validations(self, ou: str) -> List[Dict[str, Any]]:
        """Validation checks configured for an OU, in run order."""
        return self._request('GET', f'/validations/ou/{ou}') or []

    def get_financial_data(self, ou: str) -> List[Dict[str, Any]]:
        """Actual, budget and forecast rows of an OU."""
        return self._request(
            'GET', '/act-bud-fcst-data/',
            params={'ou': ou},
            timeout=self.config.upload_timeout,
        ) or []
