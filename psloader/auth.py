# -*- coding: utf-8 -*-
"""
Authentication Session

Owns the access token and the security level and walks a session through
the trust levels:

    0 UNAUTHENTICATED -> 1 PASSWORD_OK -> 2 DEVICE_VERIFIED -> 3 ELEVATED

Levels only move forward through successful steps and drop back to 0 only
through clear_auth() (sign-out or a 401).
"""

import logging
import sqlite3
import threading
from enum import IntEnum
from typing import Any, Dict, List, Optional

from .api_client import (
    ApiClient,
    AuthenticationError,
    DeviceIdentityUnavailableError,
    DeviceNotRegisteredError,
    DevicePendingApprovalError,
    InsufficientSecurityLevelError,
    InvalidCredentialsError,
    NetworkOrApiError,
)
from .identity import DeviceIdentity, DeviceIdentityProvider
from .store import LocalStoreUnavailableError

logger = logging.getLogger(__name__)


class SecurityLevel(IntEnum):
    UNAUTHENTICATED = 0
    PASSWORD_OK = 1
    DEVICE_VERIFIED = 2
    ELEVATED = 3


def _is_pending(error: NetworkOrApiError) -> bool:
    text = str(error).lower()
    return error.status_code == 403 or 'pending' in text or 'approv' in text


class SessionManager:
    """
    Authentication session manager.

    The only writer of token and level. Registers itself as the token
    provider of the API client.
    """

    def __init__(self, api: ApiClient, identity: DeviceIdentityProvider):
        self.api = api
        self.identity = identity
        self._lock = threading.RLock()
        self._access_token: Optional[str] = None
        self._level = SecurityLevel.UNAUTHENTICATED

        self.api.token_provider = self.get_access_token
        self.api.on_unauthorized = self._on_unauthorized

    # ============================================================
    # STATE
    # ============================================================

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def get_security_level(self) -> int:
        return int(self._level)

    def is_authenticated(self) -> bool:
        return self._access_token is not None and self._level >= SecurityLevel.ELEVATED

    def clear_auth(self):
        with self._lock:
            self._access_token = None
            self._level = SecurityLevel.UNAUTHENTICATED
        logger.info("Session cleared")

    def _on_unauthorized(self):
        if self._access_token is not None:
            logger.warning("Token rejected by server, clearing session")
            self.clear_auth()

    def _require(self, level: SecurityLevel):
        current = self._level
        if self._access_token is None or current < level:
            raise InsufficientSecurityLevelError(int(level), int(current))

    def _load_identity(self) -> DeviceIdentity:
        try:
            return self.identity.load()
        except (LocalStoreUnavailableError, sqlite3.Error) as e:
            logger.error(f"Device identity unavailable: {e}")
            raise DeviceIdentityUnavailableError(f"Device identity unavailable: {e}") from e

    def _raise_level(self, level: SecurityLevel):
        with self._lock:
            if self._access_token is not None:
                self._level = max(self._level, level)

    # ============================================================
    # STEPS
    # ============================================================

    def login(self, email: str, password: str) -> str:
        """
        Step 1: password login.

        Raises:
            InvalidCredentialsError: non-2xx response
        """
        try:
            data = self.api.login(email, password)
        except NetworkOrApiError as e:
            if e.status_code is None:
                raise
            self.clear_auth()
            raise InvalidCredentialsError(str(e) or "Login failed", e.status_code, e.detail) from e

        token = (data or {}).get('access_token')
        if not token:
            raise InvalidCredentialsError("Login response did not contain an access token")

        with self._lock:
            self._access_token = token
            self._level = SecurityLevel.PASSWORD_OK
        logger.info(f"Logged in as {email}")
        return token

    def verify_device(self) -> Dict[str, Any]:
        """
        Step 2: device trust.

        Raises:
            DeviceNotRegisteredError: 404 / "not found"
            DevicePendingApprovalError: registered but not approved; level unchanged
            DeviceIdentityUnavailableError: local store unusable
        """
        self._require(SecurityLevel.PASSWORD_OK)
        identity = self._load_identity()
        try:
            data = self.api.verify_device(identity.device_id, identity.device_secret)
        except AuthenticationError:
            raise
        except NetworkOrApiError as e:
            if e.status_code == 404 or 'not found' in str(e).lower():
                raise DeviceNotRegisteredError(
                    "Device is not registered", e.status_code, e.detail
                ) from e
            if _is_pending(e):
                logger.info("Device verification pending approval")
                raise DevicePendingApprovalError(
                    str(e) or "Device is pending approval", e.status_code, e.detail
                ) from e
            raise

        self._raise_level(SecurityLevel.DEVICE_VERIFIED)
        logger.info("Device verified")
        return data or {}

    def register_device(self) -> Dict[str, Any]:
        """
        Register this device. Does not change the level.

        Returns:
            {device_id, status: pending|approved}

        Raises:
            DeviceIdentityUnavailableError: local store unusable
        """
        self._require(SecurityLevel.PASSWORD_OK)
        identity = self._load_identity()
        payload = {
            'device_id': identity.device_id,
            'device_secret': identity.device_secret,
            'hardware_info': self.identity.hardware_payload(),
            'device_info': self.identity.device_metadata(),
        }
        data = self.api.register_device(payload) or {}
        result = {
            'device_id': data.get('device_id', identity.device_id),
            'status': data.get('status', 'pending'),
        }
        logger.info(f"Device registration: {result['status']}")
        return result

    def verify_or_register_device(self) -> Dict[str, Any]:
        """Verify, registering the device first if the server does not know it."""
        try:
            return self.verify_device()
        except DeviceNotRegisteredError:
            logger.info("Device not registered, registering")
            self.register_device()
            return self.verify_device()

    def generate_totp(self) -> Dict[str, Any]:
        """Step 3a: ask the server to send a one-time code."""
        self._require(SecurityLevel.DEVICE_VERIFIED)
        return self.api.generate_totp() or {}

    def verify_totp(self, code: str) -> Dict[str, Any]:
        """Step 3b: second factor."""
        self._require(SecurityLevel.DEVICE_VERIFIED)
        data = self.api.verify_totp(code)
        self._raise_level(SecurityLevel.ELEVATED)
        logger.info("Second factor verified, session elevated")
        return data or {}

    # ============================================================
    # USER INFO
    # ============================================================

    def get_current_user(self) -> Dict[str, Any]:
        self._require(SecurityLevel.PASSWORD_OK)
        return self.api.get_current_user()

    def get_user_ou_access(self) -> List[Dict[str, Any]]:
        self._require(SecurityLevel.PASSWORD_OK)
        return self.api.get_my_ou_access()
