"""Device Auth Manager: the client half of the pairing protocol.

    unregistered -> awaiting-link -> linked -> token-near-expiry -> unauthenticated

`register()` gets a pairing code without ever touching the user's password;
the user links that code from a signed-in web session; `poll_for_link()`
exchanges it for a device token. From then on `get_valid_token_or_refresh()`
hands out the token and rotates it shortly before expiry, sharing one
in-flight refresh between concurrent callers.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urlencode

from client.config import ClientConfig
from client.errors import (
    InvalidRequestError,
    NotFoundError,
    PairingError,
    RegistrationError,
    SyncError,
    TransientError,
    UnauthorizedError,
)
from client.fingerprint import coarse_client_signature, generate_fingerprint, new_install_id
from client.models import AuthState, PairingResult, PairingStatus, StoredRegistration, StoredToken, utcnow
from client.retry import retry_with_backoff
from client.storage import CredentialStore
from client.transport import ApiClient

logger = logging.getLogger(__name__)

INSTALL_ID_KEY = "install_id"
REGISTRATION_KEY = "device_registration"
TOKEN_KEY = "device_token"
AUTH_LOST_KEY = "auth_lost"


class DeviceAuthManager:
    def __init__(
        self,
        config: ClientConfig,
        store: CredentialStore,
        api: ApiClient,
        *,
        client_signature: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.api = api
        self.client_signature = client_signature or coarse_client_signature()
        self._sleep = sleep
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}

    # --- stored state ---

    async def fingerprint(self) -> str:
        install_id = await self.store.get(INSTALL_ID_KEY)
        if not install_id:
            install_id = new_install_id()
            await self.store.set(INSTALL_ID_KEY, install_id)
        return generate_fingerprint(install_id, self.client_signature)

    async def registration(self) -> Optional[StoredRegistration]:
        raw = await self.store.get(REGISTRATION_KEY)
        return StoredRegistration.model_validate(raw) if raw else None

    async def stored_token(self) -> Optional[StoredToken]:
        raw = await self.store.get(TOKEN_KEY)
        return StoredToken.model_validate(raw) if raw else None

    async def _save_token(self, token: StoredToken) -> None:
        await self.store.set(TOKEN_KEY, token.model_dump(mode="json"))
        await self.store.remove(AUTH_LOST_KEY)

    async def _clear_token_if(self, rejected: str) -> None:
        current = await self.stored_token()
        if current and current.token == rejected:
            await self.store.remove(TOKEN_KEY)
            await self.store.set(AUTH_LOST_KEY, True)

    def _is_fresh(self, token: StoredToken) -> bool:
        return utcnow() < token.expires_at - timedelta(seconds=self.config.token_refresh_skew)

    @staticmethod
    def _is_expired(token: StoredToken) -> bool:
        return utcnow() >= token.expires_at

    async def state(self) -> AuthState:
        token = await self.stored_token()
        if token:
            if self._is_expired(token):
                return AuthState.UNAUTHENTICATED
            return AuthState.LINKED if self._is_fresh(token) else AuthState.NEAR_EXPIRY

        if await self.store.get(AUTH_LOST_KEY):
            return AuthState.UNAUTHENTICATED

        registration = await self.registration()
        if registration and utcnow() < registration.expires_at:
            return AuthState.AWAITING_LINK
        return AuthState.UNREGISTERED

    async def sign_out(self) -> None:
        for key in (TOKEN_KEY, REGISTRATION_KEY, AUTH_LOST_KEY):
            await self.store.remove(key)

    # --- pairing ---

    async def register(self) -> StoredRegistration:
        """Ask the server for a pairing code. Raises RegistrationError; callers may retry."""
        fingerprint = await self.fingerprint()
        try:
            data = await self.api.request(
                "POST", "/devices/register", json={"fingerprint": fingerprint}, phase="pairing"
            )
        except SyncError as e:
            raise RegistrationError(
                f"Device registration failed: {e}", status_code=e.status_code, phase="pairing", payload=e.payload
            ) from e

        registration = StoredRegistration(
            device_id=data["deviceId"],
            pairing_code=data["pairingCode"],
            fingerprint=fingerprint,
            expires_at=data["expiresAt"],
        )
        await self.store.set(REGISTRATION_KEY, registration.model_dump(mode="json"))
        logger.info("Registered device %s, awaiting link", registration.device_id)
        return registration

    async def get_or_register(self) -> StoredRegistration:
        existing = await self.registration()
        if existing and utcnow() < existing.expires_at:
            return existing
        return await self.register()

    def link_url(self, pairing_code: str) -> str:
        """Where the user signs in to link this device."""
        query = urlencode({"source": "extension", "code": pairing_code})
        return f"{self.config.web_base_url.rstrip('/')}/sign-in?{query}"

    async def exchange(self, device_id: str, pairing_code: str) -> Optional[StoredToken]:
        """One exchange attempt. None means "not linked yet"; terminal failures raise PairingError."""
        try:
            data = await self.api.request(
                "POST",
                "/devices/exchange",
                json={"deviceId": device_id, "pairingCode": pairing_code},
                phase="pairing",
            )
        except NotFoundError:
            return None
        except (InvalidRequestError, UnauthorizedError) as e:
            raise PairingError(
                f"Pairing failed: {e.error_code or e}", status_code=e.status_code, phase="pairing", payload=e.payload
            ) from e

        token = StoredToken(device_id=device_id, token=data["token"], expires_at=data["expiresAt"])
        await self._save_token(token)
        await self.store.remove(REGISTRATION_KEY)
        logger.info("Device %s linked", device_id)
        return token

    async def poll_for_link(
        self,
        device_id: Optional[str] = None,
        pairing_code: Optional[str] = None,
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> PairingResult:
        """Poll the exchange until linked, a terminal failure, or `timeout` seconds.

        "Not linked yet" is the expected steady state and keeps the fixed
        interval; only transport/server errors grow the delay.
        """
        if device_id is None or pairing_code is None:
            registration = await self.registration()
            if registration is None:
                return PairingResult(status=PairingStatus.FAILED, error="not_registered")
            device_id, pairing_code = registration.device_id, registration.pairing_code

        interval = self.config.poll_interval if interval is None else interval
        timeout = self.config.poll_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        delay = interval

        while True:
            try:
                token = await self.exchange(device_id, pairing_code)
            except PairingError as e:
                logger.warning("Pairing for device %s failed: %s", device_id, e)
                return PairingResult(status=PairingStatus.FAILED, error=e.error_code or str(e))
            except TransientError as e:
                delay = min(max(delay, interval) * 2, self.config.poll_max_backoff)
                if e.retry_after is not None:
                    delay = max(delay, min(e.retry_after, self.config.max_retry_after))
                logger.warning("Exchange error for device %s (retrying in %.1fs): %s", device_id, delay, e)
            else:
                if token is not None:
                    return PairingResult(status=PairingStatus.LINKED, token=token)
                delay = interval

            remaining = deadline - self._clock()
            if remaining <= 0:
                return PairingResult(status=PairingStatus.PENDING, error="timeout")
            await self._sleep(min(delay, remaining))

    # --- tokens ---

    async def get_valid_token_or_refresh(self) -> Optional[str]:
        """A usable bearer token, or None when the device must (re-)pair.

        Transient refresh failures with an already expired token raise
        TransientError, so callers can tell a flaky network from lost auth.
        """
        token = await self.stored_token()
        if token is None:
            return None
        if self._is_fresh(token):
            return token.token
        return await self._shared_refresh(token)

    async def force_refresh(self, rejected_token: str) -> Optional[str]:
        """Refresh after the server rejected `rejected_token`."""
        token = await self.stored_token()
        if token is None:
            return None
        if token.token != rejected_token and self._is_fresh(token):
            return token.token
        return await self._shared_refresh(token)

    async def _shared_refresh(self, token: StoredToken) -> Optional[str]:
        task = self._inflight.get(token.device_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(token))
            self._inflight[token.device_id] = task
            task.add_done_callback(lambda t, key=token.device_id: self._forget(key, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, stale: StoredToken) -> Optional[str]:
        current = await self.stored_token()
        if current is None:
            return None
        # A refresh that finished while we were queued already rotated it
        if current.token != stale.token and self._is_fresh(current):
            return current.token

        # Retrying with the same token is safe: the server re-issues the
        # successor when an earlier attempt rotated but its reply was lost
        async def call() -> Any:
            return await self.api.request("POST", "/devices/refresh", json={}, token=current.token, phase="auth")

        try:
            data = await retry_with_backoff(call, self.config, context="token refresh", sleep=self._sleep)
        except (UnauthorizedError, InvalidRequestError) as e:
            logger.warning("Token refresh rejected for device %s; re-pairing required: %s", current.device_id, e)
            await self._clear_token_if(current.token)
            return None
        except TransientError:
            if not self._is_expired(current):
                logger.warning("Token refresh for device %s deferred, current token still valid", current.device_id)
                return current.token
            raise

        rotated = StoredToken(device_id=current.device_id, token=data["token"], expires_at=data["expiresAt"])
        await self._save_token(rotated)
        logger.info("Refreshed token for device %s", current.device_id)
        return rotated.token

    async def authorized_request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        phase: str | None = None,
    ) -> Any:
        """Call the API with the device token; on 401 refresh once, then give up as "re-pair"."""
        token = await self.get_valid_token_or_refresh()
        if token is None:
            raise UnauthorizedError("Device is not paired", phase="auth")

        try:
            return await self.api.request(method, path, json=json, params=params, token=token, phase=phase)
        except UnauthorizedError:
            logger.info("Token rejected on %s %s, refreshing once", method, path)

        token = await self.force_refresh(token)
        if token is None:
            raise UnauthorizedError("Device token revoked or expired; re-pairing required", phase="auth")
        try:
            return await self.api.request(method, path, json=json, params=params, token=token, phase=phase)
        except UnauthorizedError as e:
            await self._clear_token_if(token)
            raise UnauthorizedError(
                "Device token rejected after refresh; re-pairing required", status_code=e.status_code, phase="auth"
            ) from e
