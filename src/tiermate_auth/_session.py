"""Session controller for TierMate clients.

Owns "who is logged in" for the rest of the application:
- initialize() - Load the user for a stored token on startup
- sign_in_with_password() / sign_in_with_sms() / sign_up()
- complete_authorization_code_flow() - Redirect callbacks and QR logins
- sign_out() - Revoke and clear local credentials
- refresh_user() - Re-read the session from the token store

State changes are published to subscribers as immutable SessionState
snapshots, always after the token store has been written.
"""

from __future__ import annotations

import logging
import weakref
from collections.abc import Callable
from dataclasses import dataclass, replace
from types import TracebackType
from typing import Any

import httpx

from ._config import AuthConfig
from ._handles import Subscription
from ._qr_login import QRLoginSessionManager
from ._redirect import RedirectLoginFlow
from ._storage import KeyValueStorage, MemoryStorage
from ._token_store import TokenStore
from ._transport import AuthTransport
from .exceptions import TierMateAuthException, TransportError
from .models.results import AuthResult, ExchangeResult, FlowResult
from .models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    user: User | None = None
    token: str | None = None
    loading: bool = True

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


class AuthSessionController:
    """Single source of truth for the current user."""

    def __init__(self, transport: AuthTransport):
        self.transport = transport
        self.token_store = transport.token_store
        self.state = SessionState()

        self._listeners: list[Callable[[SessionState], None]] = []
        self._qr_logins: weakref.WeakSet[QRLoginSessionManager] = weakref.WeakSet()

    @classmethod
    def create(
        cls,
        storage: KeyValueStorage | None = None,
        config: AuthConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> AuthSessionController:
        config = config or AuthConfig()
        token_store = TokenStore(storage or MemoryStorage(), config)

        return cls(AuthTransport(token_store, config, client=client))

    async def __aenter__(self) -> AuthSessionController:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def user(self) -> User | None:
        return self.state.user

    @property
    def token(self) -> str | None:
        return self.state.token

    @property
    def loading(self) -> bool:
        return self.state.loading

    def subscribe(self, listener: Callable[[SessionState], None]) -> Subscription:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(unsubscribe)

    def _set_state(self, **changes: Any) -> None:
        state = replace(self.state, **changes)

        if state == self.state:
            return

        self.state = state

        for listener in list(self._listeners):
            listener(state)

    async def initialize(self) -> SessionState:
        """Load the session for a stored token. Never raises."""
        self._set_state(loading=True)

        user: User | None = None

        try:
            if self.token_store.get_access():
                user = await self.transport.fetch_current_user()
        except TierMateAuthException as e:
            logger.error(f"Failed to check session: {e.error_description}")

        token = self.token_store.get_access() if user else None
        self._set_state(user=user, token=token, loading=False)

        return self.state

    async def refresh_user(self) -> User | None:
        """Re-derive the session from whatever is in the token store.

        Raises:
            TransportError: If the provider cannot be reached
        """
        user = await self.transport.fetch_current_user()
        token = self.token_store.get_access() if user else None

        self._set_state(user=user, token=token)

        return user

    def set_token_directly(self, token: str) -> None:
        self.token_store.set_access(token)
        self._set_state(token=token)

    async def _adopt(self, result: ExchangeResult, default_error: str) -> AuthResult:
        if not result.success or result.tokens is None:
            return AuthResult(error=result.error or default_error)

        user = result.user

        if user is None:
            try:
                user = await self.transport.fetch_current_user()
            except TransportError as e:
                logger.error(
                    f"Failed to load user after sign-in: {e.error_description}"
                )

        # The new tokens are already stored, the state follows the store
        self._set_state(user=user, token=self.token_store.get_access())

        if user is None:
            return AuthResult(error="Login succeeded but failed to load user info")

        return AuthResult(user=user)

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        try:
            result = await self.transport.password_login(email, password)

            return await self._adopt(result, "Login failed")
        except TransportError as e:
            return AuthResult(error=e.error_description or e.error)

    async def sign_in_with_sms(self, phone: str, code: str) -> AuthResult:
        try:
            result = await self.transport.verify_sms_code(phone, code)

            return await self._adopt(result, "Verification failed")
        except TransportError as e:
            return AuthResult(error=e.error_description or e.error)

    async def sign_up(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthResult:
        """Register, then log in with the same credentials.

        Registration alone does not issue tokens.
        """
        try:
            result = await self.transport.register(email, password, display_name)
        except TransportError as e:
            return AuthResult(error=e.error_description or e.error)

        if not result.success:
            return AuthResult(error=result.error or "Registration failed")

        return await self.sign_in_with_password(email, password)

    async def complete_authorization_code_flow(
        self, code: str, code_verifier: str, redirect_uri: str | None = None
    ) -> FlowResult:
        try:
            result = await self.transport.exchange_code(
                code, code_verifier, redirect_uri
            )

            if not result.success:
                return FlowResult(
                    success=False, error=result.error or "Token exchange failed"
                )

            user = await self.refresh_user()
        except TransportError as e:
            return FlowResult(success=False, error=e.error_description or e.error)

        if user is None:
            return FlowResult(
                success=False, error="Login succeeded but failed to load user info"
            )

        return FlowResult(success=True)

    async def sign_out(self) -> None:
        """Revoke on the provider if possible, always clear local state."""
        try:
            await self.transport.logout()
        except TierMateAuthException as e:
            logger.warning(f"Logout request failed: {e.error_description}")
        finally:
            self.token_store.clear()
            self._set_state(user=None, token=None)

    def qr_login(self, **kwargs: Any) -> QRLoginSessionManager:
        """Create a QR login manager that adopts the session when it succeeds."""
        manager = QRLoginSessionManager(
            self.transport, on_success=self.refresh_user, **kwargs
        )
        self._qr_logins.add(manager)

        return manager

    def redirect_flow(self, storage: KeyValueStorage | None = None) -> RedirectLoginFlow:
        return RedirectLoginFlow(self, storage=storage)

    async def close(self) -> None:
        managers = list(self._qr_logins)
        self._qr_logins.clear()

        for manager in managers:
            await manager.close()

        self._listeners.clear()
        await self.transport.aclose()
