from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

import httpx
from pydantic import ValidationError

from ._config import AuthConfig
from ._token_store import TokenStore
from .exceptions import LoginStartError, TransportError
from .models.login import LoginSession, LoginStatusEvent
from .models.oauth_token_response import TokenErrorResponse, TokenResponse
from .models.results import ExchangeResult, FlowResult
from .models.user import User
from .utils._pkce import AntiReplayState, PkceChallenge
from .utils._sse import iter_sse_data

logger = logging.getLogger(__name__)


class AuthTransport:
    """HTTP client for the TierMate identity provider.

    Protocol rejections (expired code, invalid refresh token, wrong password)
    come back as result objects. Only transport-level failures raise, as
    ``TransportError``.
    """

    def __init__(
        self,
        token_store: TokenStore,
        config: AuthConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.token_store = token_store
        self.config = config or token_store.config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.config.request_timeout
        )

    async def __aenter__(self) -> AuthTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"Request to {url} failed: {str(e)}")
            raise TransportError(
                "network_error", "Network error. Please try again."
            ) from e

    def _error_message(self, response: httpx.Response, default: str) -> str:
        try:
            return TokenErrorResponse.model_validate(response.json()).describe(
                default
            )
        except (ValueError, ValidationError):
            return default

    def parse_token_response(self, response: httpx.Response) -> TokenResponse:
        try:
            return TokenResponse.model_validate_json(response.text)
        except ValidationError as e:
            logger.error(f"Failed to parse token response: {str(e)}")
            raise TransportError(
                "invalid_response", "Failed to parse token response"
            ) from e

    async def authorized_request(
        self, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        if url.startswith("/"):
            url = self.config.url(url)

        headers = dict(kwargs.pop("headers", None) or {})

        if access_token := self.token_store.get_access():
            headers["Authorization"] = f"Bearer {access_token}"

        return await self._send(method, url, headers=headers, **kwargs)

    def build_token_exchange_params(
        self, code: str, code_verifier: str, redirect_uri: str | None = None
    ) -> dict[str, str]:
        """Build the authorization_code grant parameters."""
        params = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "client_id": self.config.client_id,
        }

        if redirect_uri := redirect_uri or self.config.redirect_uri:
            params["redirect_uri"] = redirect_uri

        return params

    async def send_token_request(self, data: dict[str, str]) -> httpx.Response:
        return await self._send(
            "POST",
            self.config.url(self.config.token_path),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data=data,
        )

    async def request_tokens(
        self, code: str, code_verifier: str, redirect_uri: str | None = None
    ) -> ExchangeResult:
        """Exchange an authorization code for a token pair without storing it.

        Args:
            code: The authorization code to exchange
            code_verifier: The PKCE verifier of the attempt that obtained the code
            redirect_uri: The redirect URI used in the authorization request

        Raises:
            TransportError: If the token endpoint cannot be reached or its
                response cannot be parsed
        """
        params = self.build_token_exchange_params(code, code_verifier, redirect_uri)

        response = await self.send_token_request(params)

        if not response.is_success:
            error = self._error_message(response, "Token exchange failed")
            logger.error(f"Token exchange failed: {error}")

            return ExchangeResult(success=False, error=error)

        token_response = self.parse_token_response(response)

        return ExchangeResult(
            success=True, tokens=token_response.pair, user=token_response.user
        )

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str | None = None
    ) -> ExchangeResult:
        """Exchange an authorization code and store the resulting token pair."""
        result = await self.request_tokens(code, code_verifier, redirect_uri)

        if result.success and result.tokens is not None:
            self.token_store.set_pair(result.tokens)

        return result

    async def refresh(self) -> bool:
        """Replace the stored tokens using the refresh token.

        Any failure clears the token store: the session cannot be recovered
        and the user has to authenticate again.
        """
        refresh_token = self.token_store.get_refresh()

        if not refresh_token:
            logger.warning("No refresh token stored")
            self.token_store.clear()
            return False

        try:
            response = await self.send_token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.config.client_id,
                }
            )

            if not response.is_success:
                logger.warning(f"Refresh token rejected: {response.status_code}")
                self.token_store.clear()
                return False

            token_response = self.parse_token_response(response)
        except TransportError as e:
            logger.warning(f"Token refresh failed: {e.error_description}")
            self.token_store.clear()
            return False

        self.token_store.set_access(token_response.access_token)

        if token_response.refresh_token:
            self.token_store.set_refresh(token_response.refresh_token)

        return True

    def _parse_user(self, response: httpx.Response) -> User:
        try:
            return User.model_validate_json(response.text)
        except ValidationError as e:
            logger.error(f"Failed to parse user info: {str(e)}")
            raise TransportError(
                "invalid_response", "Failed to parse user info"
            ) from e

    async def fetch_current_user(self) -> User | None:
        if not self.token_store.get_access():
            return None

        response = await self.authorized_request("GET", self.config.user_info_path)

        if response.status_code == 401:
            # One refresh and one retry, never more
            if await self.refresh():
                response = await self.authorized_request(
                    "GET", self.config.user_info_path
                )

            if response.status_code == 401:
                self.token_store.clear()
                return None

        if not response.is_success:
            logger.warning(f"Failed to fetch user info: {response.status_code}")
            return None

        return self._parse_user(response)

    async def _token_grant(
        self, path: str, body: dict[str, Any], default_error: str
    ) -> ExchangeResult:
        response = await self._send("POST", self.config.url(path), json=body)

        if not response.is_success:
            return ExchangeResult(
                success=False, error=self._error_message(response, default_error)
            )

        token_response = self.parse_token_response(response)
        self.token_store.set_pair(token_response.pair)

        return ExchangeResult(
            success=True, tokens=token_response.pair, user=token_response.user
        )

    async def password_login(self, email: str, password: str) -> ExchangeResult:
        return await self._token_grant(
            self.config.email_login_path,
            {
                "email": email,
                "password": password,
                "client_id": self.config.client_id,
                "scope": self.config.password_scope,
            },
            "Login failed",
        )

    async def register(
        self, email: str, password: str, display_name: str | None = None
    ) -> ExchangeResult:
        """Create an account. No tokens are issued, the caller has to log in."""
        response = await self._send(
            "POST",
            self.config.url(self.config.email_register_path),
            json={
                "email": email,
                "password": password,
                "display_name": display_name,
                "client_id": self.config.client_id,
            },
        )

        if not response.is_success:
            return ExchangeResult(
                success=False,
                error=self._error_message(response, "Registration failed"),
            )

        return ExchangeResult(success=True)

    async def send_sms_code(self, phone: str) -> FlowResult:
        response = await self._send(
            "POST",
            self.config.url(self.config.sms_send_path),
            json={"phone": phone, "client_id": self.config.client_id},
        )

        if not response.is_success:
            return FlowResult(
                success=False,
                error=self._error_message(response, "Failed to send code"),
            )

        return FlowResult(success=True)

    async def verify_sms_code(self, phone: str, code: str) -> ExchangeResult:
        return await self._token_grant(
            self.config.sms_verify_path,
            {
                "phone": phone,
                "code": code,
                "client_id": self.config.client_id,
                "scope": self.config.password_scope,
            },
            "Verification failed",
        )

    async def logout(self) -> bool:
        """Ask the provider to revoke the current token. Best effort."""
        response = await self.authorized_request("POST", self.config.logout_path)

        if not response.is_success:
            logger.warning(f"Logout rejected: {response.status_code}")
            return False

        return True

    async def start_login_session(
        self,
        pkce: PkceChallenge,
        anti_replay: AntiReplayState,
        scope: str,
        return_to: str | None = None,
    ) -> LoginSession:
        body: dict[str, str] = {
            "client_id": self.config.client_id,
            "scope": scope,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "nonce": anti_replay.nonce,
        }

        if return_to:
            body["return_to"] = return_to

        response = await self._send(
            "POST",
            self.config.url(self.config.qr_start_path),
            params={"client_id": self.config.client_id},
            json=body,
        )

        if not response.is_success:
            raise LoginStartError(
                "login_start_failed",
                self._error_message(response, "Failed to start QR login"),
            )

        try:
            return LoginSession.model_validate_json(response.text)
        except ValidationError as e:
            raise TransportError(
                "invalid_response", "Invalid QR login session"
            ) from e

    async def stream_login_events(
        self, login_id: str
    ) -> AsyncIterator[LoginStatusEvent]:
        """Yield status events pushed by the provider for a login session.

        The stream ends after a terminal status. A lost or refused connection
        raises ``TransportError``; callers fall back to polling.
        """
        try:
            async with self._client.stream(
                "GET",
                self.config.url(self.config.qr_events_path),
                params={"login_id": login_id, "client_id": self.config.client_id},
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.config.request_timeout, read=None),
            ) as response:
                if not response.is_success:
                    raise TransportError(
                        "stream_unavailable",
                        f"Event stream returned {response.status_code}",
                    )

                async for data in iter_sse_data(response):
                    try:
                        event = LoginStatusEvent.model_validate_json(data)
                    except ValidationError as e:
                        logger.warning(f"Ignoring malformed login event: {str(e)}")
                        continue

                    yield event

                    if event.is_terminal:
                        return
        except httpx.HTTPError as e:
            raise TransportError("stream_lost", "Connection lost") from e

    async def poll_login_status(self, login_id: str) -> LoginStatusEvent:
        response = await self._send(
            "GET", self.config.url(self.config.login_status_path, login_id=login_id)
        )

        if not response.is_success:
            raise TransportError(
                "status_unavailable", "Failed to get login status"
            )

        try:
            return LoginStatusEvent.model_validate_json(response.text)
        except ValidationError as e:
            raise TransportError("invalid_response", "Invalid login status") from e

    def build_authorize_url(
        self,
        provider: str,
        redirect_uri: str,
        scope: str,
        state: str,
        pkce: PkceChallenge,
        nonce: str,
    ) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "nonce": nonce,
        }

        return str(
            httpx.URL(
                self.config.url(self.config.authorize_path, provider=provider),
                params=params,
            )
        )

    async def bind_provider(
        self,
        provider: str,
        code: str,
        code_verifier: str,
        redirect_uri: str | None = None,
    ) -> FlowResult:
        """Link a third-party identity to the signed-in account."""
        body = {"code": code, "code_verifier": code_verifier}

        if redirect_uri := redirect_uri or self.config.redirect_uri:
            body["redirect_uri"] = redirect_uri

        response = await self.authorized_request(
            "POST", self.config.bind_path.format(provider=provider), json=body
        )

        if not response.is_success:
            return FlowResult(
                success=False, error=self._error_message(response, "Binding failed")
            )

        return FlowResult(success=True)

    async def update_profile(self, **fields: str | None) -> FlowResult:
        updates = {key: value for key, value in fields.items() if value is not None}

        response = await self.authorized_request(
            "PATCH", self.config.user_info_path, json=updates
        )

        if not response.is_success:
            return FlowResult(
                success=False, error=self._error_message(response, "Update failed")
            )

        return FlowResult(success=True)
