from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from ._storage import KeyValueStorage
from .exceptions import TransportError
from .models.results import CallbackResult
from .utils._pkce import generate_anti_replay_state, generate_challenge

if TYPE_CHECKING:
    from ._session import AuthSessionController

logger = logging.getLogger(__name__)

VERIFIER_KEY = "pkce_verifier"
STATE_KEY = "oauth_state"
NONCE_KEY = "oauth_nonce"
REDIRECT_URI_KEY = "oauth_redirect_uri"
PROVIDER_KEY = "oauth_provider"
RETURN_PATH_KEY = "auth_return_path"
BIND_MODE_KEY = "auth_bind_mode"

FLOW_KEYS = (
    VERIFIER_KEY,
    STATE_KEY,
    NONCE_KEY,
    REDIRECT_URI_KEY,
    PROVIDER_KEY,
    RETURN_PATH_KEY,
    BIND_MODE_KEY,
)


class RedirectLoginFlow:
    """Authorization code flow through a browser redirect.

    ``begin`` stores the PKCE verifier and anti-replay values in storage and
    returns the provider URL to send the user to. ``handle_callback`` runs
    when the provider redirects back, possibly in another process sharing
    the same storage.
    """

    def __init__(
        self,
        controller: AuthSessionController,
        storage: KeyValueStorage | None = None,
    ):
        self.controller = controller
        self.transport = controller.transport
        self.config = self.transport.config
        self.storage = storage or self.transport.token_store.storage

    def _clear(self) -> None:
        for key in FLOW_KEYS:
            self.storage.delete(key)

    def begin(
        self,
        provider: str,
        redirect_uri: str | None = None,
        scope: str | None = None,
        return_path: str | None = None,
        bind: bool = False,
    ) -> str:
        redirect_uri = redirect_uri or self.config.redirect_uri

        if not redirect_uri:
            raise ValueError("A redirect URI is required")

        pkce = generate_challenge()
        anti_replay = generate_anti_replay_state()

        self._clear()
        self.storage.set(VERIFIER_KEY, pkce.verifier)
        self.storage.set(STATE_KEY, anti_replay.state)
        self.storage.set(NONCE_KEY, anti_replay.nonce)
        self.storage.set(REDIRECT_URI_KEY, redirect_uri)
        self.storage.set(PROVIDER_KEY, provider)

        if return_path:
            self.storage.set(RETURN_PATH_KEY, return_path)

        if bind:
            self.storage.set(BIND_MODE_KEY, "true")

        return self.transport.build_authorize_url(
            provider,
            redirect_uri=redirect_uri,
            scope=scope or self.config.default_scope,
            state=anti_replay.state,
            pkce=pkce,
            nonce=anti_replay.nonce,
        )

    async def handle_callback(self, params: Mapping[str, str]) -> CallbackResult:
        """Finish the flow from the redirect's query parameters.

        The stored verifier and anti-replay values are cleared whatever the
        outcome.
        """
        bind = self.storage.get(BIND_MODE_KEY) == "true"

        try:
            return await self._handle_callback(params, bind)
        except TransportError as e:
            return CallbackResult(
                success=False, error=e.error_description or e.error, bind=bind
            )
        finally:
            self._clear()

    async def _handle_callback(
        self, params: Mapping[str, str], bind: bool
    ) -> CallbackResult:
        default_return_path = "/profile" if bind else "/"
        return_path = self.storage.get(RETURN_PATH_KEY) or default_return_path

        if error := params.get("error"):
            logger.error(f"Provider returned an error: {error}")

            return CallbackResult(
                success=False,
                error=params.get("error_description") or error,
                bind=bind,
            )

        code = params.get("code")

        if not code:
            if self.controller.token_store.get_access():
                await self.controller.refresh_user()

            return CallbackResult(success=True, return_path=return_path, bind=bind)

        stored_state = self.storage.pop(STATE_KEY)

        if stored_state and params.get("state") != stored_state:
            logger.error("State returned by the provider does not match")

            return CallbackResult(
                success=False,
                error="State validation failed. Please try again.",
                bind=bind,
            )

        verifier = self.storage.pop(VERIFIER_KEY)

        if not verifier:
            if self.controller.token_store.get_access():
                await self.controller.refresh_user()

                return CallbackResult(success=True, return_path=return_path, bind=bind)

            logger.error("Authorization code received without a PKCE verifier")

            return CallbackResult(
                success=False,
                error=(
                    "Binding session expired. Please try again."
                    if bind
                    else "Login session expired. Please try again."
                ),
                bind=bind,
            )

        redirect_uri = self.storage.get(REDIRECT_URI_KEY) or self.config.redirect_uri

        if bind:
            provider = self.storage.get(PROVIDER_KEY) or "wechat"
            result = await self.transport.bind_provider(
                provider, code, verifier, redirect_uri
            )

            if not result.success:
                return CallbackResult(
                    success=False, error=result.error or "Binding failed", bind=True
                )

            await self.controller.refresh_user()

            return CallbackResult(success=True, return_path=return_path, bind=True)

        result = await self.controller.complete_authorization_code_flow(
            code, verifier, redirect_uri
        )

        if not result.success:
            return CallbackResult(success=False, error=result.error or "Login failed")

        return CallbackResult(success=True, return_path=return_path)
