"""QR ("scan to login") session manager.

A login attempt starts a session on the identity provider and then listens
on three channels until it reaches a terminal state:

- the provider's event stream, falling back to polling when it drops
- a countdown that expires the attempt even if the provider stays silent
- a marker in shared storage written by another context that completed
  the login

Completion messages posted by another context are fed in through
``handle_message``. All channels go through one reducer that only ever
moves the state forward, so a late or duplicated signal is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

from pydantic import ValidationError

from ._config import AuthConfig
from ._handles import HandleGroup, Subscription
from ._storage import KeyValueStorage
from ._transport import AuthTransport
from .exceptions import PKCEVerifierMissing, TierMateAuthException, TransportError
from .models.login import (
    LoginSession,
    LoginStatusEvent,
    LoginSuccessMessage,
    QRLoginState,
)
from .models.oauth_token_response import TokenPair
from .utils._pkce import (
    AntiReplayState,
    PkceChallenge,
    generate_anti_replay_state,
    generate_challenge,
)

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS: dict[str, QRLoginState] = {
    "pending": QRLoginState.PENDING,
    "scanned": QRLoginState.SCANNED,
    "authorized": QRLoginState.AUTHORIZING,
    "approved": QRLoginState.AUTHORIZING,
    "completed": QRLoginState.COMPLETING,
    "success": QRLoginState.COMPLETING,
    "failed": QRLoginState.FAILED,
    "expired": QRLoginState.EXPIRED,
}

# Non-terminal states in the order an attempt moves through them
PROGRESSION = [
    QRLoginState.INIT,
    QRLoginState.PENDING,
    QRLoginState.SCANNED,
    QRLoginState.AUTHORIZING,
    QRLoginState.COMPLETING,
]

WAITING_STATES = (
    QRLoginState.PENDING,
    QRLoginState.SCANNED,
    QRLoginState.AUTHORIZING,
)


@dataclass(frozen=True)
class QRLoginSnapshot:
    state: QRLoginState
    login_id: str | None
    qr_url: str | None
    time_left: int
    error: str | None


@dataclass(eq=False)
class _Attempt:
    pkce: PkceChallenge | None
    anti_replay: AntiReplayState | None
    session: LoginSession | None = None
    handles: HandleGroup = field(default_factory=HandleGroup)

    def take_verifier(self) -> str | None:
        """Hand out the verifier once, it is never reused for another code."""
        if self.pkce is None:
            return None

        verifier, self.pkce = self.pkce.verifier, None
        return verifier

    def discard_secrets(self) -> None:
        self.pkce = None
        self.anti_replay = None


def mark_login_complete(
    storage: KeyValueStorage, login_id: str, config: AuthConfig | None = None
) -> None:
    """Signal, from another context, that ``login_id`` finished logging in.

    The tokens must already be in the shared storage.
    """
    config = config or AuthConfig()
    storage.set(config.login_marker_key, login_id)


class QRLoginSessionManager:
    def __init__(
        self,
        transport: AuthTransport,
        config: AuthConfig | None = None,
        storage: KeyValueStorage | None = None,
        on_success: Callable[[], Awaitable[Any]] | None = None,
    ):
        self.transport = transport
        self.config = config or transport.config
        self.storage = storage or transport.token_store.storage
        self.on_success = on_success

        self.state = QRLoginState.INIT
        self.error: str | None = None
        self.time_left = 0

        self._attempt: _Attempt | None = None
        self._tasks = HandleGroup()
        self._listeners: list[Callable[[QRLoginSnapshot], None]] = []

    async def __aenter__(self) -> QRLoginSessionManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def session(self) -> LoginSession | None:
        return self._attempt.session if self._attempt else None

    @property
    def login_id(self) -> str | None:
        session = self.session
        return session.login_id if session else None

    def snapshot(self) -> QRLoginSnapshot:
        session = self.session

        return QRLoginSnapshot(
            state=self.state,
            login_id=session.login_id if session else None,
            qr_url=session.qr_url if session else None,
            time_left=self.time_left,
            error=self.error,
        )

    def subscribe(self, listener: Callable[[QRLoginSnapshot], None]) -> Subscription:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(unsubscribe)

    def _set_state(self, state: QRLoginState, error: str | None = None) -> None:
        if state is self.state and error == self.error:
            return

        logger.debug(f"QR login {self.login_id}: {self.state.value} -> {state.value}")

        self.state = state
        self.error = error

        snapshot = self.snapshot()

        for listener in list(self._listeners):
            listener(snapshot)

    def _spawn(self, attempt: _Attempt, coro: Any, name: str) -> None:
        handle = attempt.handles.spawn(coro, name=name)
        self._tasks.add(handle)

    def _abandon(self) -> None:
        attempt, self._attempt = self._attempt, None

        if attempt is not None:
            attempt.handles.cancel()
            attempt.discard_secrets()

    async def start(
        self, scopes: list[str] | None = None, return_to: str | None = None
    ) -> LoginSession:
        """Start a new login attempt with a fresh session and PKCE pair.

        Any attempt already in flight is abandoned first.

        Raises:
            LoginStartError: If the provider refuses to create a session
            TransportError: If the provider cannot be reached
        """
        self._abandon()

        pkce = generate_challenge()
        anti_replay = generate_anti_replay_state()
        attempt = _Attempt(pkce=pkce, anti_replay=anti_replay)
        self._attempt = attempt
        self.time_left = 0
        self._set_state(QRLoginState.INIT)

        scope = " ".join(scopes) if scopes else self.config.default_scope

        try:
            session = await self.transport.start_login_session(
                pkce, anti_replay, scope, return_to
            )
        except TierMateAuthException as e:
            if attempt is self._attempt:
                logger.error(f"Failed to start QR login: {e.error_description}")
                attempt.discard_secrets()
                self._set_state(
                    QRLoginState.FAILED,
                    e.error_description or "Failed to initialize login",
                )

            raise

        if attempt is not self._attempt:
            logger.debug(f"Discarding QR login {session.login_id}, superseded")
            return session

        attempt.session = session
        self.time_left = session.expires_in
        self._set_state(QRLoginState.PENDING)

        login_id = session.login_id
        self._spawn(attempt, self._watch_events(attempt), f"qr-events-{login_id}")
        self._spawn(attempt, self._countdown(attempt), f"qr-countdown-{login_id}")
        self._spawn(attempt, self._watch_marker(attempt), f"qr-marker-{login_id}")

        logger.info(f"Started QR login {login_id}")

        return session

    async def retry(
        self, scopes: list[str] | None = None, return_to: str | None = None
    ) -> LoginSession:
        """Throw the current attempt away and start over. Never resumes."""
        return await self.start(scopes, return_to)

    async def cancel(self) -> None:
        self._abandon()
        await self._tasks.aclose()

    async def close(self) -> None:
        await self.cancel()
        self._listeners.clear()

    async def dispatch(self, login_id: str, event: LoginStatusEvent) -> None:
        """Apply a status event observed for ``login_id``."""
        attempt = self._attempt

        if attempt is None or attempt.session is None:
            logger.debug(f"Discarding event for {login_id}, no attempt in flight")
            return

        if attempt.session.login_id != login_id:
            logger.debug(f"Discarding event for abandoned login {login_id}")
            return

        await self._apply(attempt, event)

    async def handle_message(self, payload: Any) -> bool:
        """Apply a completion message posted by another context.

        Returns True if the message drove the current attempt.
        """
        try:
            message = LoginSuccessMessage.model_validate(payload)
        except ValidationError:
            return False

        if message.source != self.config.message_source:
            logger.debug(f"Ignoring login message from {message.source}")
            return False

        attempt = self._attempt

        if attempt is None or not self._can_complete(attempt):
            return False

        await self._complete(
            attempt, code=message.code, redirect_uri=message.redirect_uri
        )

        return True

    def _can_complete(self, attempt: _Attempt) -> bool:
        return (
            attempt is self._attempt
            and attempt.session is not None
            and self.state in WAITING_STATES
        )

    async def _apply(self, attempt: _Attempt, event: LoginStatusEvent) -> None:
        if attempt is not self._attempt:
            return

        if self.state.is_terminal or self.state is QRLoginState.COMPLETING:
            return

        target = STATUS_TRANSITIONS[event.status]

        if target is QRLoginState.COMPLETING:
            await self._complete(
                attempt,
                code=event.code,
                access_token=event.access_token,
                refresh_token=event.refresh_token,
            )
        elif target is QRLoginState.FAILED:
            self._finish(attempt, target, event.error or "Login failed")
        elif target is QRLoginState.EXPIRED:
            self._finish(attempt, target, event.error or "QR code expired")
        elif PROGRESSION.index(target) > PROGRESSION.index(self.state):
            self._set_state(target)

    def _finish(
        self, attempt: _Attempt, state: QRLoginState, error: str | None = None
    ) -> None:
        attempt.handles.cancel()
        attempt.discard_secrets()
        self._set_state(state, error)

    async def _redeem(
        self,
        attempt: _Attempt,
        code: str | None,
        redirect_uri: str | None,
        access_token: str | None,
        refresh_token: str | None,
    ) -> None:
        if code:
            verifier = attempt.take_verifier()

            if verifier is None:
                raise PKCEVerifierMissing()

            result = await self.transport.request_tokens(code, verifier, redirect_uri)

            if attempt is not self._attempt:
                logger.debug("Dropping tokens exchanged for an abandoned login")
                return

            if not result.success or result.tokens is None:
                raise TierMateAuthException(
                    "exchange_failed", result.error or "Token exchange failed"
                )

            self.transport.token_store.set_pair(result.tokens)
        elif access_token:
            self.transport.token_store.set_pair(
                TokenPair(access_token=access_token, refresh_token=refresh_token)
            )

        # Without a code or tokens the completing context already stored them

    async def _complete(
        self,
        attempt: _Attempt,
        code: str | None = None,
        redirect_uri: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
    ) -> None:
        if not self._can_complete(attempt):
            return

        # Entered before the first await so racing signals see it
        self._set_state(QRLoginState.COMPLETING)
        attempt.handles.cancel()

        try:
            await self._redeem(attempt, code, redirect_uri, access_token, refresh_token)
        except TierMateAuthException as e:
            logger.error(f"QR login {self.login_id} failed: {e.error_description}")

            if attempt is self._attempt:
                self._finish(
                    attempt, QRLoginState.FAILED, e.error_description or e.error
                )

            return

        if attempt is not self._attempt:
            return

        if self.on_success is not None:
            try:
                await self.on_success()
            except TierMateAuthException as e:
                logger.error(f"Failed to load user after QR login: {e.error_description}")

                if attempt is self._attempt:
                    self._finish(
                        attempt,
                        QRLoginState.FAILED,
                        "Login succeeded but failed to load user info",
                    )

                return

            if attempt is not self._attempt:
                return

        if not self.transport.token_store.get_access():
            logger.error(f"QR login {self.login_id} completed without a stored session")
            self._finish(
                attempt,
                QRLoginState.FAILED,
                "Login succeeded but failed to load user info",
            )
            return

        logger.info(f"QR login {self.login_id} succeeded")
        self._finish(attempt, QRLoginState.SUCCESS)

    async def _watch_events(self, attempt: _Attempt) -> None:
        assert attempt.session is not None
        login_id = attempt.session.login_id

        try:
            async with aclosing(
                self.transport.stream_login_events(login_id)
            ) as events:
                async for event in events:
                    await self._apply(attempt, event)

                    if attempt is not self._attempt or self.state.is_terminal:
                        return
        except TransportError as e:
            logger.warning(
                f"Event stream for {login_id} unavailable, polling instead: "
                f"{e.error_description}"
            )
        else:
            if attempt is not self._attempt or self.state.is_terminal:
                return

            logger.warning(f"Event stream for {login_id} closed, polling instead")

        await self._poll(attempt)

    async def _poll(self, attempt: _Attempt) -> None:
        assert attempt.session is not None
        login_id = attempt.session.login_id

        while attempt is self._attempt and self.state in WAITING_STATES:
            await asyncio.sleep(self.config.poll_interval)

            if attempt is not self._attempt or self.state not in WAITING_STATES:
                return

            try:
                event = await self.transport.poll_login_status(login_id)
            except TransportError as e:
                logger.warning(f"Polling {login_id} failed: {e.error_description}")
                continue

            await self._apply(attempt, event)

    async def _countdown(self, attempt: _Attempt) -> None:
        while self.time_left > 0:
            await asyncio.sleep(self.config.tick_interval)

            if attempt is not self._attempt:
                return

            self.time_left -= 1

        if attempt is self._attempt and self.state in WAITING_STATES:
            logger.info(f"QR login {self.login_id} expired")
            self._finish(attempt, QRLoginState.EXPIRED, "QR code expired, please refresh")

    async def _watch_marker(self, attempt: _Attempt) -> None:
        assert attempt.session is not None
        login_id = attempt.session.login_id
        key = self.config.login_marker_key

        while self._can_complete(attempt):
            await asyncio.sleep(self.config.marker_poll_interval)

            if not self._can_complete(attempt):
                return

            if self.storage.get(key) == login_id:
                self.storage.delete(key)
                await self._complete(attempt)
                return
