import asyncio
import json
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

from tests.conftest import form_data, sse_response
from tiermate_auth._config import AuthConfig
from tiermate_auth._qr_login import QRLoginSessionManager, mark_login_complete
from tiermate_auth._storage import FileStorage
from tiermate_auth._token_store import TokenStore
from tiermate_auth._transport import AuthTransport
from tiermate_auth.exceptions import LoginStartError, TransportError
from tiermate_auth.models.login import LoginStatusEvent, QRLoginState
from tiermate_auth.models.oauth_token_response import TokenPair
from tiermate_auth.utils._pkce import calculate_s256_challenge

pytestmark = pytest.mark.asyncio


def login_session(login_id: str = "login-1", expires_in: int = 300) -> dict:
    return {
        "login_id": login_id,
        "qr_url": f"https://qr.test/{login_id}",
        "expires_in": expires_in,
    }


def success_message(code: str = "abc123", source: str = "tiermate-auth") -> dict:
    return {"type": "LOGIN_SUCCESS", "source": source, "code": code}


def live_tasks(login_id: str) -> list[asyncio.Task]:
    return [
        task
        for task in asyncio.all_tasks()
        if task.get_name().endswith(f"-{login_id}") and not task.done()
    ]


async def wait_for_state(manager: QRLoginSessionManager, *states: QRLoginState):
    async with asyncio.timeout(5):
        while manager.state not in states:
            await asyncio.sleep(0.001)


async def wait_for_teardown(login_id: str):
    async with asyncio.timeout(5):
        while live_tasks(login_id):
            await asyncio.sleep(0.001)


@pytest.fixture
def start_route(auth_server):
    return auth_server.post("/v1/qr-login/start").mock(
        return_value=httpx.Response(200, json=login_session())
    )


@pytest.fixture
def events_route(auth_server):
    # An empty stream ends immediately and leaves polling in charge
    return auth_server.get("/v1/qr-login/events").mock(return_value=sse_response())


@pytest.fixture
def token_route(auth_server, token_response: dict):
    return auth_server.post("/oauth/token").mock(
        return_value=httpx.Response(200, json=token_response)
    )


@pytest.fixture
def adoptions() -> list[str]:
    return []


@pytest.fixture
async def manager(
    transport: AuthTransport, start_route, events_route, adoptions: list[str]
):
    async def on_success():
        adoptions.append(transport.token_store.get_access())

    async with QRLoginSessionManager(transport, on_success=on_success) as manager:
        yield manager


async def test_start(manager: QRLoginSessionManager, start_route):
    session = await manager.start()

    assert session.login_id == "login-1"
    assert manager.state is QRLoginState.PENDING

    snapshot = manager.snapshot()
    assert snapshot.login_id == "login-1"
    assert snapshot.qr_url == "https://qr.test/login-1"
    assert snapshot.time_left == 300
    assert snapshot.error is None

    body = json.loads(start_route.calls.last.request.content)
    assert body["scope"] == "openid profile offline_access"
    assert body["code_challenge_method"] == "S256"
    assert "code_verifier" not in body


async def test_start_with_scopes(manager: QRLoginSessionManager, start_route):
    await manager.start(scopes=["openid", "email"], return_to="/settings")

    body = json.loads(start_route.calls.last.request.content)
    assert body["scope"] == "openid email"
    assert body["return_to"] == "/settings"


async def test_completed_event_exchanges_code(
    manager: QRLoginSessionManager,
    start_route,
    events_route,
    token_route,
    token_store: TokenStore,
    adoptions: list[str],
):
    events_route.mock(
        return_value=sse_response(
            '{"status": "pending"}',
            '{"status": "completed", "code": "abc123"}',
        )
    )

    await manager.start()
    await wait_for_state(manager, QRLoginState.SUCCESS)

    assert token_route.call_count == 1

    exchange = form_data(token_route.calls.last.request)
    challenge = json.loads(start_route.calls.last.request.content)["code_challenge"]

    assert exchange["code"] == "abc123"
    assert calculate_s256_challenge(exchange["code_verifier"]) == challenge

    assert token_store.get() == TokenPair(
        access_token="access-1", refresh_token="refresh-1"
    )
    assert adoptions == ["access-1"]

    await wait_for_teardown("login-1")


async def test_expires_without_server_events(
    transport: AuthTransport, config: AuthConfig, start_route, events_route
):
    events_route.mock(return_value=sse_response('{"status": "pending"}'))

    async with QRLoginSessionManager(
        transport, config=replace(config, tick_interval=0)
    ) as manager:
        await manager.start()

        await wait_for_state(manager, QRLoginState.EXPIRED)

        assert manager.time_left == 0
        assert manager.error == "QR code expired, please refresh"

        await wait_for_teardown("login-1")


async def test_expired_event(manager: QRLoginSessionManager):
    await manager.start()

    await manager.dispatch("login-1", LoginStatusEvent(status="expired"))

    assert manager.state is QRLoginState.EXPIRED
    assert manager.error == "QR code expired"


async def test_failed_event(manager: QRLoginSessionManager):
    await manager.start()

    await manager.dispatch(
        "login-1", LoginStatusEvent(status="failed", error="User declined")
    )

    assert manager.state is QRLoginState.FAILED
    assert manager.error == "User declined"

    await wait_for_teardown("login-1")


async def test_status_moves_forward_only(manager: QRLoginSessionManager):
    await manager.start()

    await manager.dispatch("login-1", LoginStatusEvent(status="authorized"))
    assert manager.state is QRLoginState.AUTHORIZING

    await manager.dispatch("login-1", LoginStatusEvent(status="scanned"))
    await manager.dispatch("login-1", LoginStatusEvent(status="pending"))
    assert manager.state is QRLoginState.AUTHORIZING


@pytest.mark.parametrize(
    "terminal_event, terminal_state",
    [
        (LoginStatusEvent(status="completed", code="abc123"), QRLoginState.SUCCESS),
        (LoginStatusEvent(status="failed"), QRLoginState.FAILED),
        (LoginStatusEvent(status="expired"), QRLoginState.EXPIRED),
    ],
)
async def test_terminal_state_never_regresses(
    manager: QRLoginSessionManager,
    token_route,
    terminal_event: LoginStatusEvent,
    terminal_state: QRLoginState,
):
    await manager.start()
    await manager.dispatch("login-1", terminal_event)

    assert manager.state is terminal_state
    snapshot = manager.snapshot()

    for status in ["pending", "scanned", "authorized", "completed", "failed", "expired"]:
        await manager.dispatch(
            "login-1", LoginStatusEvent(status=status, code="late-code")
        )
        assert await manager.handle_message(success_message("late-code")) is False

    assert manager.snapshot() == snapshot
    assert token_route.call_count <= 1


async def test_message_and_event_exchange_once(
    manager: QRLoginSessionManager, token_route, adoptions: list[str]
):
    await manager.start()

    handled, _ = await asyncio.gather(
        manager.handle_message(success_message()),
        manager.dispatch(
            "login-1", LoginStatusEvent(status="completed", code="abc123")
        ),
    )

    assert handled is True
    assert manager.state is QRLoginState.SUCCESS
    assert token_route.call_count == 1
    assert adoptions == ["access-1"]

    # A second delivery of the same message is ignored
    assert await manager.handle_message(success_message()) is False
    assert token_route.call_count == 1


async def test_message_from_unknown_source_is_ignored(
    manager: QRLoginSessionManager, token_route
):
    await manager.start()

    assert await manager.handle_message(success_message(source="other-app")) is False
    assert await manager.handle_message({"type": "SOMETHING_ELSE"}) is False
    assert await manager.handle_message("LOGIN_SUCCESS") is False

    assert manager.state is QRLoginState.PENDING
    assert not token_route.called


async def test_message_before_start_is_ignored(
    manager: QRLoginSessionManager, token_route
):
    assert await manager.handle_message(success_message()) is False
    assert not token_route.called


async def test_completed_event_with_tokens(
    manager: QRLoginSessionManager,
    token_route,
    token_store: TokenStore,
    adoptions: list[str],
):
    await manager.start()

    await manager.dispatch(
        "login-1",
        LoginStatusEvent(
            status="success", access_token="access-qr", refresh_token="refresh-qr"
        ),
    )

    assert manager.state is QRLoginState.SUCCESS
    assert not token_route.called
    assert token_store.get() == TokenPair(
        access_token="access-qr", refresh_token="refresh-qr"
    )
    assert adoptions == ["access-qr"]


async def test_exchange_rejected(
    manager: QRLoginSessionManager, token_route, adoptions: list[str]
):
    token_route.mock(
        return_value=httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Code expired"}
        )
    )
    await manager.start()

    await manager.handle_message(success_message())

    assert manager.state is QRLoginState.FAILED
    assert manager.error == "Code expired"
    assert adoptions == []


async def test_missing_verifier_fails_attempt(
    manager: QRLoginSessionManager, token_route
):
    await manager.start()
    manager._attempt.discard_secrets()

    await manager.handle_message(success_message())

    assert manager.state is QRLoginState.FAILED
    assert manager.error == "PKCE verifier missing"
    assert not token_route.called


async def test_user_load_failure_fails_attempt(
    transport: AuthTransport, start_route, events_route, token_route
):
    async def on_success():
        raise TransportError("network_error", "Network error. Please try again.")

    async with QRLoginSessionManager(transport, on_success=on_success) as manager:
        await manager.start()
        await manager.handle_message(success_message())

        assert manager.state is QRLoginState.FAILED
        assert manager.error == "Login succeeded but failed to load user info"


async def test_start_rejected(manager: QRLoginSessionManager, start_route):
    start_route.mock(
        return_value=httpx.Response(500, json={"message": "QR login unavailable"})
    )

    with pytest.raises(LoginStartError):
        await manager.start()

    assert manager.state is QRLoginState.FAILED
    assert manager.error == "QR login unavailable"
    assert manager.session is None


async def test_start_network_error(manager: QRLoginSessionManager, start_route):
    start_route.mock(side_effect=httpx.ConnectError)

    with pytest.raises(TransportError):
        await manager.start()

    assert manager.state is QRLoginState.FAILED
    assert manager.error == "Network error. Please try again."


async def test_falls_back_to_polling(
    transport: AuthTransport,
    config: AuthConfig,
    auth_server,
    start_route,
    events_route,
    token_route,
):
    events_route.mock(return_value=httpx.Response(503))
    status_route = auth_server.get("/auth/login-status/login-1").mock(
        side_effect=[
            httpx.Response(500),
            httpx.Response(200, json={"status": "scanned"}),
            httpx.Response(200, json={"status": "completed", "code": "abc123"}),
        ]
    )
    states: list[QRLoginState] = []

    async with QRLoginSessionManager(
        transport, config=replace(config, poll_interval=0.001)
    ) as manager:
        manager.subscribe(lambda snapshot: states.append(snapshot.state))

        await manager.start()
        await wait_for_state(manager, QRLoginState.SUCCESS)

    assert status_route.call_count == 3
    assert token_route.call_count == 1
    assert states == [
        QRLoginState.PENDING,
        QRLoginState.SCANNED,
        QRLoginState.COMPLETING,
        QRLoginState.SUCCESS,
    ]


async def test_storage_marker_completes_login(
    config: AuthConfig,
    tmp_path: Path,
    auth_server,
    start_route,
    events_route,
    token_route,
):
    path = tmp_path / "shared.json"
    other_context = FileStorage(path)
    marker_config = replace(config, marker_poll_interval=0.001)
    token_store = TokenStore(FileStorage(path), marker_config)

    async with (
        AuthTransport(token_store, marker_config) as transport,
        QRLoginSessionManager(transport, config=marker_config) as manager,
    ):
        await manager.start()

        mark_login_complete(other_context, "login-other", config)
        await asyncio.sleep(0.05)
        assert manager.state is QRLoginState.PENDING

        TokenStore(other_context, config).set_pair(
            TokenPair(access_token="access-qr", refresh_token="refresh-qr")
        )
        mark_login_complete(other_context, "login-1", config)
        await wait_for_state(manager, QRLoginState.SUCCESS, QRLoginState.FAILED)

        assert manager.state is QRLoginState.SUCCESS
        assert token_store.get_access() == "access-qr"

    assert other_context.get("qr_login_success") is None
    assert not token_route.called


async def test_storage_marker_without_tokens_fails(
    transport: AuthTransport,
    config: AuthConfig,
    token_store: TokenStore,
    start_route,
    events_route,
    token_route,
):
    adopted = []

    async def on_success():
        adopted.append(token_store.get_access())

    async with QRLoginSessionManager(
        transport,
        config=replace(config, marker_poll_interval=0.001),
        on_success=on_success,
    ) as manager:
        await manager.start()

        mark_login_complete(token_store.storage, "login-1", config)
        await wait_for_state(manager, QRLoginState.SUCCESS, QRLoginState.FAILED)

        assert manager.state is QRLoginState.FAILED
        assert manager.error == "Login succeeded but failed to load user info"

    assert adopted == [None]
    assert token_store.get() is None
    assert not token_route.called


async def test_new_attempt_tears_down_previous(
    manager: QRLoginSessionManager, start_route, token_route
):
    start_route.mock(
        side_effect=[
            httpx.Response(200, json=login_session("login-1")),
            httpx.Response(200, json=login_session("login-2")),
        ]
    )

    await manager.start()
    assert live_tasks("login-1")

    await manager.start()
    await wait_for_teardown("login-1")

    assert manager.login_id == "login-2"
    assert live_tasks("login-2")

    await manager.dispatch(
        "login-1", LoginStatusEvent(status="completed", code="abc123")
    )
    await manager.dispatch("login-1", LoginStatusEvent(status="failed"))

    assert manager.state is QRLoginState.PENDING
    assert not token_route.called


async def test_exchange_finishing_after_new_attempt_is_dropped(
    manager: QRLoginSessionManager,
    start_route,
    token_route,
    token_store: TokenStore,
    adoptions: list[str],
):
    start_route.mock(
        side_effect=[
            httpx.Response(200, json=login_session("login-1")),
            httpx.Response(200, json=login_session("login-2")),
        ]
    )
    requested = asyncio.Event()
    release = asyncio.Event()

    async def slow_token_response(request):
        requested.set()
        await release.wait()
        return httpx.Response(
            200, json={"access_token": "stale-access", "refresh_token": "stale-refresh"}
        )

    token_route.mock(side_effect=slow_token_response)

    await manager.start()
    completion = asyncio.create_task(manager.handle_message(success_message()))

    async with asyncio.timeout(5):
        await requested.wait()

    await manager.start()
    release.set()

    assert await completion is True

    assert manager.login_id == "login-2"
    assert manager.state is QRLoginState.PENDING
    assert token_store.get() is None
    assert adoptions == []


async def test_retry_after_expiry(manager: QRLoginSessionManager, start_route):
    start_route.mock(
        side_effect=[
            httpx.Response(200, json=login_session("login-1")),
            httpx.Response(200, json=login_session("login-2", expires_in=120)),
        ]
    )

    await manager.start()
    await manager.dispatch("login-1", LoginStatusEvent(status="expired"))
    assert manager.state is QRLoginState.EXPIRED

    await manager.retry()

    assert manager.state is QRLoginState.PENDING
    assert manager.error is None
    assert manager.login_id == "login-2"
    assert manager.time_left == 120


async def test_close_cancels_background_work(manager: QRLoginSessionManager):
    received = []
    manager.subscribe(received.append)

    await manager.start()
    assert live_tasks("login-1")

    await manager.close()

    assert not live_tasks("login-1")
    assert manager.session is None

    await manager.dispatch("login-1", LoginStatusEvent(status="failed"))
    assert manager.state is QRLoginState.PENDING
    assert len(received) == 1


async def test_unsubscribe(manager: QRLoginSessionManager):
    received = []
    subscription = manager.subscribe(received.append)

    subscription.cancel()
    subscription.cancel()

    await manager.start()

    assert subscription.done
    assert received == []
