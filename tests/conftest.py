import httpx
import pytest
import respx

from tiermate_auth._config import AuthConfig
from tiermate_auth._session import AuthSessionController
from tiermate_auth._storage import MemoryStorage
from tiermate_auth._token_store import TokenStore
from tiermate_auth._transport import AuthTransport

pytestmark = pytest.mark.asyncio

AUTH_BASE = "https://auth.test"
REDIRECT_URI = "https://app.test/auth/callback"


@pytest.fixture
def config() -> AuthConfig:
    # Background channels stay quiet unless a test shortens their interval
    return AuthConfig(
        auth_base=AUTH_BASE,
        redirect_uri=REDIRECT_URI,
        poll_interval=60,
        marker_poll_interval=60,
        tick_interval=60,
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def token_store(storage: MemoryStorage, config: AuthConfig) -> TokenStore:
    return TokenStore(storage, config)


@pytest.fixture
def auth_server():
    with respx.mock(base_url=AUTH_BASE, assert_all_called=False) as mock:
        yield mock


@pytest.fixture
async def transport(token_store: TokenStore, config: AuthConfig, auth_server):
    async with AuthTransport(token_store, config) as transport:
        yield transport


@pytest.fixture
async def controller(transport: AuthTransport):
    controller = AuthSessionController(transport)
    yield controller
    await controller.close()


@pytest.fixture
def user_info() -> dict:
    return {
        "id": 42,
        "email": "ada@example.com",
        "display_name": "Ada",
        "avatar_url": "https://cdn.test/ada.png",
        "is_admin": False,
    }


@pytest.fixture
def token_response() -> dict:
    return {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_type": "Bearer",
        "expires_in": 3600,
    }


def form_data(request: httpx.Request) -> dict[str, str]:
    return dict(httpx.QueryParams(request.content.decode()))


def sse_body(*events: str) -> bytes:
    return "".join(f"data: {event}\n\n" for event in events).encode()


def sse_response(*events: str) -> httpx.Response:
    return httpx.Response(
        200, content=sse_body(*events), headers={"content-type": "text/event-stream"}
    )
