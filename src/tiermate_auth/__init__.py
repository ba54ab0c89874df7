from tiermate_auth._config import AuthConfig
from tiermate_auth._qr_login import (
    QRLoginSessionManager,
    QRLoginSnapshot,
    mark_login_complete,
)
from tiermate_auth._redirect import RedirectLoginFlow
from tiermate_auth._session import AuthSessionController, SessionState
from tiermate_auth._storage import FileStorage, KeyValueStorage, MemoryStorage
from tiermate_auth._token_store import TokenStore
from tiermate_auth._transport import AuthTransport
from tiermate_auth.exceptions import (
    LoginStartError,
    PKCEVerifierMissing,
    TierMateAuthException,
    TransportError,
)
from tiermate_auth.models.login import LoginSession, LoginStatusEvent, QRLoginState
from tiermate_auth.models.oauth_token_response import TokenPair
from tiermate_auth.models.results import (
    AuthResult,
    CallbackResult,
    ExchangeResult,
    FlowResult,
)
from tiermate_auth.models.user import User
from tiermate_auth.utils._pkce import PkceChallenge, generate_challenge

__all__ = [
    "AuthConfig",
    "AuthResult",
    "AuthSessionController",
    "AuthTransport",
    "CallbackResult",
    "ExchangeResult",
    "FileStorage",
    "FlowResult",
    "KeyValueStorage",
    "LoginSession",
    "LoginStartError",
    "LoginStatusEvent",
    "MemoryStorage",
    "PKCEVerifierMissing",
    "PkceChallenge",
    "QRLoginSessionManager",
    "QRLoginSnapshot",
    "QRLoginState",
    "RedirectLoginFlow",
    "SessionState",
    "TierMateAuthException",
    "TokenPair",
    "TokenStore",
    "TransportError",
    "User",
    "generate_challenge",
    "mark_login_complete",
]
