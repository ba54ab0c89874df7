from dataclasses import dataclass

from .oauth_token_response import TokenPair
from .user import User


@dataclass
class ExchangeResult:
    """Outcome of a token-issuing call that the provider may reject."""

    success: bool
    tokens: TokenPair | None = None
    user: User | None = None
    error: str | None = None


@dataclass
class AuthResult:
    user: User | None = None
    error: str | None = None


@dataclass
class FlowResult:
    success: bool
    error: str | None = None


@dataclass
class CallbackResult:
    success: bool
    error: str | None = None
    return_path: str | None = None
    bind: bool = False
