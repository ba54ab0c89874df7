import base64
import hashlib
import secrets
from typing import Literal

from pydantic import BaseModel, computed_field

UNRESERVED_CHARACTERS = (
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
)

VERIFIER_LENGTH = 128
STATE_LENGTH = 32


def generate_random_string(length: int) -> str:
    # secrets raises if the OS has no secure random source
    return "".join(secrets.choice(UNRESERVED_CHARACTERS) for _ in range(length))


def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    """Generate a PKCE code verifier (43-128 characters)."""
    if not 43 <= length <= 128:
        raise ValueError("Code verifier length must be between 43 and 128")

    return generate_random_string(length)


def calculate_s256_challenge(verifier: str) -> str:
    sha256_digest = hashlib.sha256(verifier.encode("utf-8")).digest()

    challenge = base64.urlsafe_b64encode(sha256_digest).rstrip(b"=").decode("ascii")

    return challenge


class PkceChallenge(BaseModel):
    verifier: str
    method: Literal["S256"] = "S256"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def challenge(self) -> str:
        return calculate_s256_challenge(self.verifier)


class AntiReplayState(BaseModel):
    state: str
    nonce: str


def generate_challenge() -> PkceChallenge:
    return PkceChallenge(verifier=generate_code_verifier())


def generate_state() -> str:
    return generate_random_string(STATE_LENGTH)


def generate_nonce() -> str:
    return generate_random_string(STATE_LENGTH)


def generate_anti_replay_state() -> AntiReplayState:
    return AntiReplayState(state=generate_state(), nonce=generate_nonce())
