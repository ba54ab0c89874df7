class TierMateAuthException(Exception):
    def __init__(self, error: str, error_description: str | None = None) -> None:
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description


class TransportError(TierMateAuthException):
    """The identity provider could not be reached or sent an unusable response."""


class LoginStartError(TierMateAuthException):
    """The identity provider refused to start a QR login session."""


class PKCEVerifierMissing(TierMateAuthException):
    def __init__(self) -> None:
        super().__init__("invalid_state", "PKCE verifier missing")
