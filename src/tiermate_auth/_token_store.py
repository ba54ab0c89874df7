import logging

from ._config import AuthConfig
from ._storage import KeyValueStorage
from .models.oauth_token_response import TokenPair

logger = logging.getLogger(__name__)


class TokenStore:
    """Access/refresh token persistence on top of a key-value storage.

    The two tokens are written in separate steps, readers must tolerate a
    window where only one of them is present. Expiry is not tracked here,
    it is discovered through a 401 from the provider.
    """

    def __init__(self, storage: KeyValueStorage, config: AuthConfig | None = None):
        self.storage = storage
        self.config = config or AuthConfig()

    def get(self) -> TokenPair | None:
        access_token = self.get_access()

        if not access_token:
            return None

        return TokenPair(access_token=access_token, refresh_token=self.get_refresh())

    def get_access(self) -> str | None:
        return self.storage.get(self.config.access_token_key)

    def get_refresh(self) -> str | None:
        return self.storage.get(self.config.refresh_token_key)

    def set_access(self, token: str) -> None:
        self.storage.set(self.config.access_token_key, token)

    def set_refresh(self, token: str) -> None:
        self.storage.set(self.config.refresh_token_key, token)

    def set_pair(self, pair: TokenPair) -> None:
        self.set_access(pair.access_token)

        if pair.refresh_token:
            self.set_refresh(pair.refresh_token)

    def clear(self) -> None:
        self.storage.delete(self.config.access_token_key)
        self.storage.delete(self.config.refresh_token_key)
        logger.info("Cleared stored tokens")
