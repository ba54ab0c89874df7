from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass
class AuthConfig:
    """Identity provider endpoints and client-side tuning."""

    auth_base: str = "https://auth.xiaojinpro.com"

    # Maps to the tiermate tenant on the identity provider
    client_id: str = "tiermate"

    default_scope: str = "openid profile offline_access"
    password_scope: str = "openid profile email offline_access"

    # Where third-party providers send the browser back to
    redirect_uri: str | None = None

    qr_start_path: str = "/v1/qr-login/start"
    qr_events_path: str = "/v1/qr-login/events"
    login_status_path: str = "/auth/login-status/{login_id}"
    token_path: str = "/oauth/token"
    user_info_path: str = "/v1/users/me"
    logout_path: str = "/auth/logout"
    email_login_path: str = "/auth/email/token"
    email_register_path: str = "/auth/email/register"
    sms_send_path: str = "/auth/sms/send"
    sms_verify_path: str = "/auth/sms/verify"
    authorize_path: str = "/auth/{provider}/authorize"
    bind_path: str = "/v1/users/me/connections/{provider}/mp-bind"

    access_token_key: str = "tiermate_jwt_token"
    refresh_token_key: str = "tiermate_refresh_token"
    login_marker_key: str = "qr_login_success"

    # Marker expected in cross-context completion messages
    message_source: str = "tiermate-auth"

    poll_interval: float = 2.0
    marker_poll_interval: float = 0.5
    tick_interval: float = 1.0
    request_timeout: float = 15.0

    def __post_init__(self) -> None:
        self.auth_base = self.auth_base.rstrip("/")

        if not self.is_secure_transport:
            logger.warning(
                f"Identity provider {self.auth_base} is not served over HTTPS, "
                "PKCE challenges and tokens will travel over an insecure channel"
            )

    @property
    def is_secure_transport(self) -> bool:
        parsed = urlparse(self.auth_base)

        return parsed.scheme == "https" or parsed.hostname in LOOPBACK_HOSTS

    def url(self, path: str, **path_params: str) -> str:
        return f"{self.auth_base}{path.format(**path_params)}"

    @classmethod
    def from_env(cls) -> AuthConfig:
        values: dict[str, str] = {}

        if auth_base := os.environ.get("TIERMATE_AUTH_BASE"):
            values["auth_base"] = auth_base

        if client_id := os.environ.get("TIERMATE_CLIENT_ID"):
            values["client_id"] = client_id

        if redirect_uri := os.environ.get("TIERMATE_REDIRECT_URI"):
            values["redirect_uri"] = redirect_uri

        return cls(**values)
