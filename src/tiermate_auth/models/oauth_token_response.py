from pydantic import BaseModel, Field

from .user import User


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str | None = None


class TokenResponse(BaseModel):
    token_type: str = Field(
        "Bearer", description="The type of token, usually 'Bearer'"
    )

    access_token: str = Field(description="The issued access token")
    expires_in: int | None = Field(
        None, description="Lifetime of the access token in seconds"
    )
    refresh_token: str | None = Field(
        None, description="Token used to obtain new access tokens"
    )
    scope: str | None = Field(
        None,
        description="Space-delimited list of scopes associated with the access token",
    )
    user: User | None = Field(
        None, description="Profile of the user the tokens were issued to"
    )

    @property
    def pair(self) -> TokenPair:
        return TokenPair(
            access_token=self.access_token, refresh_token=self.refresh_token
        )


class TokenErrorResponse(BaseModel):
    error: str | None = Field(
        None, description="Error code as per OAuth 2.0 specification"
    )
    error_description: str | None = Field(
        None, description="Human-readable explanation of the error"
    )
    message: str | None = Field(
        None, description="Human-readable message used by the TierMate provider"
    )

    def describe(self, default: str) -> str:
        return self.message or self.error_description or self.error or default
