from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class User(BaseModel):
    """The signed-in user as returned by the identity provider."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    email: str | None = None
    display_name: str | None = Field(
        None, validation_alias=AliasChoices("display_name", "name")
    )
    avatar_url: str | None = Field(
        None, validation_alias=AliasChoices("avatar_url", "picture")
    )
    username: str | None = None
    bio: str | None = None
    is_admin: bool = False
    is_disabled: bool | None = None
    created_at: str | None = None
    updated_at: str | None = None
