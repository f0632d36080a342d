# tekitoi/registry/models.py
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from ..oauth.models import UserProfile


class ProviderKind(str, Enum):
    """Closed set of identity sources an application can offer."""
    CREDENTIALS = "credentials"
    PROFILES = "profiles"
    USER_LIST = "user-list"
    GITHUB = "github"
    GITLAB = "gitlab"
    GOOGLE = "google"
    GENERIC_OAUTH = "oauth"

    @property
    def is_local(self) -> bool:
        return self in LOCAL_PROVIDER_KINDS


LOCAL_PROVIDER_KINDS = frozenset({ProviderKind.CREDENTIALS, ProviderKind.PROFILES, ProviderKind.USER_LIST})


class DatasetUser(BaseModel):
    """A user entry as written in the dataset file."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    login: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    password_hash: Optional[str] = Field(default=None, repr=False)

    @model_validator(mode="after")
    def default_login_from_email(self) -> "DatasetUser":
        if not self.login and self.email:
            self.login = self.email.split("@", 1)[0]
        if not self.login:
            raise ValueError(f"user '{self.id}' needs a login or an email")
        return self


class User(BaseModel):
    """A local user as seen by the broker. Never mutated after loading."""
    id: str
    application_id: str
    provider_id: str
    provider_kind: ProviderKind
    login: str
    email: Optional[str] = None
    name: Optional[str] = None
    password_hash: Optional[str] = Field(default=None, repr=False, exclude=True)

    def to_profile(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            login=self.login,
            email=self.email,
            name=self.name,
            provider=self.provider_kind.value,
        )


class _ProviderConfig(BaseModel):
    id: Optional[str] = None
    label: Optional[str] = None

    @model_validator(mode="after")
    def default_id_from_kind(self):
        if not self.id:
            self.id = self.kind
        return self

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind(self.kind)

    @property
    def display_name(self) -> str:
        return self.label or self.id


class _LocalProviderConfig(_ProviderConfig):
    users: List[DatasetUser] = Field(default_factory=list)


class CredentialsProviderConfig(_LocalProviderConfig):
    """Email and password checked against a salted hash."""
    kind: Literal["credentials"] = "credentials"

    @model_validator(mode="after")
    def require_passwords(self) -> "CredentialsProviderConfig":
        for user in self.users:
            if not user.email:
                raise ValueError(f"credentials user '{user.login}' needs an email")
            if not (user.password or user.password_hash):
                raise ValueError(f"credentials user '{user.login}' needs a password or a password_hash")
        return self


class ProfilesProviderConfig(_LocalProviderConfig):
    """A fixed list of profiles the user picks from."""
    kind: Literal["profiles"] = "profiles"


class UserListProviderConfig(_LocalProviderConfig):
    kind: Literal["user-list"] = "user-list"


class _FederatedProviderConfig(_ProviderConfig):
    client_id: str
    client_secret: str = Field(repr=False)
    scopes: List[str] = Field(default_factory=list)
    authorization_url: str
    token_url: str
    userinfo_url: str


class GithubProviderConfig(_FederatedProviderConfig):
    kind: Literal["github"] = "github"
    authorization_url: str = "https://github.com/login/oauth/authorize"
    token_url: str = "https://github.com/login/oauth/access_token"
    userinfo_url: str = "https://api.github.com/user"


class GitlabProviderConfig(_FederatedProviderConfig):
    kind: Literal["gitlab"] = "gitlab"
    authorization_url: str = "https://gitlab.com/oauth/authorize"
    token_url: str = "https://gitlab.com/oauth/token"
    userinfo_url: str = "https://gitlab.com/api/v4/user"


class GoogleProviderConfig(_FederatedProviderConfig):
    kind: Literal["google"] = "google"
    authorization_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    userinfo_url: str = "https://www.googleapis.com/oauth2/v1/userinfo"


class GenericOAuthProviderConfig(_FederatedProviderConfig):
    """Any OAuth2 server; every endpoint must be given explicitly."""
    kind: Literal["oauth"] = "oauth"


LocalProviderConfig = Union[CredentialsProviderConfig, ProfilesProviderConfig, UserListProviderConfig]
FederatedProviderConfig = Union[
    GithubProviderConfig, GitlabProviderConfig, GoogleProviderConfig, GenericOAuthProviderConfig
]
ProviderConfig = Annotated[
    Union[
        CredentialsProviderConfig,
        ProfilesProviderConfig,
        UserListProviderConfig,
        GithubProviderConfig,
        GitlabProviderConfig,
        GoogleProviderConfig,
        GenericOAuthProviderConfig,
    ],
    Field(discriminator="kind"),
]


class Application(BaseModel):
    """A relying application (OAuth client) and the providers it offers."""
    id: Optional[str] = None
    client_id: str
    client_secrets: List[str] = Field(default_factory=list, repr=False)
    redirect_uri: str
    label: Optional[str] = None
    providers: List[ProviderConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_application(self) -> "Application":
        if not self.id:
            self.id = self.client_id
        provider_ids = [provider.id for provider in self.providers]
        duplicates = {pid for pid in provider_ids if provider_ids.count(pid) > 1}
        if duplicates:
            raise ValueError(f"application '{self.client_id}' declares duplicate provider ids: {sorted(duplicates)}")
        return self

    def is_redirect_uri_matching(self, redirect_uri: str) -> bool:
        return self.redirect_uri == redirect_uri


class Dataset(BaseModel):
    """Root of the dataset file."""
    applications: List[Application] = Field(default_factory=list)
