# tekitoi/oauth/models.py
from pydantic import BaseModel, Field
from typing import Optional, Callable
from datetime import datetime, timezone

from .pkce import PKCE_VALUE_PATTERN


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


class AuthorizationParams(BaseModel):
    """Query parameters of GET /authorize, also carried by the local login pages."""
    client_id: str
    redirect_uri: str = Field(description="Compared byte for byte with the registered value.")
    state: str = Field(description="Opaque value returned untouched to the relying application.")
    code_challenge: str = Field(pattern=PKCE_VALUE_PATTERN)
    code_challenge_method: str = Field(
        default="plain",
        description="PKCE method. RFC 7636 defaults to 'plain' when omitted."
    )
    scope: Optional[str] = None


class ExpiringRecord(BaseModel):
    """Base of every record kept in the correlation store."""
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class PendingAuthorizationRequest(ExpiringRecord):
    """The relying application's initial request, stored by Authorize."""
    id: str
    application_id: str
    client_id: str
    redirect_uri: str
    state: str
    scope: Optional[str] = None
    code_challenge: str
    code_challenge_method: str


class ProviderAuthorizationRequest(ExpiringRecord):
    """The upstream hop of a federated login, keyed by the CSRF token sent upstream."""
    id: str = Field(description="CSRF token round-tripped as the upstream 'state'.")
    pending_request_id: str
    application_id: str
    provider_id: str
    upstream_pkce_verifier: str


class IssuedCode(ExpiringRecord):
    """
    Authorization code handed to the relying application. Carries a copy of
    the initial request it answers, since that request is consumed when the
    code is minted.
    """
    code: str
    request: PendingAuthorizationRequest
    provider_id: str
    user_id: Optional[str] = None
    upstream_code: Optional[str] = None
    upstream_pkce_verifier: Optional[str] = None

    @property
    def is_federated(self) -> bool:
        return self.upstream_code is not None


class AccessTokenData(ExpiringRecord):
    """Opaque bearer token bound to an application, a user and a scope."""
    access_token: str
    application_id: str
    provider_id: str
    user_id: Optional[str] = None
    scope: Optional[str] = None
    upstream_access_token: Optional[str] = None
    upstream_token_encrypted: bool = False


class TokenRequest(BaseModel):
    """Body of POST /api/access-token, urlencoded or JSON."""
    grant_type: Optional[str] = None
    code: Optional[str] = None
    code_verifier: Optional[str] = Field(default=None, pattern=PKCE_VALUE_PATTERN)
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class TokenResponse(BaseModel):
    """Token response structure as per RFC 6749 - Section 5.1."""
    access_token: str
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None


class UpstreamToken(BaseModel):
    """Token returned by a federated provider's token endpoint."""
    access_token: str
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None


class UserProfile(BaseModel):
    """Body of GET /api/user-info."""
    id: str
    login: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    provider: str
