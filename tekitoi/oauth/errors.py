# tekitoi/oauth/errors.py
from fastapi import HTTPException, status
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


class OAuthError(HTTPException):
    """Base class for broker errors, rendered as an OAuth 2.0 error body."""

    def __init__(
        self,
        status_code: int,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri

        detail = {"error": error}
        if error_description:
            detail["error_description"] = error_description
        if error_uri:
            detail["error_uri"] = error_uri

        super().__init__(status_code=status_code, detail=detail, headers=headers)


class InvalidRequestError(OAuthError):
    """
    The request is missing a required parameter, includes an
    unsupported parameter value or is otherwise malformed.
    (RFC 6749 - Section 5.2)
    """

    def __init__(self, error_description: str | None = None, error_uri: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_request",
            error_description=error_description,
            error_uri=error_uri
        )


class ClientNotFoundError(OAuthError):
    """No application is registered under the supplied client_id."""

    def __init__(self, error_description: str | None = "There is no application defined with the provided client id."):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_client",
            error_description=error_description
        )


class InvalidClientError(OAuthError):
    """
    Client authentication failed (e.g., unknown client or a client_id
    that does not own the authorization code).
    (RFC 6749 - Section 5.2)
    """

    def __init__(self, error_description: str | None = "Client authentication failed."):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="invalid_client",
            error_description=error_description,
            headers={"WWW-Authenticate": "Basic"}
        )


class InvalidClientSecretError(InvalidClientError):
    def __init__(self):
        super().__init__("Invalid client secret.")


class RedirectUriMismatchError(OAuthError):
    """The redirect_uri differs from the one registered for the application."""

    def __init__(self, error_description: str | None = "The redirect_uri does not match the registered value."):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_request",
            error_description=error_description
        )


class UnsupportedCodeChallengeMethodError(OAuthError):
    def __init__(self, method: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_request",
            error_description=f"Unsupported code_challenge_method '{method}'. Must be 'S256' or 'plain'."
        )


class CorrelationNotFoundError(OAuthError):
    """
    The state, code or provider request is unknown, expired or was
    already consumed.
    """

    def __init__(self, error_description: str | None = "The authorization request is unknown, expired or already used."):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_grant",
            error_description=error_description
        )


class PkceVerificationError(OAuthError):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_grant",
            error_description="PKCE verification failed: invalid code_verifier."
        )


class ProviderNotFoundError(OAuthError):
    def __init__(self, error_description: str | None = "The requested provider is not configured for this application."):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="invalid_request",
            error_description=error_description
        )


class UpstreamProviderError(OAuthError):
    """
    The upstream identity provider refused or failed a request.

    The upstream's own error is kept on the instance for operator logs
    only; the response body carries a generic message.
    """

    def __init__(
        self,
        provider_id: str,
        upstream_error: str | None = None,
        upstream_description: str | None = None
    ):
        self.provider_id = provider_id
        self.upstream_error = upstream_error
        self.upstream_description = upstream_description
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            error="server_error",
            error_description="The upstream identity provider could not complete the request."
        )


class InvalidCredentialsError(OAuthError):
    """Unknown user and wrong password deliberately share one message."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="access_denied",
            error_description="Invalid credentials."
        )


class UnauthorizedTokenError(OAuthError):
    """
    The access token provided is expired, revoked, malformed, or
    invalid for other reasons.
    (RFC 6750 - Section 3.1)
    """

    def __init__(self, error_description: str | None = "The access token is invalid.", realm: str = "tekitoi"):
        headers = {"WWW-Authenticate": f'Bearer realm="{realm}", error="invalid_token"'}
        if error_description:
            headers["WWW-Authenticate"] += f', error_description="{error_description}"'
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="invalid_token",
            error_description=error_description,
            headers=headers
        )


class UnsupportedGrantTypeError(OAuthError):
    def __init__(self, error_description: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="unsupported_grant_type",
            error_description=error_description
        )


class StorageError(OAuthError):
    """The correlation backend is unreachable or failed mid-operation."""

    def __init__(self, error_description: str | None = "The storage backend is temporarily unavailable."):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="temporarily_unavailable",
            error_description=error_description
        )


class ServerError(OAuthError):
    """
    The authorization server encountered an unexpected
    condition that prevented it from fulfilling the request.
    (RFC 6749 - Section 4.1.2.1)
    """

    def __init__(self, error_description: str | None = "The authorization server encountered an internal error."):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="server_error",
            error_description=error_description
        )


def append_query_params(url: str, params: Dict[str, Optional[str]]) -> str:
    """Append params to url, keeping the query it already has. None values are skipped."""
    split_url = urlsplit(url)
    query = parse_qsl(split_url.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(split_url._replace(query=urlencode(query)))


class RedirectableError(Exception):
    """
    An OAuthError raised once the relying application's redirect_uri is
    trusted. The HTTP layer answers with a 307 back to that redirect_uri.
    (RFC 6749 - Section 4.1.2.1)
    """

    def __init__(self, inner: OAuthError, redirect_uri: str, state: Optional[str]):
        self.inner = inner
        self.redirect_uri = redirect_uri
        self.state = state
        super().__init__(inner.error)

    def redirect_url(self) -> str:
        return append_query_params(self.redirect_uri, {
            "error": self.inner.error,
            "error_description": self.inner.error_description,
            "error_uri": self.inner.error_uri,
            "state": self.state,
        })
