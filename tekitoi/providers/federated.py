# tekitoi/providers/federated.py
import json
import logging
from typing import Any, Dict, List, Optional, Type
from urllib.parse import parse_qsl

import httpx
from pydantic import ValidationError

from ..oauth.errors import UpstreamProviderError, append_query_params
from ..oauth.models import UpstreamToken, UserProfile
from ..registry.models import FederatedProviderConfig, ProviderKind

logger = logging.getLogger(__name__)


def _first_present(payload: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def parse_token_payload(response: httpx.Response) -> Dict[str, Any]:
    """
    Parse a token endpoint body. Some providers (GitHub without an Accept
    header) answer urlencoded instead of JSON.
    """
    content_type = response.headers.get("content-type", "").lower()
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(response.text))
    try:
        payload = response.json()
    except json.JSONDecodeError:
        # neither declared nor valid JSON, try the form encoding
        return dict(parse_qsl(response.text))
    if not isinstance(payload, dict):
        raise ValueError("token response is not an object")
    return payload


class FederatedProviderAdapter:
    """
    Upstream OAuth2 provider reached through an authorization code + PKCE
    flow. Subclasses only differ in how the upstream profile is mapped.
    """

    kind: ProviderKind = ProviderKind.GENERIC_OAUTH
    userinfo_headers: Dict[str, str] = {"Accept": "application/json"}

    def __init__(self, provider: FederatedProviderConfig, redirect_url: str, http_client: httpx.AsyncClient):
        self.provider = provider
        self.redirect_url = redirect_url
        self.http_client = http_client

    @property
    def provider_id(self) -> str:
        return self.provider.id

    def build_authorize_url(self, csrf_token: str, pkce_challenge: str, scopes: Optional[List[str]] = None) -> str:
        """URL of the upstream authorize endpoint the browser is sent to."""
        requested_scopes = scopes if scopes is not None else self.provider.scopes
        return append_query_params(self.provider.authorization_url, {
            "response_type": "code",
            "client_id": self.provider.client_id,
            "redirect_uri": self.redirect_url,
            "scope": " ".join(requested_scopes) if requested_scopes else None,
            "state": csrf_token,
            "code_challenge": pkce_challenge,
            "code_challenge_method": "S256",
        })

    async def exchange_code(self, upstream_code: str, pkce_verifier: str) -> UpstreamToken:
        """
        Exchange an upstream authorization code for an upstream token.

        Raises:
            UpstreamProviderError: On transport failure, non-2xx status,
                an error payload or a malformed body
        """
        token_request_data = {
            "grant_type": "authorization_code",
            "code": upstream_code,
            "redirect_uri": self.redirect_url,
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
            "code_verifier": pkce_verifier,
        }
        try:
            response = await self.http_client.post(
                self.provider.token_url,
                data=token_request_data,
                headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Token request to provider '{self.provider_id}' failed: {e}")
            raise UpstreamProviderError(self.provider_id, "transport_error", str(e)) from e

        try:
            payload = parse_token_payload(response)
        except ValueError as e:
            logger.error(
                f"Unreadable token response from provider '{self.provider_id}' "
                f"(status {response.status_code}): {response.text!r}"
            )
            raise UpstreamProviderError(self.provider_id, "invalid_response", str(e)) from e

        if response.is_error or "error" in payload:
            upstream_error = payload.get("error", f"http_{response.status_code}")
            upstream_description = payload.get("error_description")
            logger.error(
                f"Provider '{self.provider_id}' rejected the code exchange: "
                f"status={response.status_code} error='{upstream_error}' description='{upstream_description}'"
            )
            raise UpstreamProviderError(self.provider_id, upstream_error, upstream_description)

        try:
            token = UpstreamToken.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Token response from provider '{self.provider_id}' lacks an access_token: {e}")
            raise UpstreamProviderError(self.provider_id, "invalid_response", "missing access_token") from e
        logger.info(f"Exchanged upstream code with provider '{self.provider_id}'.")
        return token

    async def fetch_user(self, access_token: str) -> UserProfile:
        """
        Fetch the live profile of the upstream user.

        Raises:
            UpstreamProviderError: On transport failure, non-2xx status or a malformed body
        """
        headers = dict(self.userinfo_headers)
        headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = await self.http_client.get(self.provider.userinfo_url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"User request to provider '{self.provider_id}' failed: {e}")
            raise UpstreamProviderError(self.provider_id, "transport_error", str(e)) from e

        if response.is_error:
            logger.error(
                f"Provider '{self.provider_id}' refused the user request: "
                f"status={response.status_code} body={response.text!r}"
            )
            raise UpstreamProviderError(self.provider_id, f"http_{response.status_code}", response.text)

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            logger.error(f"Provider '{self.provider_id}' returned a non-JSON profile: {response.text!r}")
            raise UpstreamProviderError(self.provider_id, "invalid_response", str(e)) from e

        profile = self._profile_from_payload(payload) if isinstance(payload, dict) else None
        if profile is None:
            logger.error(f"Provider '{self.provider_id}' returned a profile without identifier: {payload!r}")
            raise UpstreamProviderError(self.provider_id, "invalid_response", "profile without id")
        return profile

    def _profile_from_payload(self, payload: Dict[str, Any]) -> Optional[UserProfile]:
        user_id = _first_present(payload, "id", "sub")
        if user_id is None:
            return None
        return UserProfile(
            id=user_id,
            login=_first_present(payload, "login", "username", "preferred_username", "email"),
            email=_first_present(payload, "email"),
            name=_first_present(payload, "name"),
            avatar_url=_first_present(payload, "avatar_url", "picture"),
            provider=self.kind.value,
        )


class GithubProviderAdapter(FederatedProviderAdapter):
    kind = ProviderKind.GITHUB
    userinfo_headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "tekitoi",
    }

    def _profile_from_payload(self, payload: Dict[str, Any]) -> Optional[UserProfile]:
        user_id = _first_present(payload, "id")
        if user_id is None:
            return None
        return UserProfile(
            id=user_id,
            login=_first_present(payload, "login"),
            email=_first_present(payload, "email"),
            name=_first_present(payload, "name"),
            avatar_url=_first_present(payload, "avatar_url"),
            provider=self.kind.value,
        )


class GitlabProviderAdapter(FederatedProviderAdapter):
    kind = ProviderKind.GITLAB

    def _profile_from_payload(self, payload: Dict[str, Any]) -> Optional[UserProfile]:
        user_id = _first_present(payload, "id")
        if user_id is None:
            return None
        return UserProfile(
            id=user_id,
            login=_first_present(payload, "username"),
            email=_first_present(payload, "email"),
            name=_first_present(payload, "name"),
            avatar_url=_first_present(payload, "avatar_url"),
            provider=self.kind.value,
        )


class GoogleProviderAdapter(FederatedProviderAdapter):
    kind = ProviderKind.GOOGLE

    def _profile_from_payload(self, payload: Dict[str, Any]) -> Optional[UserProfile]:
        user_id = _first_present(payload, "id", "sub")
        if user_id is None:
            return None
        email = _first_present(payload, "email")
        return UserProfile(
            id=user_id,
            login=email.split("@", 1)[0] if email else None,
            email=email,
            name=_first_present(payload, "name"),
            avatar_url=_first_present(payload, "picture"),
            provider=self.kind.value,
        )


class GenericOAuthProviderAdapter(FederatedProviderAdapter):
    kind = ProviderKind.GENERIC_OAUTH


FEDERATED_ADAPTERS: Dict[ProviderKind, Type[FederatedProviderAdapter]] = {
    ProviderKind.GITHUB: GithubProviderAdapter,
    ProviderKind.GITLAB: GitlabProviderAdapter,
    ProviderKind.GOOGLE: GoogleProviderAdapter,
    ProviderKind.GENERIC_OAUTH: GenericOAuthProviderAdapter,
}
