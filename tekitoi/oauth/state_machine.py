# tekitoi/oauth/state_machine.py
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional
from urllib.parse import urlencode

import httpx
from starlette.concurrency import run_in_threadpool

from ..providers import (
    CredentialsProviderAdapter,
    FederatedProviderAdapter,
    LocalProviderAdapter,
    ProviderAdapter,
    build_provider_adapter,
)
from ..registry.client_registry import ClientRegistry
from ..registry.models import Application, ProviderConfig
from ..storage.interfaces import AbstractCorrelationStore
from ..utils.security import FernetEncryptor
from .errors import (
    CorrelationNotFoundError,
    InvalidClientError,
    InvalidCredentialsError,
    InvalidRequestError,
    OAuthError,
    PkceVerificationError,
    ProviderNotFoundError,
    RedirectUriMismatchError,
    RedirectableError,
    ServerError,
    UnauthorizedTokenError,
    UnsupportedCodeChallengeMethodError,
    UnsupportedGrantTypeError,
    append_query_params,
)
from .models import (
    AccessTokenData,
    AuthorizationParams,
    Clock,
    IssuedCode,
    PendingAuthorizationRequest,
    ProviderAuthorizationRequest,
    TokenRequest,
    TokenResponse,
    UserProfile,
    utc_now,
)
from .pkce import (
    ACCESS_TOKEN_LENGTH,
    AUTHORIZATION_CODE_LENGTH,
    CSRF_TOKEN_LENGTH,
    SUPPORTED_CODE_CHALLENGE_METHODS,
    generate_challenge_pair,
    generate_opaque_token,
    verify_pkce,
)

logger = logging.getLogger(__name__)

AUTHORIZATION_TTL_SECONDS = 600  # 10 minutes
ACCESS_TOKEN_TTL_SECONDS = 86400

# Correlation store namespaces
PENDING_NAMESPACE = "pending"
PROVIDER_NAMESPACE = "provider"
CODE_NAMESPACE = "code"
TOKEN_NAMESPACE = "token"

# Upstream authorization errors forwarded as-is to the relying application
FORWARDED_UPSTREAM_ERRORS = frozenset({"access_denied", "temporarily_unavailable"})


def _key(namespace: str, value: str) -> str:
    return f"{namespace}:{value}"


def _short(value: str) -> str:
    return f"{value[:6]}..."


@dataclass
class AuthorizationPrompt:
    """Outcome of Authorize: the stored request and the providers to choose from."""
    request: PendingAuthorizationRequest
    application: Application
    providers: List[ProviderConfig]

    @property
    def single_local_provider(self) -> Optional[ProviderConfig]:
        if len(self.providers) == 1 and self.providers[0].provider_kind.is_local:
            return self.providers[0]
        return None


@dataclass
class LocalLoginContext:
    """A local login page about to be shown or submitted."""
    request: PendingAuthorizationRequest
    application: Application
    provider: ProviderConfig
    adapter: LocalProviderAdapter
    # False when the request came from carried query parameters and was never stored
    stored: bool


class AuthorizationStateMachine:
    """
    Drives the broker's authorization code flow:

    Authorize -> ProviderRedirect -> ProviderCallback -> TokenExchange
    Authorize -> LocalLogin -> TokenExchange

    Every hop is correlated through the injected store. Records are consumed
    with ``take_once`` so a state, provider request or code resolves at most
    once. Errors raised before the relying application's redirect_uri is
    trusted are plain ``OAuthError``s; afterwards they are wrapped in
    ``RedirectableError``.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        store: AbstractCorrelationStore,
        http_client: httpx.AsyncClient,
        upstream_redirect_url: str,
        authorization_ttl_seconds: int = AUTHORIZATION_TTL_SECONDS,
        access_token_ttl_seconds: Optional[int] = ACCESS_TOKEN_TTL_SECONDS,
        encryptor: Optional[FernetEncryptor] = None,
        clock: Clock = utc_now
    ):
        self.registry = registry
        self.store = store
        self.http_client = http_client
        self.upstream_redirect_url = upstream_redirect_url
        self.authorization_ttl = timedelta(seconds=authorization_ttl_seconds)
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.encryptor = encryptor
        self.clock = clock

    # --- helpers ---

    def _adapter_for(self, application_id: str, provider: ProviderConfig) -> ProviderAdapter:
        return build_provider_adapter(
            provider,
            registry=self.registry,
            application_id=application_id,
            redirect_url=self.upstream_redirect_url,
            http_client=self.http_client,
        )

    def _validate_authorization_params(self, params: AuthorizationParams) -> Application:
        """
        Raises:
            ClientNotFoundError: Unknown client_id (no redirect target yet)
            RedirectUriMismatchError: redirect_uri differs from the registered one (no redirect target yet)
            RedirectableError: Any later problem, sent back to the trusted redirect_uri
        """
        application = self.registry.find_application(params.client_id)
        self.registry.validate_redirect_uri(application, params.redirect_uri)

        if "code_challenge_method" not in params.model_fields_set:
            logger.debug(f"No PKCE method from client '{params.client_id}', defaulting to 'plain'.")
        if params.code_challenge_method not in SUPPORTED_CODE_CHALLENGE_METHODS:
            logger.warning(
                f"Unsupported PKCE method '{params.code_challenge_method}' from client '{params.client_id}'."
            )
            raise RedirectableError(
                UnsupportedCodeChallengeMethodError(params.code_challenge_method),
                params.redirect_uri,
                params.state
            )
        return application

    def _new_pending_request(
        self, application: Application, params: AuthorizationParams
    ) -> PendingAuthorizationRequest:
        now = self.clock()
        return PendingAuthorizationRequest(
            id=generate_opaque_token(AUTHORIZATION_CODE_LENGTH),
            application_id=application.id,
            client_id=application.client_id,
            redirect_uri=params.redirect_uri,
            state=params.state,
            scope=params.scope,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            created_at=now,
            expires_at=now + self.authorization_ttl,
        )

    async def _issue_code(
        self,
        request: PendingAuthorizationRequest,
        provider_id: str,
        user_id: Optional[str] = None,
        upstream_code: Optional[str] = None,
        upstream_pkce_verifier: Optional[str] = None
    ) -> str:
        """Store a fresh authorization code and return the success redirect URL."""
        now = self.clock()
        issued = IssuedCode(
            code=generate_opaque_token(AUTHORIZATION_CODE_LENGTH),
            request=request,
            provider_id=provider_id,
            user_id=user_id,
            upstream_code=upstream_code,
            upstream_pkce_verifier=upstream_pkce_verifier,
            created_at=now,
            expires_at=now + self.authorization_ttl,
        )
        await self.store.put(_key(CODE_NAMESPACE, issued.code), issued)
        logger.info(
            f"Authorization code '{_short(issued.code)}' issued for client '{request.client_id}' "
            f"through provider '{provider_id}'."
        )
        return append_query_params(request.redirect_uri, {"code": issued.code, "state": request.state})

    # --- Authorize ---

    async def authorize(self, params: AuthorizationParams) -> AuthorizationPrompt:
        """Validate the relying application's request and remember it."""
        logger.info(f"Authorization request from client '{params.client_id}'.")
        application = self._validate_authorization_params(params)
        pending = self._new_pending_request(application, params)
        await self.store.put(_key(PENDING_NAMESPACE, pending.id), pending)
        providers = self.registry.list_providers(application.id)
        logger.info(
            f"Pending request '{_short(pending.id)}' stored for client '{application.client_id}' "
            f"with {len(providers)} provider(s)."
        )
        return AuthorizationPrompt(request=pending, application=application, providers=providers)

    # --- ProviderRedirect ---

    async def provider_redirect(self, request_id: str, provider_ref: str) -> str:
        """
        Start the login with the chosen provider.

        Returns:
            The upstream authorize URL for federated providers, or the path
            of the local login page for local ones.
        """
        pending = await self.store.get(_key(PENDING_NAMESPACE, request_id), PendingAuthorizationRequest)
        if pending is None:
            logger.warning(f"Provider redirect for unknown request '{_short(request_id)}'.")
            raise CorrelationNotFoundError()

        try:
            provider = self.registry.find_provider(pending.application_id, provider_ref)
        except ProviderNotFoundError as e:
            raise RedirectableError(e, pending.redirect_uri, pending.state) from e

        if provider.provider_kind.is_local:
            return f"/authorize/{provider.kind}/login?{urlencode({'request_id': pending.id})}"

        adapter = self._adapter_for(pending.application_id, provider)
        challenge, verifier = generate_challenge_pair()
        now = self.clock()
        provider_request = ProviderAuthorizationRequest(
            id=generate_opaque_token(CSRF_TOKEN_LENGTH),
            pending_request_id=pending.id,
            application_id=pending.application_id,
            provider_id=provider.id,
            upstream_pkce_verifier=verifier,
            created_at=now,
            expires_at=now + self.authorization_ttl,
        )
        await self.store.put(_key(PROVIDER_NAMESPACE, provider_request.id), provider_request)
        logger.info(f"Redirecting request '{_short(pending.id)}' to provider '{provider.id}'.")
        return adapter.build_authorize_url(provider_request.id, challenge)

    # --- ProviderCallback ---

    async def provider_callback(
        self,
        state: Optional[str],
        code: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        error_uri: Optional[str] = None
    ) -> str:
        """
        Handle the upstream provider's redirect. The upstream code is only
        stored here; it is exchanged during TokenExchange.

        Returns:
            The relying application's redirect URL, carrying either code and
            state or an OAuth error.
        """
        if not state:
            raise InvalidRequestError("state is required.")

        provider_request = await self.store.take_once(
            _key(PROVIDER_NAMESPACE, state), ProviderAuthorizationRequest
        )
        if provider_request is None:
            logger.warning(f"Provider callback with unknown or replayed state '{_short(state)}'.")
            raise CorrelationNotFoundError()

        pending = await self.store.take_once(
            _key(PENDING_NAMESPACE, provider_request.pending_request_id), PendingAuthorizationRequest
        )
        if pending is None:
            logger.warning(
                f"Initial request '{_short(provider_request.pending_request_id)}' expired "
                f"or already completed before the provider callback."
            )
            raise CorrelationNotFoundError()

        if error or not code:
            logger.error(
                f"Provider '{provider_request.provider_id}' returned error='{error}' "
                f"description='{error_description}' uri='{error_uri}'."
            )
            forwarded = error if error in FORWARDED_UPSTREAM_ERRORS else "server_error"
            raise RedirectableError(
                OAuthError(
                    status_code=400,
                    error=forwarded,
                    error_description="The identity provider did not authorize the request."
                ),
                pending.redirect_uri,
                pending.state
            )

        return await self._issue_code(
            pending,
            provider_id=provider_request.provider_id,
            upstream_code=code,
            upstream_pkce_verifier=provider_request.upstream_pkce_verifier,
        )

    # --- LocalLogin ---

    async def begin_local_login(
        self,
        kind: str,
        request_id: Optional[str] = None,
        params: Optional[AuthorizationParams] = None
    ) -> LocalLoginContext:
        """
        Resolve the request a local login page answers, either from a stored
        request id or from carried authorization parameters.
        """
        if request_id:
            pending = await self.store.get(_key(PENDING_NAMESPACE, request_id), PendingAuthorizationRequest)
            if pending is None:
                logger.warning(f"Local login for unknown request '{_short(request_id)}'.")
                raise CorrelationNotFoundError()
            application = self.registry.get_application(pending.application_id)
            if application is None:
                raise ServerError("The application of this request is no longer configured.")
            stored = True
        elif params is not None:
            application = self._validate_authorization_params(params)
            pending = self._new_pending_request(application, params)
            stored = False
        else:
            raise InvalidRequestError("Either request_id or the authorization parameters are required.")

        try:
            provider = self.registry.find_provider(application.id, kind)
            if not provider.provider_kind.is_local:
                raise ProviderNotFoundError()
        except ProviderNotFoundError as e:
            raise RedirectableError(e, pending.redirect_uri, pending.state) from e

        adapter = self._adapter_for(application.id, provider)
        return LocalLoginContext(
            request=pending,
            application=application,
            provider=provider,
            adapter=adapter,
            stored=stored,
        )

    async def complete_local_login(
        self,
        context: LocalLoginContext,
        email: Optional[str] = None,
        password: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> str:
        """
        Authenticate the user and issue a code.

        Raises:
            InvalidCredentialsError: Bad email/password or a user outside the provider
            CorrelationNotFoundError: The stored request was consumed meanwhile
        """
        adapter = context.adapter
        if isinstance(adapter, CredentialsProviderAdapter):
            if not email or not password:
                raise InvalidCredentialsError()
            # scrypt is CPU bound
            user = await run_in_threadpool(adapter.authenticate, email, password)
        else:
            if not user_id:
                raise InvalidCredentialsError()
            user = adapter.select_user(user_id)

        if context.stored:
            consumed = await self.store.take_once(
                _key(PENDING_NAMESPACE, context.request.id), PendingAuthorizationRequest
            )
            if consumed is None:
                logger.warning(f"Request '{_short(context.request.id)}' was completed concurrently.")
                raise CorrelationNotFoundError()

        logger.info(
            f"User '{user.id}' logged in with provider '{context.provider.id}' "
            f"for client '{context.application.client_id}'."
        )
        return await self._issue_code(context.request, provider_id=context.provider.id, user_id=user.id)

    # --- TokenExchange ---

    async def token_exchange(self, token_request: TokenRequest) -> TokenResponse:
        """
        Exchange an authorization code for an access token.

        The code is consumed before any check, so a failed attempt burns it.
        """
        if not token_request.grant_type:
            raise InvalidRequestError("grant_type is required.")
        if token_request.grant_type != "authorization_code":
            raise UnsupportedGrantTypeError(f"Grant type '{token_request.grant_type}' is not supported.")
        missing = [
            name for name in ("code", "code_verifier", "redirect_uri")
            if not getattr(token_request, name)
        ]
        if missing:
            raise InvalidRequestError(f"Missing parameter(s): {', '.join(missing)}.")

        issued = await self.store.take_once(_key(CODE_NAMESPACE, token_request.code), IssuedCode)
        if issued is None:
            logger.warning(f"Token request with unknown, expired or replayed code '{_short(token_request.code)}'.")
            raise CorrelationNotFoundError()
        request = issued.request

        application = self.registry.get_application(request.application_id)
        if application is None:
            raise InvalidClientError("The application of this code is no longer configured.")
        if token_request.client_id is not None and token_request.client_id != application.client_id:
            logger.warning(
                f"Client ID mismatch. Expected {application.client_id}, got {token_request.client_id}."
            )
            raise InvalidClientError("Client ID mismatch.")
        self.registry.validate_client_secret(application, token_request.client_secret)

        if token_request.redirect_uri != request.redirect_uri:
            logger.warning(f"Redirect URI mismatch on token request for client '{application.client_id}'.")
            raise RedirectUriMismatchError()

        if not verify_pkce(request.code_challenge_method, request.code_challenge, token_request.code_verifier):
            logger.warning(f"PKCE verification failed for client '{application.client_id}'.")
            raise PkceVerificationError()

        upstream_access_token = None
        if issued.is_federated:
            provider = self.registry.find_provider(application.id, issued.provider_id)
            adapter = self._adapter_for(application.id, provider)
            upstream = await adapter.exchange_code(issued.upstream_code, issued.upstream_pkce_verifier)
            upstream_access_token = upstream.access_token

        now = self.clock()
        expires_at = None
        if self.access_token_ttl_seconds:
            expires_at = now + timedelta(seconds=self.access_token_ttl_seconds)
        encrypted = upstream_access_token is not None and self.encryptor is not None
        access = AccessTokenData(
            access_token=generate_opaque_token(ACCESS_TOKEN_LENGTH),
            application_id=application.id,
            provider_id=issued.provider_id,
            user_id=issued.user_id,
            scope=request.scope,
            upstream_access_token=(
                self.encryptor.encrypt(upstream_access_token) if encrypted else upstream_access_token
            ),
            upstream_token_encrypted=encrypted,
            created_at=now,
            expires_at=expires_at,
        )
        await self.store.put(_key(TOKEN_NAMESPACE, access.access_token), access)
        logger.info(
            f"Access token issued for client '{application.client_id}' through provider '{issued.provider_id}'."
        )
        return TokenResponse(
            access_token=access.access_token,
            token_type="bearer",
            expires_in=self.access_token_ttl_seconds or None,
            scope=request.scope,
        )

    # --- UserInfo ---

    @staticmethod
    def parse_bearer(authorization_header: Optional[str]) -> str:
        if authorization_header:
            parts = authorization_header.split()
            if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
                return parts[1]
        raise UnauthorizedTokenError("Missing or malformed bearer token.")

    async def user_info(self, authorization_header: Optional[str]) -> UserProfile:
        """Resolve a bearer token to the local user or the live upstream profile."""
        token = self.parse_bearer(authorization_header)
        access = await self.store.get(_key(TOKEN_NAMESPACE, token), AccessTokenData)
        if access is None:
            logger.warning(f"User info requested with unknown or expired token '{_short(token)}'.")
            raise UnauthorizedTokenError()

        if access.upstream_access_token is not None:
            upstream_token = access.upstream_access_token
            if access.upstream_token_encrypted:
                upstream_token = self.encryptor.decrypt(upstream_token) if self.encryptor else None
                if upstream_token is None:
                    raise ServerError("The upstream token of this session cannot be decrypted.")
            try:
                provider = self.registry.find_provider(access.application_id, access.provider_id)
            except ProviderNotFoundError as e:
                raise ServerError("The provider of this token is no longer configured.") from e
            adapter = self._adapter_for(access.application_id, provider)
            if not isinstance(adapter, FederatedProviderAdapter):
                raise ServerError("The provider of this token is no longer federated.")
            return await adapter.fetch_user(upstream_token)

        user = self.registry.find_user(access.application_id, access.user_id) if access.user_id else None
        if user is None:
            logger.error(f"Token '{_short(token)}' references user '{access.user_id}' which no longer exists.")
            raise ServerError("The user bound to this token no longer exists.")
        return user.to_profile()

    # --- Status ---

    async def status(self) -> None:
        """Raises StorageError when the correlation backend is unreachable."""
        await self.store.ping()
