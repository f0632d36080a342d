# tekitoi/dependencies.py
from fastapi import Request

from .oauth.state_machine import AuthorizationStateMachine
from .settings import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_state_machine(request: Request) -> AuthorizationStateMachine:
    """Build the state machine over the collaborators created by create_app."""
    state = request.app.state
    settings: Settings = state.settings
    return AuthorizationStateMachine(
        registry=state.registry,
        store=state.store,
        http_client=state.http_client,
        upstream_redirect_url=settings.upstream_redirect_url(),
        authorization_ttl_seconds=settings.authorization_ttl_seconds,
        access_token_ttl_seconds=settings.access_token_ttl_seconds,
        encryptor=state.encryptor,
        clock=state.clock,
    )
