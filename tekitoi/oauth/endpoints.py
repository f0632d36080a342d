# tekitoi/oauth/endpoints.py
from fastapi import APIRouter, Depends, Form, Header, Path, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from typing import Annotated, Any, Dict, Optional
import json
import logging
from urllib.parse import urlencode
from pydantic import ValidationError as PydanticValidationError

from ..dependencies import get_settings, get_state_machine
from ..settings import Settings
from .errors import InvalidCredentialsError, InvalidRequestError
from .models import AuthorizationParams, TokenRequest, UserProfile
from .pages import render_local_login, render_provider_selection
from .state_machine import AuthorizationStateMachine

logger = logging.getLogger(__name__)
oauth_router = APIRouter()
api_router = APIRouter(prefix="/api")

TEMPORARY_REDIRECT = 307


def _validation_message(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{err['loc'][0] if err['loc'] else 'param'}: {err['msg']}"
        for err in exc.errors()
    )


def _authorization_params(
    client_id: Optional[str],
    redirect_uri: Optional[str],
    state: Optional[str],
    code_challenge: Optional[str],
    code_challenge_method: Optional[str],
    scope: Optional[str],
) -> AuthorizationParams:
    params_dict = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
        "scope": scope,
    }
    params_dict = {k: v for k, v in params_dict.items() if v is not None}
    try:
        return AuthorizationParams(**params_dict)
    except PydanticValidationError as e:
        logger.warning(f"Invalid authorization request: {e.errors()}")
        raise InvalidRequestError(f"Invalid authorization request parameters: {_validation_message(e)}")


# --- Relying application facing pages ---

@oauth_router.get("/authorize", name="authorize", response_class=HTMLResponse)
async def authorize(
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    settings: Annotated[Settings, Depends(get_settings)],
    client_id: Annotated[Optional[str], Query()] = None,
    redirect_uri: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    code_challenge: Annotated[Optional[str], Query()] = None,
    code_challenge_method: Annotated[Optional[str], Query()] = None,
    scope: Annotated[Optional[str], Query()] = None,
):
    """Provider selection page, or the login page when a single local provider is configured."""
    params = _authorization_params(client_id, redirect_uri, state, code_challenge, code_challenge_method, scope)
    prompt = await machine.authorize(params)

    single_provider = prompt.single_local_provider
    if single_provider is not None:
        context = await machine.begin_local_login(single_provider.kind, request_id=prompt.request.id)
        return HTMLResponse(render_local_login(settings.app_name, context))
    return HTMLResponse(render_provider_selection(settings.app_name, prompt))


async def _local_login_context(
    machine: AuthorizationStateMachine,
    kind: str,
    request_id: Optional[str],
    client_id: Optional[str],
    redirect_uri: Optional[str],
    state: Optional[str],
    code_challenge: Optional[str],
    code_challenge_method: Optional[str],
    scope: Optional[str],
):
    params = None
    if not request_id:
        params = _authorization_params(client_id, redirect_uri, state, code_challenge, code_challenge_method, scope)
    return await machine.begin_local_login(kind, request_id=request_id, params=params)


@oauth_router.get("/authorize/{kind}/login", name="local_login_page", response_class=HTMLResponse)
async def local_login_page(
    kind: Annotated[str, Path()],
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    settings: Annotated[Settings, Depends(get_settings)],
    request_id: Annotated[Optional[str], Query()] = None,
    user: Annotated[Optional[str], Query()] = None,
    client_id: Annotated[Optional[str], Query()] = None,
    redirect_uri: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    code_challenge: Annotated[Optional[str], Query()] = None,
    code_challenge_method: Annotated[Optional[str], Query()] = None,
    scope: Annotated[Optional[str], Query()] = None,
):
    """
    Render the login page of a local provider. For profile and user lists a
    selected ``user`` completes the login right away.
    """
    context = await _local_login_context(
        machine, kind, request_id, client_id, redirect_uri, state, code_challenge, code_challenge_method, scope
    )
    if user is not None and kind != "credentials":
        try:
            redirect_target = await machine.complete_local_login(context, user_id=user)
        except InvalidCredentialsError as e:
            return HTMLResponse(
                render_local_login(settings.app_name, context, error=e.error_description),
                status_code=e.status_code
            )
        return RedirectResponse(url=redirect_target, status_code=TEMPORARY_REDIRECT)
    return HTMLResponse(render_local_login(settings.app_name, context))


@oauth_router.post("/authorize/{kind}/login", name="local_login_submit", response_class=RedirectResponse)
async def local_login_submit(
    kind: Annotated[str, Path()],
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    settings: Annotated[Settings, Depends(get_settings)],
    request_id: Annotated[Optional[str], Query()] = None,
    client_id: Annotated[Optional[str], Query()] = None,
    redirect_uri: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    code_challenge: Annotated[Optional[str], Query()] = None,
    code_challenge_method: Annotated[Optional[str], Query()] = None,
    scope: Annotated[Optional[str], Query()] = None,
    email: Annotated[Optional[str], Form()] = None,
    password: Annotated[Optional[str], Form()] = None,
    user: Annotated[Optional[str], Form()] = None,
):
    """Login form submission. A failed login re-renders the form with a 401."""
    context = await _local_login_context(
        machine, kind, request_id, client_id, redirect_uri, state, code_challenge, code_challenge_method, scope
    )
    try:
        redirect_target = await machine.complete_local_login(
            context, email=email, password=password, user_id=user
        )
    except InvalidCredentialsError as e:
        return HTMLResponse(
            render_local_login(settings.app_name, context, error=e.error_description),
            status_code=e.status_code
        )
    return RedirectResponse(url=redirect_target, status_code=TEMPORARY_REDIRECT)


# --- API ---

@api_router.get("/authorize/{request_id}/{provider_id}", name="provider_redirect", response_class=RedirectResponse)
async def provider_redirect(
    request_id: Annotated[str, Path()],
    provider_id: Annotated[str, Path()],
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
):
    """Send the browser to the chosen provider."""
    target = await machine.provider_redirect(request_id, provider_id)
    return RedirectResponse(url=target, status_code=TEMPORARY_REDIRECT)


@api_router.get("/redirect", name="provider_callback", response_class=RedirectResponse)
async def provider_callback(
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    state: Annotated[Optional[str], Query()] = None,
    code: Annotated[Optional[str], Query()] = None,
    error: Annotated[Optional[str], Query()] = None,
    error_description: Annotated[Optional[str], Query()] = None,
    error_uri: Annotated[Optional[str], Query()] = None,
):
    """Callback hit by upstream providers once the user has authenticated there."""
    logger.info(f"Provider callback received. Code: {'SET' if code else 'NOT_SET'}, Error: {error}")
    target = await machine.provider_callback(
        state, code=code, error=error, error_description=error_description, error_uri=error_uri
    )
    return RedirectResponse(url=target, status_code=TEMPORARY_REDIRECT)


async def _read_token_request(request: Request) -> TokenRequest:
    """Accept both JSON and urlencoded bodies, switching on Content-Type."""
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("application/json"):
        try:
            body: Any = await request.json()
        except json.JSONDecodeError as e:
            raise InvalidRequestError(f"Malformed JSON body: {e.msg}")
        if not isinstance(body, dict):
            raise InvalidRequestError("The JSON body must be an object.")
    else:
        form = await request.form()
        body = {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        return TokenRequest.model_validate(body)
    except PydanticValidationError as e:
        logger.warning(f"Token request parameter validation failed: {e.errors()}")
        raise InvalidRequestError(f"Invalid token request parameters: {_validation_message(e)}")


def _wants_form_encoding(accept: Optional[str]) -> bool:
    return bool(accept) and accept.split(",")[0].strip().lower().startswith("application/x-www-form-urlencoded")


@api_router.post("/access-token", name="access_token")
async def access_token(
    request: Request,
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    accept: Annotated[Optional[str], Header()] = None,
):
    """Token endpoint (RFC 6749 - Section 4.1.3)."""
    token_request = await _read_token_request(request)
    logger.info(f"Token endpoint called. Grant type: '{token_request.grant_type}' Client ID: {token_request.client_id}")
    token_response = await machine.token_exchange(token_request)

    payload: Dict[str, Any] = token_response.model_dump(exclude_none=True)
    headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
    if _wants_form_encoding(accept):
        return Response(
            content=urlencode(payload),
            media_type="application/x-www-form-urlencoded",
            headers=headers
        )
    return JSONResponse(content=payload, headers=headers)


@api_router.get("/user-info", name="user_info", response_model=UserProfile, response_model_exclude_none=True)
@api_router.get("/user", name="user", response_model=UserProfile, response_model_exclude_none=True)
async def user_info(
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
    authorization: Annotated[Optional[str], Header()] = None,
):
    """Profile of the user bound to the bearer token."""
    return await machine.user_info(authorization)


@api_router.get("/status", name="status", status_code=204)
async def status(
    machine: Annotated[AuthorizationStateMachine, Depends(get_state_machine)],
):
    """Liveness probe that also checks the storage backend."""
    await machine.status()
    return Response(status_code=204)
