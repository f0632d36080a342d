# tekitoi/oauth/pages.py
from html import escape
from typing import List, Optional
from urllib.parse import urlencode

from ..registry.models import User
from .state_machine import AuthorizationPrompt, LocalLoginContext


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head>"
        f"<body><main><h1>{escape(title)}</h1>{body}</main></body></html>"
    )


def login_query(context: LocalLoginContext) -> str:
    """Query string that lets a login page be submitted for the same request."""
    if context.stored:
        return urlencode({"request_id": context.request.id})
    request = context.request
    params = {
        "client_id": request.client_id,
        "redirect_uri": request.redirect_uri,
        "state": request.state,
        "code_challenge": request.code_challenge,
        "code_challenge_method": request.code_challenge_method,
    }
    if request.scope:
        params["scope"] = request.scope
    return urlencode(params)


def render_provider_selection(app_name: str, prompt: AuthorizationPrompt) -> str:
    application_name = prompt.application.label or prompt.application.client_id
    if not prompt.providers:
        return _layout(app_name, "<p>No identity provider is configured for this application.</p>")
    items = "".join(
        f"<li><a href=\"/api/authorize/{escape(prompt.request.id)}/{escape(provider.id)}\">"
        f"Sign in with {escape(provider.display_name)}</a></li>"
        for provider in prompt.providers
    )
    return _layout(app_name, f"<p>Sign in to {escape(application_name)}</p><ul>{items}</ul>")


def render_credentials_login(app_name: str, context: LocalLoginContext, error: Optional[str] = None) -> str:
    action = f"/authorize/{escape(context.provider.kind)}/login?{escape(login_query(context))}"
    error_html = f"<p role=\"alert\">{escape(error)}</p>" if error else ""
    form = (
        f"<form method=\"post\" action=\"{action}\">"
        "<label for=\"email\">Email</label>"
        "<input type=\"email\" id=\"email\" name=\"email\" placeholder=\"Fill in your email\" required>"
        "<label for=\"password\">Password</label>"
        "<input type=\"password\" id=\"password\" name=\"password\" placeholder=\"Fill in your password\" required>"
        "<button type=\"submit\">Sign in</button>"
        "</form>"
    )
    return _layout(app_name, error_html + form)


def render_user_selection(
    app_name: str, context: LocalLoginContext, users: List[User], error: Optional[str] = None
) -> str:
    base = f"/authorize/{context.provider.kind}/login?{login_query(context)}"
    error_html = f"<p role=\"alert\">{escape(error)}</p>" if error else ""
    items = "".join(
        f"<li><a href=\"{escape(base + '&' + urlencode({'user': user.id}))}\">"
        f"{escape(user.login)}{' (' + escape(user.email) + ')' if user.email else ''}</a></li>"
        for user in users
    )
    return _layout(app_name, f"{error_html}<p>Choose an account</p><ul>{items}</ul>")


def render_local_login(
    app_name: str, context: LocalLoginContext, error: Optional[str] = None
) -> str:
    if context.provider.kind == "credentials":
        return render_credentials_login(app_name, context, error)
    return render_user_selection(app_name, context, context.adapter.list_users(), error)
