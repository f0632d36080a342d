# tests/test_authorize_flow.py
from urllib.parse import parse_qs

from tests.oauth_helpers import (
    CODE_VERIFIER,
    REDIRECT_URI,
    STATE,
    authorize_params,
    credentials_dataset,
    query_of,
    token_form,
)


def _login_with_credentials(client, email="alice@example.com", password="secret123", **params):
    return client.post(
        "/authorize/credentials/login",
        params=authorize_params(**params),
        data={"email": email, "password": password},
    )


def _issue_code(client) -> str:
    response = _login_with_credentials(client)
    assert response.status_code == 307
    return query_of(response.headers["location"])["code"]


def test_credentials_end_to_end(client):
    page = client.get("/authorize", params=authorize_params())
    assert page.status_code == 200
    assert "password" in page.text

    response = _login_with_credentials(client)
    assert response.status_code == 307
    location = response.headers["location"]
    assert location.startswith(REDIRECT_URI + "?")
    query = query_of(location)
    assert query["state"] == STATE
    code = query["code"]
    assert len(code) >= 24

    token_response = client.post("/api/access-token", data=token_form(code))
    assert token_response.status_code == 200
    assert token_response.headers["cache-control"] == "no-store"
    payload = token_response.json()
    assert payload["token_type"] == "bearer"
    access_token = payload["access_token"]
    assert len(access_token) >= 24

    user_response = client.get("/api/user-info", headers={"Authorization": f"Bearer {access_token}"})
    assert user_response.status_code == 200
    profile = user_response.json()
    assert profile["login"] == "alice"
    assert profile["email"] == "alice@example.com"

    alias_response = client.get("/api/user", headers={"Authorization": f"Bearer {access_token}"})
    assert alias_response.json() == profile

    replay = client.post("/api/access-token", data=token_form(code))
    assert 400 <= replay.status_code < 500
    assert replay.json()["error"] == "invalid_grant"


def test_login_through_stored_request(client):
    page = client.get("/authorize", params=authorize_params())
    assert "request_id=" in page.text
    request_id = page.text.split("request_id=", 1)[1].split('"', 1)[0]

    response = client.post(
        "/authorize/credentials/login",
        params={"request_id": request_id},
        data={"email": "alice@example.com", "password": "secret123"},
    )
    assert response.status_code == 307
    assert query_of(response.headers["location"])["state"] == STATE

    # the pending request is consumed with the first successful login
    second = client.post(
        "/authorize/credentials/login",
        params={"request_id": request_id},
        data={"email": "alice@example.com", "password": "secret123"},
    )
    assert second.status_code == 400


def test_token_endpoint_accepts_json(client):
    code = _issue_code(client)
    response = client.post("/api/access-token", json=token_form(code))
    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"


def test_token_endpoint_urlencoded_when_requested(client):
    code = _issue_code(client)
    response = client.post(
        "/api/access-token",
        data=token_form(code),
        headers={"Accept": "application/x-www-form-urlencoded"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-www-form-urlencoded")
    body = parse_qs(response.text)
    assert body["token_type"] == ["bearer"]


def test_wrong_password_rerenders_login(client):
    response = _login_with_credentials(client, password="wrong")
    assert response.status_code == 401
    assert "Invalid credentials" in response.text


def test_unknown_email_rerenders_login(client):
    response = _login_with_credentials(client, email="mallory@example.com")
    assert response.status_code == 401


def test_unknown_client_is_rejected_without_redirect(client):
    response = client.get("/authorize", params=authorize_params(client_id="nope"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_client"
    assert "location" not in response.headers


def test_redirect_uri_mismatch_is_rejected_without_redirect(client):
    response = client.get("/authorize", params=authorize_params(redirect_uri="https://evil.example/cb"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"
    assert "location" not in response.headers


def test_redirect_uri_trailing_slash_is_a_mismatch(client):
    response = client.get("/authorize", params=authorize_params(redirect_uri=REDIRECT_URI + "/"))
    assert response.status_code == 400


def test_unsupported_challenge_method_redirects_with_error(client):
    response = client.get("/authorize", params=authorize_params(code_challenge_method="S512"))
    assert response.status_code == 307
    query = query_of(response.headers["location"])
    assert response.headers["location"].startswith(REDIRECT_URI)
    assert query["error"] == "invalid_request"
    assert query["state"] == STATE


def test_missing_state_is_invalid_request(client):
    params = authorize_params()
    del params["state"]
    response = client.get("/authorize", params=params)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_pkce_mismatch_is_rejected_and_burns_code(client):
    code = _issue_code(client)
    response = client.post("/api/access-token", data=token_form(code, code_verifier="other-verifier"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"

    retry = client.post("/api/access-token", data=token_form(code))
    assert retry.status_code == 400


def test_token_redirect_uri_must_match(client):
    code = _issue_code(client)
    response = client.post("/api/access-token", data=token_form(code, redirect_uri="https://relying.example/other"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_token_client_id_must_match(client):
    code = _issue_code(client)
    response = client.post("/api/access-token", data=token_form(code, client_id="someone-else"))
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"


def test_unsupported_grant_type(client):
    response = client.post("/api/access-token", data=token_form("whatever", grant_type="password"))
    assert response.status_code == 400
    assert response.json()["error"] == "unsupported_grant_type"


def test_missing_token_parameters(client):
    response = client.post("/api/access-token", data={"grant_type": "authorization_code"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_confidential_client_requires_secret(build_client):
    client = build_client(credentials_dataset(client_secrets=["s3cr3t"]))

    code = _issue_code(client)
    response = client.post("/api/access-token", data=token_form(code))
    assert response.status_code == 401

    code = _issue_code(client)
    response = client.post("/api/access-token", data=token_form(code, client_secret="s3cr3t"))
    assert response.status_code == 200


def test_plain_challenge_method(client):
    response = _login_with_credentials(client, code_challenge="plain-verifier-value", code_challenge_method="plain")
    code = query_of(response.headers["location"])["code"]
    token = client.post("/api/access-token", data=token_form(code, code_verifier="plain-verifier-value"))
    assert token.status_code == 200


def test_non_ascii_challenge_is_rejected_at_authorize(client):
    response = client.get(
        "/authorize",
        params=authorize_params(code_challenge="vérifier-ünïcode", code_challenge_method="plain"),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_non_ascii_verifier_is_rejected_without_burning_code(client):
    response = _login_with_credentials(client, code_challenge="plain-verifier-value", code_challenge_method="plain")
    code = query_of(response.headers["location"])["code"]

    rejected = client.post("/api/access-token", data=token_form(code, code_verifier="vérifier-ünïcode"))
    assert rejected.status_code == 400
    assert rejected.json()["error"] == "invalid_request"

    token = client.post("/api/access-token", data=token_form(code, code_verifier="plain-verifier-value"))
    assert token.status_code == 200


def test_authorization_code_expires(client, clock):
    code = _issue_code(client)
    clock.advance(601)
    response = client.post("/api/access-token", data=token_form(code))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_access_token_expires(client, clock):
    code = _issue_code(client)
    access_token = client.post("/api/access-token", data=token_form(code)).json()["access_token"]
    clock.advance(86401)
    response = client.get("/api/user-info", headers={"Authorization": f"Bearer {access_token}"})
    assert response.status_code == 401
    assert response.headers["www-authenticate"].startswith("Bearer")


def test_user_info_requires_bearer(client):
    assert client.get("/api/user-info").status_code == 401
    assert client.get("/api/user-info", headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.get("/api/user-info", headers={"Authorization": "Bearer unknown"}).status_code == 401


def test_provider_selection_lists_every_provider(build_client):
    client = build_client(credentials_dataset(extra_providers=[
        {"kind": "profiles", "users": [{"id": "bob-id", "login": "bob"}]},
    ]))
    page = client.get("/authorize", params=authorize_params())
    assert page.status_code == 200
    assert "/api/authorize/" in page.text
    assert "/credentials\"" in page.text
    assert "/profiles\"" in page.text


def test_profiles_provider_login(build_client):
    client = build_client(credentials_dataset(extra_providers=[
        {"kind": "profiles", "users": [{"id": "bob-id", "login": "bob", "email": "bob@example.com"}]},
    ]))
    page = client.get("/authorize", params=authorize_params())
    request_id = page.text.split("/api/authorize/", 1)[1].split("/", 1)[0]

    redirect = client.get(f"/api/authorize/{request_id}/profiles")
    assert redirect.status_code == 307
    login_page_url = redirect.headers["location"]
    assert login_page_url.startswith("/authorize/profiles/login?")

    login_page = client.get(login_page_url)
    assert login_page.status_code == 200
    assert "bob" in login_page.text

    selected = client.get(login_page_url, params={"user": "bob-id"})
    assert selected.status_code == 307
    code = query_of(selected.headers["location"])["code"]

    token = client.post("/api/access-token", data=token_form(code)).json()["access_token"]
    profile = client.get("/api/user-info", headers={"Authorization": f"Bearer {token}"}).json()
    assert profile["id"] == "bob-id"
    assert profile["provider"] == "profiles"


def test_user_list_rejects_foreign_user(build_client):
    client = build_client(credentials_dataset(extra_providers=[
        {"kind": "user-list", "users": [{"id": "carol-id", "login": "carol"}]},
    ]))
    response = client.get(
        "/authorize/user-list/login",
        params={**authorize_params(), "user": "alice-id"},
    )
    assert response.status_code == 401


def test_unknown_provider_redirects_with_error(client):
    page = client.get("/authorize", params=authorize_params())
    request_id = page.text.split("request_id=", 1)[1].split('"', 1)[0]
    response = client.get(f"/api/authorize/{request_id}/github")
    assert response.status_code == 307
    query = query_of(response.headers["location"])
    assert query["error"] == "invalid_request"
    assert query["state"] == STATE


def test_unknown_request_id(client):
    response = client.get("/api/authorize/does-not-exist/credentials")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_default_challenge_method_is_plain(client):
    params = authorize_params(code_challenge=CODE_VERIFIER)
    del params["code_challenge_method"]
    response = client.post(
        "/authorize/credentials/login",
        params=params,
        data={"email": "alice@example.com", "password": "secret123"},
    )
    code = query_of(response.headers["location"])["code"]
    token = client.post("/api/access-token", data=token_form(code))
    assert token.status_code == 200
