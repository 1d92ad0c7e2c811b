"""End-to-end tests for /authorize, /callback and the resource metadata."""
from urllib.parse import parse_qs, urlparse

import pytest

from oauth.pkce import compute_challenge


def _redirect_params(response):
    assert response.status_code == 302
    location = response.headers["location"]
    return location, {key: values[0] for key, values in parse_qs(urlparse(location).query).items()}


class TestAuthorize:
    def test_redirects_with_server_issued_challenge(self, client, app, config):
        response = client.get("/authorize?state=abc123", follow_redirects=False)
        location, params = _redirect_params(response)

        assert location.startswith(config.authorize_url)
        assert params["state"] == "abc123"
        assert params["client_id"] == "test-client"
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "http://testserver/callback"
        assert params["code_challenge_method"] == "S256"
        assert params["scope"] == "openid profile email"

        verifier = app.state.pkce_store.redeem("abc123")
        assert verifier is not None
        assert compute_challenge(verifier) == params["code_challenge"]
        assert app.state.pkce_store.redeem("abc123") is None

    def test_generates_state_when_absent(self, client, app):
        _, params = _redirect_params(client.get("/authorize", follow_redirects=False))
        assert params["state"]
        assert app.state.pkce_store.redeem(params["state"]) is not None

    def test_caller_supplied_challenge_passed_through(self, client, app):
        response = client.get(
            "/authorize?state=s1&code_challenge=caller-challenge&code_challenge_method=S256&scope=openid",
            follow_redirects=False,
        )
        _, params = _redirect_params(response)
        assert params["code_challenge"] == "caller-challenge"
        assert params["scope"] == "openid"
        assert app.state.pkce_store.redeem("s1") is None

    def test_plain_method_rejected(self, client):
        response = client.get("/authorize?code_challenge=x&code_challenge_method=plain", follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestCallback:
    def test_successful_exchange_creates_one_record(self, client, app, authority):
        client.get("/authorize?state=abc123", follow_redirects=False)

        response = client.get("/callback?code=XYZ&state=abc123")
        assert response.status_code == 200
        assert "Authentication Successful" in response.text
        assert len(app.state.access_tokens) == 1

        form = authority.token_forms[0]
        assert form["code"] == "XYZ"
        assert form["grant_type"] == "authorization_code"
        assert form["code_verifier"]
        assert "client_secret" not in form

        # Same callback again: verifier already redeemed
        replay = client.get("/callback?code=XYZ&state=abc123")
        assert replay.status_code == 400
        assert "restart the login flow" in replay.text
        assert len(app.state.access_tokens) == 1
        assert authority.calls["token"] == 1

    def test_success_page_shows_record_id(self, client, app):
        client.get("/authorize?state=s2", follow_redirects=False)
        response = client.get("/callback?code=XYZ&state=s2")
        (record_id,) = [key for key in app.state.access_tokens._entries]
        assert record_id in response.text
        assert app.state.access_tokens.lookup(record_id).access_token == "at-123"

    def test_caller_supplied_verifier(self, client, authority):
        response = client.get("/callback?code=XYZ&state=external&code_verifier=caller-verifier")
        assert response.status_code == 200
        assert authority.token_forms[0]["code_verifier"] == "caller-verifier"

    def test_authority_error_rendered_without_exchange(self, client, authority):
        response = client.get("/callback?error=access_denied&error_description=User+said+<no>&state=s")
        assert response.status_code == 400
        assert "access_denied" in response.text
        assert "User said &lt;no&gt;" in response.text
        assert authority.calls["token"] == 0

    def test_missing_state_rejected(self, client, authority):
        response = client.get("/callback?code=XYZ")
        assert response.status_code == 400
        assert "Missing state" in response.text
        assert authority.calls["token"] == 0

    def test_missing_code_rejected(self, client):
        response = client.get("/callback?state=abc")
        assert response.status_code == 400
        assert "Missing authorization code" in response.text

    def test_never_issued_state(self, client, authority):
        response = client.get("/callback?code=XYZ&state=never-issued")
        assert response.status_code == 400
        assert "restart the login flow" in response.text
        assert authority.calls["token"] == 0

    def test_exchange_rejected_by_authority(self, client, app, authority):
        authority.token_response = (400, {"error": "invalid_grant", "error_description": "Code expired"})
        client.get("/authorize?state=s3", follow_redirects=False)
        response = client.get("/callback?code=XYZ&state=s3")
        assert response.status_code == 400
        assert "invalid_grant" in response.text
        assert len(app.state.access_tokens) == 0

    @pytest.mark.parametrize("body", [
        "<html>Service temporarily unavailable</html>",
        ["at-123"],
        {"access_token": "at-123", "expires_in": "soon"},
        {"access_token": 123},
    ])
    def test_unusable_token_response_rendered_as_error(self, client, app, authority, body):
        authority.token_response = (200, body)
        client.get("/authorize?state=s5", follow_redirects=False)
        response = client.get("/callback?code=XYZ&state=s5")
        assert response.status_code == 400
        assert "text/html" in response.headers["content-type"]
        assert "invalid_response" in response.text
        assert len(app.state.access_tokens) == 0

    def test_exchange_upstream_failure(self, client, app, authority):
        authority.timeouts.add("token")
        client.get("/authorize?state=s4", follow_redirects=False)
        response = client.get("/callback?code=XYZ&state=s4")
        assert response.status_code == 502
        assert len(app.state.access_tokens) == 0


class TestMetadata:
    def test_protected_resource_metadata(self, client, config):
        data = client.get("/.well-known/oauth-protected-resource").json()
        assert data["resource"] == "http://testserver"
        assert data["authorization_servers"] == [config.issuer]
        assert data["bearer_methods_supported"] == ["header"]
        assert data["scopes_supported"] == ["openid", "profile", "email"]

    def test_path_suffixed_metadata(self, client):
        assert client.get("/.well-known/oauth-protected-resource/mcp").status_code == 200
