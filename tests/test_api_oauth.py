"""Integration tests for api/routes/v1/oauth.py -- the HTTP token flow.

Requests are signed with authlib's ClientAuth (HMAC-SHA1, Authorization
header), so these tests run the production signature verifier.
"""

import re
from urllib.parse import urlencode

from authlib.oauth1 import ClientAuth

from auth.tokens import credential_proof, password_hash
from conftest import CONSUMER_KEY, CONSUMER_SECRET, USER_EMAIL, USER_PASSWORD

BASE = "http://testserver"


def _send(
    client, method, path, *, consumer=(CONSUMER_KEY, CONSUMER_SECRET), token=None, secret=None, verifier=None, form=None
):
    """Sign and send one request. Returns (response, signed_headers) so callers can replay it."""
    auth = ClientAuth(consumer[0], consumer[1], token=token, token_secret=secret, verifier=verifier)
    headers = {}
    body = ""
    if form is not None:
        body = urlencode(form)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    uri, headers, body = auth.prepare(method, BASE + path, headers, body)
    return client.request(method, uri, content=body, headers=headers), (uri, headers, body)


def _proof(rts, consumer_secret=CONSUMER_SECRET):
    return credential_proof(rts, consumer_secret, password_hash(USER_EMAIL, USER_PASSWORD))


def _request_token(client, consumer=(CONSUMER_KEY, CONSUMER_SECRET)):
    resp, _ = _send(client, "POST", "/oauth/request_token", consumer=consumer)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    return data["oauth_token"], data["oauth_token_secret"]


def _access_token(client):
    rt, rts = _request_token(client)
    resp, _ = _send(
        client, "POST", "/oauth/authorize", token=rt, secret=rts, form={"email": USER_EMAIL, "credential": _proof(rts)}
    )
    verifier = resp.json()["oauth_verifier"]
    resp, _ = _send(client, "POST", "/oauth/access_token", token=rt, secret=rts, verifier=verifier)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    return data["oauth_token"], data["oauth_token_secret"]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_request_token_issued(api_client):
    resp, _ = _send(api_client.client, "POST", "/oauth/request_token")
    assert resp.status_code == 200
    body = resp.json()
    assert body["oauth_callback_confirmed"] == "true"
    assert body["oauth_token"] and body["oauth_token_secret"]
    assert resp.headers["cache-control"] == "no-store"


def test_full_flow_reaches_protected_resource(api_client):
    client = api_client.client
    at, ats = _access_token(client)

    resp, _ = _send(client, "GET", "/api/v1/me", token=at, secret=ats)
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"user_id": api_client.user_id, "consumer_key": CONSUMER_KEY}


def test_exchanged_request_token_is_gone(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    resp, _ = _send(
        client, "POST", "/oauth/authorize", token=rt, secret=rts, form={"email": USER_EMAIL, "credential": _proof(rts)}
    )
    verifier = resp.json()["oauth_verifier"]
    first, _ = _send(client, "POST", "/oauth/access_token", token=rt, secret=rts, verifier=verifier)
    second, _ = _send(client, "POST", "/oauth/access_token", token=rt, secret=rts, verifier=verifier)
    assert first.status_code == 200
    assert second.status_code == 401
    assert second.json()["error"]["code"] == "token_rejected"


def test_user_authorized_consumer_needs_verify_step(api_client):
    client = api_client.client
    consumer = ("C2", "S2")
    rt, rts = _request_token(client, consumer=consumer)

    resp, _ = _send(
        client,
        "POST",
        "/oauth/authorize",
        consumer=consumer,
        token=rt,
        secret=rts,
        form={"email": USER_EMAIL, "credential": _proof(rts, "S2")},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["verification_required"] is True
    assert resp.json()["oauth_verifier"] is None

    resp, _ = _send(client, "POST", "/oauth/verify", consumer=consumer, token=rt, secret=rts)
    assert resp.status_code == 200, resp.text
    verifier = resp.json()["oauth_verifier"]

    resp, _ = _send(client, "POST", "/oauth/access_token", consumer=consumer, token=rt, secret=rts, verifier=verifier)
    assert resp.status_code == 200, resp.text


def test_verify_before_login_is_rejected(api_client):
    client = api_client.client
    rt, rts = _request_token(client, consumer=("C2", "S2"))
    resp, _ = _send(client, "POST", "/oauth/verify", consumer=("C2", "S2"), token=rt, secret=rts)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_rejected"


def test_invalidate_logs_out(api_client):
    client = api_client.client
    at, ats = _access_token(client)

    resp, _ = _send(client, "POST", "/oauth/invalidate", token=at, secret=ats)
    assert resp.status_code == 200
    resp, _ = _send(client, "POST", "/oauth/invalidate", token=at, secret=ats)
    assert resp.status_code == 200

    resp, _ = _send(client, "GET", "/api/v1/me", token=at, secret=ats)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_rejected"


# ---------------------------------------------------------------------------
# Protocol failures
# ---------------------------------------------------------------------------


def test_replayed_request_is_refused(api_client):
    client = api_client.client
    at, ats = _access_token(client)
    first, (uri, headers, body) = _send(client, "GET", "/api/v1/me", token=at, secret=ats)
    assert first.status_code == 200

    replay = client.request("GET", uri, content=body, headers=headers)
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "nonce_used"
    assert 'oauth_problem="nonce_used"' in replay.headers["www-authenticate"]
    assert replay.headers["www-authenticate"].startswith('OAuth realm="handshake"')


def test_unknown_consumer(api_client):
    resp, _ = _send(api_client.client, "POST", "/oauth/request_token", consumer=("nobody", "x"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "consumer_key_unknown"


def test_wrong_consumer_secret(api_client):
    resp, _ = _send(api_client.client, "POST", "/oauth/request_token", consumer=(CONSUMER_KEY, "wrong"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "signature_invalid"


def test_unsigned_request_is_rejected(api_client):
    resp = api_client.client.get("/api/v1/me")
    assert resp.status_code == 401
    assert "WWW-Authenticate" in resp.headers


def test_bad_credential_is_rejected(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    resp, _ = _send(
        client, "POST", "/oauth/authorize", token=rt, secret=rts, form={"email": USER_EMAIL, "credential": "0" * 40}
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "bad_credentials"


def test_unknown_email_looks_like_bad_credential(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    resp, _ = _send(
        client,
        "POST",
        "/oauth/authorize",
        token=rt,
        secret=rts,
        form={"email": "x@example.com", "credential": _proof(rts)},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "bad_credentials"


def test_authorize_requires_form_fields(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    resp, _ = _send(client, "POST", "/oauth/authorize", token=rt, secret=rts, form={"email": USER_EMAIL})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_request"


def test_wrong_verifier(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    form = {"email": USER_EMAIL, "credential": _proof(rts)}
    _send(client, "POST", "/oauth/authorize", token=rt, secret=rts, form=form)
    resp, _ = _send(client, "POST", "/oauth/access_token", token=rt, secret=rts, verifier="deadbeefdeadbeef")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "verifier_invalid"


def test_tampered_form_breaks_signature(api_client):
    client = api_client.client
    rt, rts = _request_token(client)
    _, (uri, headers, body) = _send(
        client, "POST", "/oauth/authorize", token=rt, secret=rts, form={"email": USER_EMAIL, "credential": "0" * 40}
    )
    # Same headers (including a fresh-looking nonce) with a different body.
    headers = dict(headers)
    headers["Authorization"] = headers["Authorization"].replace('oauth_nonce="', 'oauth_nonce="x')
    tampered = urlencode({"email": USER_EMAIL, "credential": _proof(rts)})
    headers.pop("Content-Length", None)
    resp = client.request("POST", uri, content=tampered, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "signature_invalid"


def test_verify_is_limited_to_token_owner(api_client):
    client = api_client.client
    rt, rts = _request_token(client, consumer=("C2", "S2"))
    _send(
        client,
        "POST",
        "/oauth/authorize",
        consumer=("C2", "S2"),
        token=rt,
        secret=rts,
        form={"email": USER_EMAIL, "credential": _proof(rts, "S2")},
    )
    resp, _ = _send(client, "POST", "/oauth/verify", token=rt, secret=rts)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_rejected"


# ---------------------------------------------------------------------------
# Hostile input
# ---------------------------------------------------------------------------


def test_non_ascii_signature_is_rejected(api_client):
    auth = ClientAuth(CONSUMER_KEY, CONSUMER_SECRET)
    uri, headers, body = auth.prepare("POST", BASE + "/oauth/request_token", {}, "")
    headers = dict(headers)
    headers["Authorization"] = re.sub(r'oauth_signature="[^"]*"', 'oauth_signature="%C3%A9"', headers["Authorization"])
    resp = api_client.client.request("POST", uri, content=body, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "signature_invalid"


def test_out_of_range_timestamp_is_rejected(api_client):
    auth = ClientAuth(CONSUMER_KEY, CONSUMER_SECRET)
    uri, headers, body = auth.prepare("POST", BASE + "/oauth/request_token", {}, "")
    headers = dict(headers)
    huge = "1" + "0" * 400
    headers["Authorization"] = re.sub(r'oauth_timestamp="\d+"', f'oauth_timestamp="{huge}"', headers["Authorization"])
    resp = api_client.client.request("POST", uri, content=body, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "timestamp_refused"


def test_undecodable_body_is_a_bad_request(api_client):
    resp = api_client.client.post(
        "/oauth/request_token",
        content=b"\xff\xfe",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_request"
