"""
auth/signature.py -- OAuth 1.0a request parsing and signature verification.

The session state machine only needs two things from a request: its protocol
parameters (consumer key, token, nonce, timestamp, verifier) and a yes/no
answer to "is the signature authentic for this secret pair". SignedCall holds
the former; a SignatureVerifier provides the latter.

OAuth1SignatureVerifier delegates the cryptography to authlib's RFC 5849
implementation (signature base string, HMAC-SHA1, RSA-SHA1, PLAINTEXT). The
secrets are handed to authlib through the client/credential objects its
OAuth1Request expects, built per call from our own dataclasses.

Transport: authlib refuses plain-http URIs unless AUTHLIB_INSECURE_TRANSPORT
is set. Deployments behind a TLS-terminating proxy should run uvicorn with
--proxy-headers so the request URL keeps its https scheme.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlsplit

from authlib.oauth1 import OAuth1Request
from authlib.oauth1.rfc5849.signature import (
    SIGNATURE_HMAC_SHA1,
    SIGNATURE_PLAINTEXT,
    SIGNATURE_RSA_SHA1,
    verify_hmac_sha1,
    verify_plaintext,
    verify_rsa_sha1,
)

from auth.models import Consumer

logger = logging.getLogger("handshake.signature")


@dataclass
class SignedCall:
    """Protocol parameters of one inbound call, plus the request they were signed over."""

    consumer_key: str | None = None
    token: str | None = None
    nonce: str | None = None
    timestamp: str | None = None
    verifier: str | None = None
    signature_method: str | None = None
    params: dict[str, str] = field(default_factory=dict)  # non-oauth query and form parameters
    request: Any = None


class SignatureVerifier(Protocol):
    def verify(self, call: SignedCall, consumer: Consumer, token_secret: str | None) -> bool:
        """True if call's signature is authentic for the consumer secret and token secret."""
        ...


# ---------------------------------------------------------------------------
# authlib adapter
# ---------------------------------------------------------------------------


class _ClientView:
    """ClientMixin-shaped view of a Consumer, as OAuth1Request.client expects."""

    def __init__(self, consumer: Consumer) -> None:
        self._consumer = consumer

    def get_client_secret(self) -> str:
        return self._consumer.consumer_secret

    def get_rsa_public_key(self) -> str | None:
        return self._consumer.rsa_public_key


class _CredentialView:
    """TokenCredentialMixin-shaped holder for the token secret of the current mode."""

    def __init__(self, token_secret: str) -> None:
        self._token_secret = token_secret

    def get_oauth_token_secret(self) -> str:
        return self._token_secret


_VERIFIERS = {
    SIGNATURE_HMAC_SHA1: verify_hmac_sha1,
    SIGNATURE_PLAINTEXT: verify_plaintext,
    SIGNATURE_RSA_SHA1: verify_rsa_sha1,
}


class OAuth1SignatureVerifier:
    """Verify RFC 5849 signatures on authlib OAuth1Request objects."""

    def verify(self, call: SignedCall, consumer: Consumer, token_secret: str | None) -> bool:
        request = call.request
        method = call.signature_method
        verify_fn = _VERIFIERS.get(method)
        if request is None or verify_fn is None or not request.signature:
            logger.info("Unsupported or missing signature (method=%r)", method)
            return False
        if method == SIGNATURE_RSA_SHA1 and not consumer.rsa_public_key:
            logger.info("Consumer %s has no RSA key registered", consumer.consumer_key)
            return False

        request.client = _ClientView(consumer)
        # Consumer-only calls sign with an empty token secret.
        request.credential = _CredentialView(token_secret or "")
        try:
            return bool(verify_fn(request))
        except (TypeError, ValueError) as exc:
            # Non-ASCII signatures break compare_digest; bad base64 raises binascii.Error.
            logger.info("Malformed %s signature from %s: %s", method, consumer.consumer_key, exc)
            return False


def signed_call_from_request(
    method: str,
    uri: str,
    body: str | bytes | None,
    headers: Mapping[str, str] | None,
) -> SignedCall:
    """Parse an HTTP request into a SignedCall.

    Raises authlib.oauth1.rfc5849.errors.OAuth1Error on malformed OAuth
    parameters (duplicates, insecure transport) and UnicodeDecodeError on a
    body that is not UTF-8; callers report both as a bad request rather than
    a protocol outcome.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    request = OAuth1Request(method, uri, body=body or None, headers=headers)
    params = request.oauth_params
    extra = dict(parse_qsl(urlsplit(uri).query, keep_blank_values=True))
    content_type = (headers or {}).get("content-type") or (headers or {}).get("Content-Type") or ""
    if body and content_type.startswith("application/x-www-form-urlencoded"):
        extra.update(parse_qsl(body, keep_blank_values=True))
    return SignedCall(
        consumer_key=params.get("oauth_consumer_key"),
        token=params.get("oauth_token"),
        nonce=params.get("oauth_nonce"),
        timestamp=params.get("oauth_timestamp"),
        verifier=params.get("oauth_verifier"),
        signature_method=params.get("oauth_signature_method"),
        params={k: v for k, v in extra.items() if not k.startswith("oauth_")},
        request=request,
    )
