"""
HTTP Signatures (draft-cavage-http-signatures, rsa-sha256) for outgoing
ActivityPub requests.

Signed headers: (request-target) host date digest content-type.
The Digest header is SHA-256 over the exact body bytes sent. httpsig builds
and checks the Signature header; the Digest is computed and compared here.
"""
from __future__ import annotations

import base64
import hashlib
from email.utils import formatdate
from typing import Optional
from urllib.parse import urlsplit

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpsig import HeaderSigner, HeaderVerifier
from httpsig.utils import parse_signature_header

SIGNED_HEADERS = ("(request-target)", "host", "date", "digest", "content-type")


class SignatureError(Exception):
    """A request cannot be signed (bad or missing key) or a signature does not verify."""


def generate_key_pair(key_size: int = 2048) -> tuple[str, str]:
    """Return (private_pem, public_pem) for a new actor key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def body_digest(body: bytes) -> str:
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode()


def _check_private_key(private_key_pem: str):
    if not private_key_pem:
        raise SignatureError("No private key available for signing")
    try:
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    except (ValueError, TypeError) as e:
        raise SignatureError(f"Unusable private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SignatureError("Signing key is not an RSA key")


def sign_request(
    method: str,
    url: str,
    body: bytes,
    private_key_pem: str,
    key_id: str,
    content_type: str = "application/activity+json",
    date: Optional[str] = None,
) -> dict[str, str]:
    """Return the headers (Host, Date, Digest, Content-Type, Signature) for a signed request."""
    _check_private_key(private_key_pem)
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    headers = {
        "Host": parts.netloc,
        "Date": date or formatdate(usegmt=True),
        "Digest": body_digest(body),
        "Content-Type": content_type,
    }
    signer = HeaderSigner(key_id, secret=private_key_pem, algorithm="rsa-sha256",
                          headers=list(SIGNED_HEADERS), sign_header="signature")
    try:
        signed = signer.sign(headers, host=parts.netloc, method=method, path=path)
    # httpsig raises plain Exception for missing headers
    except Exception as e:
        raise SignatureError(f"Could not sign request: {e}") from e
    headers["Signature"] = signed["signature"]
    return headers


def verify_signature(method: str, path: str, headers: dict[str, str], body: bytes,
                     public_key_pem: str) -> bool:
    """Check the Signature and Digest headers of a request. Raises SignatureError on mismatch."""
    lower = {k.lower(): v for k, v in headers.items()}
    if not lower.get("signature"):
        raise SignatureError("No Signature header")
    # parse_signature_header lower-cases all keys
    if not parse_signature_header(lower["signature"]).get("signature"):
        raise SignatureError("Signature header carries no signature")
    if lower.get("digest") != body_digest(body):
        raise SignatureError("Digest does not match body")

    try:
        verified = HeaderVerifier(lower, public_key_pem, required_headers=["digest"],
                                  method=method, path=path, sign_header="signature").verify()
    except Exception as e:
        raise SignatureError(f"Signature does not verify: {e}") from e
    if not verified:
        raise SignatureError("Signature does not verify")
    return True
