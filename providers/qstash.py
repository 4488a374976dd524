"""
providers/qstash.py

QStash helpers:
- publish_job: push {"job_id": ...} to the worker webhook through the queue
- sign_body / verify_signature: QStash JWT webhook signatures with key rotation

Two signing keys are valid at any moment (current + next) so the provider can
rotate without dropping in-flight deliveries. The token carries its own issue
time and a hash of the body, so a captured delivery cannot be replayed with a
different body or after the tolerance window.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Iterable, List, Optional
from uuid import uuid4

import jwt
import requests

from config import (
    QSTASH_CURRENT_SIGNING_KEY,
    QSTASH_NEXT_SIGNING_KEY,
    QSTASH_RETRIES,
    QSTASH_TOKEN,
    QSTASH_TOLERANCE_SECONDS,
    QSTASH_URL,
    WORKER_URL,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("Upstash-Signature", "X-Qstash-Signature")
QSTASH_ISSUER = "Upstash"


class DispatchError(Exception):
    """Publishing to the queue failed. The job row, if any, stays pending."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class SignatureError(Exception):
    pass


# =====================================================================
# SECTION: PUBLISH
# =====================================================================

def publish_job(job_id: str) -> str:
    """Publish one message for job_id. Returns the provider message id."""
    if not QSTASH_TOKEN or not WORKER_URL:
        logger.error(
            f"[qstash] not configured has_token={bool(QSTASH_TOKEN)} has_worker_url={bool(WORKER_URL)}"
        )
        raise DispatchError("Queue is not configured", job_id=job_id)

    url = f"{QSTASH_URL}/v2/publish/{WORKER_URL}"
    headers = {
        "Authorization": f"Bearer {QSTASH_TOKEN}",
        "Content-Type": "application/json",
        "Upstash-Retries": str(QSTASH_RETRIES),
    }
    try:
        resp = requests.post(url, headers=headers, json={"job_id": job_id}, timeout=10)
    except requests.RequestException as e:
        logger.error(f"[qstash] publish failed job_id={job_id}: {e}")
        raise DispatchError(f"Failed to reach queue: {e}", job_id=job_id)

    if resp.status_code >= 400:
        body = (resp.text or "")[:500]
        logger.error(f"[qstash] publish rejected job_id={job_id} status={resp.status_code} body={body}")
        raise DispatchError(f"Queue rejected publish: {resp.status_code}", job_id=job_id)

    try:
        message_id = (resp.json() or {}).get("messageId") or ""
    except ValueError:
        message_id = ""
    logger.info(f"[qstash] published job_id={job_id} message_id={message_id}")
    return message_id


# =====================================================================
# SECTION: SIGNATURES
# QStash signs every delivery with a JWT (HS256) in Upstash-Signature:
#   iss  "Upstash"
#   sub  destination URL
#   iat / nbf / exp  unix seconds
#   body base64url SHA-256 of the raw request body
# =====================================================================

def body_hash(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


def sign_body(body: bytes, key: str, url: Optional[str] = None, issued_at: Optional[int] = None) -> str:
    """Build the token QStash would send for body. Used by local tooling and tests."""
    now = int(time.time()) if issued_at is None else int(issued_at)
    claims = {
        "iss": QSTASH_ISSUER,
        "sub": url if url is not None else WORKER_URL,
        "iat": now,
        "nbf": now,
        "exp": now + QSTASH_TOLERANCE_SECONDS,
        "jti": f"jwt_{uuid4().hex}",
        "body": body_hash(body),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def signing_keys() -> List[str]:
    return [k for k in (QSTASH_CURRENT_SIGNING_KEY, QSTASH_NEXT_SIGNING_KEY) if k]


def _decode(token: str, keys: List[str]) -> dict:
    for key in keys:
        try:
            return jwt.decode(token, key, algorithms=["HS256"], issuer=QSTASH_ISSUER)
        except jwt.InvalidSignatureError:
            continue
        except jwt.InvalidTokenError as e:
            raise SignatureError(f"Invalid signature token: {e}")
    raise SignatureError("Invalid signature")


def verify_signature(
    body: bytes,
    signature: Optional[str],
    keys: Optional[Iterable[str]] = None,
    url: Optional[str] = None,
    tolerance: int = QSTASH_TOLERANCE_SECONDS,
) -> dict:
    """
    Raise SignatureError unless signature is a QStash token for this body,
    signed with the current or next key, addressed to url and fresh.
    Returns the verified claims.
    """
    if not signature:
        raise SignatureError("Missing signature")

    candidates = list(keys) if keys is not None else signing_keys()
    if not candidates:
        raise SignatureError("No signing keys configured")

    claims = _decode(signature.strip(), candidates)

    expected_url = (url if url is not None else WORKER_URL).rstrip("/")
    if expected_url and str(claims.get("sub") or "").rstrip("/") != expected_url:
        raise SignatureError("Signature addressed to another URL")

    if not hmac.compare_digest(str(claims.get("body") or "").rstrip("="), body_hash(body)):
        raise SignatureError("Body does not match signature")

    received_at = time.time()
    issued_at = claims.get("iat")
    if issued_at is None:
        logger.warning("[qstash] token has no iat, using receipt time")
        issued_at = received_at
    if abs(received_at - float(issued_at)) > tolerance:
        raise SignatureError("Signature timestamp outside tolerance")

    return claims
