"""
Webhook payload signing

The body of every delivery is the canonical JSON serialisation of the envelope:
keys sorted, no insignificant whitespace, UTF-8 without ASCII escaping. The
signature header carries ``sha256=<hex HMAC-SHA256(secret, body)>``. Receivers
verify by HMAC-ing the raw request body with their copy of the secret.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional, Union

SIGNATURE_PREFIX = "sha256="


def canonical_json(envelope: Dict[str, Any]) -> bytes:
    """Serialise an envelope to the exact bytes that are sent and signed"""
    return json.dumps(
        envelope,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign(body: Union[bytes, Dict[str, Any]], secret: Optional[str]) -> Optional[str]:
    """Sign a serialised body (or an envelope dict); no secret means no signature"""
    if not secret:
        return None
    if isinstance(body, dict):
        body = canonical_json(body)
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(
    body: Union[bytes, Dict[str, Any]],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Check a signature against a body or envelope

    Without a secret there is nothing to check and verification passes;
    callers that require signed deliveries must insist on a secret when the
    webhook is registered. A bare hex digest is accepted as well as the
    prefixed form.
    """
    if not secret:
        return True
    if not signature:
        return False
    expected = sign(body, secret)
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = f"{SIGNATURE_PREFIX}{signature}"
    return hmac.compare_digest(expected, signature)
