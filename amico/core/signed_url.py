"""Offline expiry checks for vendor signed URLs.

Tripo serves assets through CloudFront-style signed URLs. A canned or custom
policy travels in the ``Policy`` query parameter as base64 encoded JSON::

    {"Statement": [{"Resource": "...",
                    "Condition": {"DateLessThan": {"AWS:EpochTime": 1767225600}}}]}

Some hosts only send a plain ``Expires=<epoch>`` parameter. Anything that
cannot be decoded counts as "no expiry known".
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
import time
from typing import Optional, Union
from urllib.parse import parse_qs, urlparse

POLICY_PARAMS = ("Policy", "policy")
EXPIRES_PARAMS = ("Expires", "expires")

# CloudFront swaps the three characters that are unsafe in query strings.
_CLOUDFRONT_ALPHABET = str.maketrans({"-": "+", "_": "=", "~": "/"})
_ASCII_DIGITS = re.compile(r"[0-9]+")


def _b64decode(text: str, cloudfront: bool) -> bytes:
    if cloudfront:
        return base64.b64decode(text.translate(_CLOUDFRONT_ALPHABET))
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded)


def _expiry_from_document(document: object) -> Optional[int]:
    if not isinstance(document, dict):
        return None
    statements = document.get("Statement")
    if not isinstance(statements, list):
        return None
    for statement in statements:
        if not isinstance(statement, dict):
            continue
        condition = statement.get("Condition")
        if not isinstance(condition, dict):
            continue
        less_than = condition.get("DateLessThan")
        if not isinstance(less_than, dict):
            continue
        expiry = _epoch_seconds(less_than.get("AWS:EpochTime"))
        if expiry is not None:
            return expiry
    return None


def _epoch_seconds(value: object) -> Optional[int]:
    """Whole epoch seconds from a JSON number or an ASCII digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and _ASCII_DIGITS.fullmatch(value.strip()):
        try:
            return int(value)
        except ValueError:
            # longer than the int conversion digit limit
            return None
    return None


def decode_policy_expiry(encoded: Union[str, bytes]) -> Optional[int]:
    """Return the epoch-seconds expiry inside an encoded policy, or None."""
    if isinstance(encoded, bytes):
        try:
            encoded = encoded.decode("ascii")
        except UnicodeDecodeError:
            return None
    encoded = encoded.strip()
    if not encoded:
        return None
    for cloudfront in (False, True):
        try:
            expiry = _expiry_from_document(json.loads(_b64decode(encoded, cloudfront)))
        except (binascii.Error, ValueError, OverflowError, RecursionError):
            continue
        if expiry is not None:
            return expiry
    return None


def url_expiry(url: str) -> Optional[int]:
    """Extract the expiry epoch embedded in a signed URL."""
    try:
        params = parse_qs(urlparse(url).query)
    except ValueError:
        return None
    for name in POLICY_PARAMS:
        for value in params.get(name, []):
            expiry = decode_policy_expiry(value)
            if expiry is not None:
                return expiry
    for name in EXPIRES_PARAMS:
        for value in params.get(name, []):
            expiry = _epoch_seconds(value)
            if expiry is not None:
                return expiry
    return None


def is_expired(url: str, leeway_s: float = 0, now: Optional[float] = None) -> bool:
    """True when the URL's embedded expiry is at or before ``now + leeway_s``.

    URLs without a recognizable expiry are treated as valid.
    """
    if not isinstance(url, str):
        return False
    expiry = url_expiry(url)
    if expiry is None:
        return False
    current = time.time() if now is None else now
    return expiry <= current + leeway_s
