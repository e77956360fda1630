# services/payments/signing.py
"""
Canonical JSON + HMAC-SHA512 signatures in the form NOWPayments uses for IPN.

The provider signs JSON.stringify(sortObject(payload)):
  - object keys sorted, recursively into nested objects
  - arrays keep their order; objects inside them are not key-sorted
  - compact separators, non-ASCII left unescaped, JS number formatting
  - array-index keys ("0", "9", "10") first in numeric order, as JS objects do

Both the adapter (verify) and the /api/webhooks/sign helper (sign) go through
canonical_json(), so a digest produced here always verifies there.
"""

from __future__ import annotations
import hashlib
import hmac
import json
import math
from decimal import Decimal
from typing import Any


_MAX_ARRAY_INDEX = 2 ** 32 - 2


def _utf16_key(k: str) -> bytes:
    # Array.prototype.sort() compares UTF-16 code units
    return k.encode("utf-16-be", "surrogatepass")


def _array_index(k: str) -> int | None:
    if not k.isascii() or not k.isdigit() or (len(k) > 1 and k[0] == "0"):
        return None
    n = int(k)
    return n if n <= _MAX_ARRAY_INDEX else None


def js_key_order(keys) -> list:
    """
    Own-key order of a JS object: array-index keys ascending, then the rest
    in insertion order.
    """
    keys = list(keys)
    indexed = sorted((k for k in keys if _array_index(k) is not None), key=_array_index)
    return indexed + [k for k in keys if _array_index(k) is None]


def sort_object(obj: dict) -> dict:
    out = {}
    for key in js_key_order(sorted(obj.keys(), key=_utf16_key)):
        value = obj[key]
        out[key] = sort_object(value) if isinstance(value, dict) else value
    return out


def _js_number(x: float | int) -> str:
    if isinstance(x, int):
        return str(x)
    if math.isnan(x) or math.isinf(x):
        return "null"
    if x.is_integer() and abs(x) < 1e21:
        return str(int(x))
    s = repr(x)
    if 1e-6 <= abs(x) < 1e21:
        # Number.prototype.toString keeps plain notation in this range
        return format(Decimal(s), "f")
    if "e" in s:
        mant, exp = s.split("e")
        sign = "-" if exp.startswith("-") else "+"
        s = f"{mant}e{sign}{exp.lstrip('+-').lstrip('0') or '0'}"
    return s


def _dump(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        return _js_number(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, dict):
        items = {str(k): v for k, v in value.items()}
        return "{" + ",".join(f"{_dump(k)}:{_dump(items[k])}" for k in js_key_order(items)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_dump(v) for v in value) + "]"
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def canonical_json(payload: Any) -> str:
    if isinstance(payload, dict):
        payload = sort_object(payload)
    return _dump(payload)


def sign_payload(payload: Any, secret: str) -> str:
    """HMAC-SHA512 hex digest of the canonical JSON form of `payload`."""
    msg = canonical_json(payload).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha512).hexdigest()


def verify_signature(payload: Any, secret: str, signature: str) -> bool:
    expected = sign_payload(payload, secret)
    given = (signature or "").strip().lower().encode("utf-8")
    return hmac.compare_digest(expected.encode("ascii"), given)
