"""
AllPay callback signatures.

The gateway signs a payload by concatenating the *values* of the payload
(keys sorted by code point, line-item objects sorted the same way, empty
strings skipped) with ``:``, appending ``:<secret>`` and taking the SHA-256
hex digest.

The published algorithm only looks at string values, but real callbacks also
sign numeric fields. Both canonicalizations are kept as named candidates and
the verifier accepts a match against any candidate on the allowlist. Drop
candidates from the allowlist once the gateway's behaviour is confirmed.
"""
from __future__ import annotations
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

SIGN_KEY = "sign"

ALL_SCALARS = "all_scalars"
STRINGS_ONLY = "strings_only"
# outbound fallback only; the gateway has been seen to sign empty fields
WITH_EMPTY = "all_scalars_with_empty"


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _is_string(value: Any) -> bool:
    return isinstance(value, str)


@dataclass(frozen=True)
class Canonicalization:
    accept: Callable[[Any], bool]
    keep_empty: bool = False


CANDIDATES: Dict[str, Canonicalization] = {
    ALL_SCALARS: Canonicalization(_is_scalar),
    STRINGS_ONLY: Canonicalization(_is_string),
    WITH_EMPTY: Canonicalization(_is_scalar, keep_empty=True),
}


def scalar_to_str(value: Any) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def canonical_tokens(
    payload: Mapping[str, Any], candidate: str = ALL_SCALARS
) -> List[str]:
    try:
        rule = CANDIDATES[candidate]
    except KeyError:
        raise ValueError(f"unknown signature candidate: {candidate}")

    tokens: List[str] = []

    def add(value: Any) -> None:
        if not rule.accept(value):
            return
        s = scalar_to_str(value)
        if s != "" or rule.keep_empty:
            tokens.append(s)

    for key in sorted(payload):
        if key == SIGN_KEY:
            continue
        value = payload[key]
        if isinstance(value, list):
            for item in value:
                if not isinstance(item, dict):
                    continue
                for item_key in sorted(item):
                    add(item[item_key])
        else:
            add(value)
    return tokens


def canonical_string(
    payload: Mapping[str, Any], secret: str, candidate: str = ALL_SCALARS
) -> str:
    return ":".join(canonical_tokens(payload, candidate)) + ":" + secret


def compute_signature(
    payload: Mapping[str, Any], secret: str, candidate: str = ALL_SCALARS
) -> str:
    base = canonical_string(payload, secret, candidate)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def secure_match(a: str, b: str) -> bool:
    left = a.encode("utf-8")
    right = b.encode("utf-8")
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def is_valid_signature(
    payload: Mapping[str, Any],
    incoming_sign: str,
    secret: str,
    candidates: Iterable[str] = (ALL_SCALARS,),
) -> bool:
    if not incoming_sign or not secret:
        return False
    sign = incoming_sign.strip()
    return any(
        secure_match(compute_signature(payload, secret, c), sign)
        for c in candidates
    )


@dataclass(frozen=True)
class SignatureMatch:
    secret_index: int
    candidate: str


class SignatureVerifier:
    """Tries every configured secret, in order, under every candidate."""

    def __init__(self, secrets: Iterable[str],
                 candidates: Iterable[str] = (ALL_SCALARS, STRINGS_ONLY)):
        self.secrets = [s for s in secrets if s]
        self.candidates = list(candidates)
        unknown = [c for c in self.candidates if c not in CANDIDATES]
        if unknown:
            raise ValueError(f"unknown signature candidates: {unknown}")
        if not self.candidates:
            raise ValueError("at least one signature candidate is required")

    @property
    def configured(self) -> bool:
        return bool(self.secrets)

    def verify(
        self, payload: Mapping[str, Any], incoming_sign: str
    ) -> Optional[SignatureMatch]:
        if not incoming_sign:
            return None
        sign = incoming_sign.strip()
        for idx, secret in enumerate(self.secrets):
            for candidate in self.candidates:
                expected = compute_signature(payload, secret, candidate)
                if secure_match(expected, sign):
                    return SignatureMatch(idx, candidate)
        return None
