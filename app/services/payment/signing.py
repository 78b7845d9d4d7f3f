"""
Telebirr Request Signing

Both Telebirr flows (B2B and H5/C2B) sign the same way:

    1. drop `sign`, `sign_type` and every empty value
    2. sort the remaining keys byte-wise
    3. join as key=value pairs with '&' (values are NOT url-encoded)
    4. RSA PKCS#1 v1.5 over SHA-256, base64 encoded

Outbound requests are signed with the merchant private key, inbound
callbacks are verified with the Telebirr public key.

Usage:
    signer = RequestSigner(private_key_pem=..., public_key_pem=...)
    params["sign"] = signer.sign(params)
    assert signer.verify(params, params["sign"])
"""

import base64
import binascii
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    load_pem_public_key,
)

from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_KEYS = frozenset({"sign", "sign_type"})
SIGN_TYPE = "RSA2"

_PEM_HEADER = re.compile(r"-----BEGIN [A-Z ]+-----")


def canonicalize(
    params: Mapping[str, object],
    excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
) -> str:
    """
    Build the exact string that gets signed.

    An empty parameter set canonicalizes to the empty string; callers
    must still sign and verify it.
    """
    excluded = frozenset(excluded_keys)
    items = []
    for key, value in params.items():
        if key in excluded or value is None:
            continue
        text = str(value)
        if text == "":
            continue
        items.append((key, text))
    # Byte-wise ordering, not locale or unicode-aware collation
    items.sort(key=lambda kv: kv[0].encode("utf-8"))
    return "&".join(f"{k}={v}" for k, v in items)


def _pem_candidates(raw: str, kinds: tuple[str, ...]) -> list[bytes]:
    """
    Accept full PEM documents or bare base64 bodies.

    A bare body carries no hint of its encoding, so it is wrapped once
    per armour kind and each candidate is tried in turn.
    """
    text = raw.replace("\\n", "\n").strip()
    if _PEM_HEADER.search(text):
        return [text.encode("utf-8")]
    body = "".join(text.split())
    lines = "\n".join(body[i:i + 64] for i in range(0, len(body), 64))
    return [
        f"-----BEGIN {kind}-----\n{lines}\n-----END {kind}-----\n".encode("utf-8")
        for kind in kinds
    ]


def load_private_key(raw: str) -> RSAPrivateKey:
    """Parse a PKCS#1 or PKCS#8 RSA private key."""
    error: Optional[Exception] = None
    for candidate in _pem_candidates(raw, ("PRIVATE KEY", "RSA PRIVATE KEY")):
        try:
            key = load_pem_private_key(candidate, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            error = e
            continue
        if not isinstance(key, RSAPrivateKey):
            raise ConfigurationError("Merchant private key is not an RSA key")
        return key
    raise ConfigurationError("Unable to parse merchant private key", detail=str(error)) from error


def load_public_key(raw: str) -> RSAPublicKey:
    """Parse a SubjectPublicKeyInfo or PKCS#1 RSA public key."""
    error: Optional[Exception] = None
    for candidate in _pem_candidates(raw, ("PUBLIC KEY", "RSA PUBLIC KEY")):
        try:
            key = load_pem_public_key(candidate)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            error = e
            continue
        if not isinstance(key, RSAPublicKey):
            raise ConfigurationError("Gateway public key is not an RSA key")
        return key
    raise ConfigurationError("Unable to parse gateway public key", detail=str(error)) from error


class RequestSigner:
    """
    RSA-SHA256 signer/verifier over canonicalized parameters.

    Key material is parsed once, at construction. A malformed key raises
    ConfigurationError there instead of failing on the first request.

    Attributes:
        excluded_keys: Parameter names never covered by the signature
    """

    def __init__(
        self,
        private_key_pem: Optional[str] = None,
        public_key_pem: Optional[str] = None,
        excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS,
    ):
        self._private_key = load_private_key(private_key_pem) if private_key_pem else None
        self._public_key = load_public_key(public_key_pem) if public_key_pem else None
        self.excluded_keys = frozenset(excluded_keys)

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    @property
    def can_verify(self) -> bool:
        return self._public_key is not None

    def payload(self, params: Mapping[str, object]) -> str:
        return canonicalize(params, self.excluded_keys)

    def sign(self, params: Mapping[str, object]) -> str:
        """Return the base64 signature of the canonicalized params."""
        if self._private_key is None:
            raise ConfigurationError("No merchant private key configured for signing")
        signature = self._private_key.sign(
            self.payload(params).encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return base64.b64encode(signature).decode("ascii")

    def verify(self, params: Mapping[str, object], signature: Optional[str]) -> bool:
        """
        Check a base64 signature against the canonicalized params.

        Missing or undecodable signatures verify as False.
        """
        if self._public_key is None:
            raise ConfigurationError("No gateway public key configured for verification")
        if not signature:
            return False
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Signature is not valid base64")
            return False
        try:
            self._public_key.verify(
                raw,
                self.payload(params).encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature:
            return False
        return True

    def sign_params(self, params: dict[str, str]) -> dict[str, str]:
        """Return a copy of params with `sign` and `sign_type` filled in."""
        signed = dict(params)
        signed["sign_type"] = SIGN_TYPE
        signed["sign"] = self.sign(signed)
        return signed

    @classmethod
    def ephemeral(cls, excluded_keys: Iterable[str] = DEFAULT_EXCLUDED_KEYS) -> "RequestSigner":
        """
        Self-consistent signer with a throwaway key pair.

        Development only: the same key signs requests and verifies
        callbacks, so locally simulated callbacks authenticate.
        """
        signer = cls(excluded_keys=excluded_keys)
        signer._private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        signer._public_key = signer._private_key.public_key()
        return signer
