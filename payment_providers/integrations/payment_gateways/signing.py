"""
Gateway Signature Utilities

Computes and verifies the digests payment gateways use to protect form posts,
callbacks and API calls against tampering. Every gateway adapter signs through
these helpers instead of hashing on its own.
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence, Union

StrOrBytes = Union[str, bytes]


class DigestAlgorithm(str, Enum):
    """Hash algorithms used by the supported gateways."""
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"
    HMAC_SHA1 = "hmac_sha1"
    HMAC_SHA256 = "hmac_sha256"
    HMAC_SHA512 = "hmac_sha512"

    @property
    def is_hmac(self) -> bool:
        return self.value.startswith("hmac_")

    @property
    def hash_name(self) -> str:
        return self.value.replace("hmac_", "")


class DigestEncoding(str, Enum):
    """Text encodings of a raw digest."""
    HEX = "hex"
    HEX_UPPER = "hex_upper"
    BASE64 = "base64"


class SecretPlacement(str, Enum):
    """Where a shared secret enters a field-based digest."""
    NONE = "none"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    EACH = "each"  # appended after every field, Ogone style
    KEY = "key"  # HMAC key


def _to_bytes(value: StrOrBytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_digest(
    data: StrOrBytes,
    algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
    secret: Optional[StrOrBytes] = None,
    encoding: DigestEncoding = DigestEncoding.HEX,
) -> str:
    """
    Compute a digest of data.

    Args:
        data: Message to hash, strings are UTF-8 encoded
        algorithm: Hash algorithm
        secret: HMAC key, required for the HMAC algorithms and ignored otherwise
        encoding: Text encoding of the result

    Returns:
        Encoded digest

    Raises:
        ValueError: If an HMAC algorithm is requested without a secret
    """
    payload = _to_bytes(data)
    if algorithm.is_hmac:
        if secret is None:
            raise ValueError(f"A secret is required to compute a {algorithm.value} digest")
        raw = hmac.new(_to_bytes(secret), payload, algorithm.hash_name).digest()
    else:
        raw = hashlib.new(algorithm.hash_name, payload).digest()

    if encoding is DigestEncoding.BASE64:
        return base64.b64encode(raw).decode("ascii")
    if encoding is DigestEncoding.HEX_UPPER:
        return raw.hex().upper()
    return raw.hex()


def verify_digest(
    expected: Optional[str],
    data: StrOrBytes,
    algorithm: DigestAlgorithm = DigestAlgorithm.MD5,
    secret: Optional[StrOrBytes] = None,
    encoding: DigestEncoding = DigestEncoding.HEX,
    case_sensitive: bool = True,
) -> bool:
    """
    Check a received digest against the one calculated from data.

    The comparison runs in constant time. An empty or missing received digest
    never verifies.
    """
    if not expected:
        return False
    calculated = compute_digest(data, algorithm, secret, encoding)
    return digests_equal(calculated, expected, case_sensitive=case_sensitive)


def digests_equal(calculated: str, received: Optional[str], case_sensitive: bool = True) -> bool:
    if not received:
        return False
    if not case_sensitive:
        calculated = calculated.lower()
        received = received.lower()
    return hmac.compare_digest(calculated.encode("utf-8"), received.encode("utf-8"))


def md5_hex(data: StrOrBytes) -> str:
    return compute_digest(data, DigestAlgorithm.MD5)


def double_md5(data: str, key1: str, key2: str) -> str:
    """MD5(key2 + MD5(key1 + data)), the two-key scheme used by DIBS."""
    return md5_hex(key2 + md5_hex(key1 + data))


@dataclass(frozen=True)
class DigestRecipe:
    """
    Field-ordered digest definition.

    A recipe names which fields take part in a digest, in which order, how each
    field is written (``"{key}={value}"`` or the bare value), how the parts are
    joined and where the shared secret goes. ``fields=None`` means every field,
    sorted by key.
    """
    algorithm: DigestAlgorithm
    fields: Optional[Sequence[str]] = None
    exclude: Sequence[str] = ()
    pair_format: str = "{value}"
    separator: str = ""
    secret_placement: SecretPlacement = SecretPlacement.SUFFIX
    encoding: DigestEncoding = DigestEncoding.HEX
    uppercase_keys: bool = False
    skip_empty: bool = False

    def _ordered_items(self, values: Mapping[str, Optional[str]]):
        if self.fields is not None:
            items = [(key, values.get(key)) for key in self.fields]
        else:
            items = [(key, value) for key, value in values.items() if key not in self.exclude]
            items.sort(key=lambda item: item[0].upper() if self.uppercase_keys else item[0])

        for key, value in items:
            value = "" if value is None else str(value)
            if self.skip_empty and value == "":
                continue
            yield (key.upper() if self.uppercase_keys else key), value

    def message(self, values: Mapping[str, Optional[str]], secret: Optional[str] = None) -> str:
        """Build the string that gets hashed."""
        secret = secret or ""
        parts = []
        for key, value in self._ordered_items(values):
            part = self.pair_format.format(key=key, value=value)
            if self.secret_placement is SecretPlacement.EACH:
                part += secret
            parts.append(part)

        message = self.separator.join(parts)
        if self.secret_placement is SecretPlacement.PREFIX:
            message = secret + message
        elif self.secret_placement is SecretPlacement.SUFFIX:
            message = message + secret
        return message

    def compute(self, values: Mapping[str, Optional[str]], secret: Optional[str] = None) -> str:
        key = secret if self.secret_placement is SecretPlacement.KEY else None
        return compute_digest(self.message(values, secret), self.algorithm, key, self.encoding)

    def verify(
        self,
        expected: Optional[str],
        values: Mapping[str, Optional[str]],
        secret: Optional[str] = None,
        case_sensitive: bool = True,
    ) -> bool:
        return digests_equal(self.compute(values, secret), expected, case_sensitive=case_sensitive)
