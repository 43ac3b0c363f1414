"""
Content Fingerprinting

fingerprint(record) = SHA-256(canonicalize(record))

All fingerprints are 256-bit digests rendered as lowercase hexadecimal with no
prefix for storage. The "sha256:" prefix is only added for display.

The encoding ruleset and digest algorithm are versioned together as a
FingerprintScheme. Every stored fingerprint records the scheme version it was
computed under, and re-verification MUST use that version, never whatever is
current, so that an algorithm upgrade cannot produce false mismatches.
"""

import hashlib
import hmac
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Union

from .canonicalization import canonicalize
from .errors import EncodingError


DISPLAY_PREFIX = "sha256:"
_HEX_256 = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class FingerprintScheme:
    """A versioned pairing of canonical encoder and digest algorithm."""
    version: str
    encoder: Callable[[Any], bytes]
    algorithm: str = "sha256"

    def digest(self, data: bytes) -> str:
        return hashlib.new(self.algorithm, data).hexdigest()

    def fingerprint(self, record: Any) -> str:
        return self.digest(self.encoder(record))


CURRENT_SCHEME_VERSION = "1"

_schemes: Dict[str, FingerprintScheme] = {
    CURRENT_SCHEME_VERSION: FingerprintScheme(version=CURRENT_SCHEME_VERSION, encoder=canonicalize),
}
_schemes_lock = threading.Lock()


def register_scheme(scheme: FingerprintScheme) -> None:
    """
    Register a scheme version.

    Existing versions cannot be redefined: records fingerprinted under a
    version must keep verifying under exactly the same rules.
    """
    if hashlib.new(scheme.algorithm).digest_size != 32:
        raise ValueError(f"Digest {scheme.algorithm} is not 256-bit")
    with _schemes_lock:
        existing = _schemes.get(scheme.version)
        if existing is not None and existing != scheme:
            raise ValueError(f"Fingerprint scheme {scheme.version} is already registered")
        _schemes[scheme.version] = scheme


def get_scheme(version: str = CURRENT_SCHEME_VERSION) -> FingerprintScheme:
    """Look up a registered scheme; unknown versions cannot be verified."""
    with _schemes_lock:
        scheme = _schemes.get(version)
    if scheme is None:
        raise EncodingError(f"Unknown fingerprint scheme version {version!r}")
    return scheme


def available_schemes() -> List[str]:
    with _schemes_lock:
        return sorted(_schemes)


def fingerprint(record: Any, version: str = CURRENT_SCHEME_VERSION) -> str:
    """
    Compute the content fingerprint of a structured record.

    Pure function: equal input always yields equal output.

    Raises:
        EncodingError: if the record has no canonical form
    """
    return get_scheme(version).fingerprint(record)


def fingerprint_of_bytes(raw: Union[bytes, str], version: str = CURRENT_SCHEME_VERSION) -> str:
    """
    Fingerprint raw content directly, bypassing canonicalization.

    Used for document content. Strings are hashed as their UTF-8 bytes.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return get_scheme(version).digest(bytes(raw))


def display_fingerprint(digest: str) -> str:
    """Return the prefixed display form, e.g. sha256:ab12..."""
    return f"{DISPLAY_PREFIX}{parse_fingerprint(digest)}"


def parse_fingerprint(value: str) -> str:
    """
    Normalize a fingerprint given in stored or display form to stored form.

    Raises:
        ValueError: if the value is not a 256-bit hex digest
    """
    text = (value or "").strip().lower()
    if text.startswith(DISPLAY_PREFIX):
        text = text[len(DISPLAY_PREFIX):]
    elif text.startswith("0x"):
        text = text[2:]
    if not _HEX_256.match(text):
        raise ValueError(f"Not a 256-bit hex fingerprint: {value!r}")
    return text


def is_valid_fingerprint(value: str) -> bool:
    """Check if value is a stored-form fingerprint (64 lowercase hex chars)."""
    return bool(_HEX_256.match(value or ""))


def fingerprints_match(a: str, b: str) -> bool:
    """Compare two stored-form fingerprints in constant time."""
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("ascii", "replace"), b.encode("ascii", "replace"))
