"""PayFast request signing.

The gateway signs with MD5 over a canonical query string. The encoding has to
match the gateway byte for byte: values are escaped like JavaScript's
``encodeURIComponent`` and ``%20`` is then turned into ``+``.
"""
import hashlib
from typing import Mapping, Optional
from urllib.parse import quote

SIGNATURE_FIELD = "signature"

# characters encodeURIComponent leaves alone (besides letters and digits)
_SAFE = "-_.!~*'()"


def encode_value(value: str) -> str:
    return quote(value, safe=_SAFE).replace("%20", "+")


def _as_text(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def build_param_string(fields: Mapping, passphrase: Optional[str] = None) -> str:
    """Canonical string that gets hashed: sorted non-empty fields, signature excluded."""
    normalized = {str(k): _as_text(v) for k, v in fields.items()}
    pairs = []
    for key in sorted(normalized):
        if key == SIGNATURE_FIELD:
            continue
        value = normalized[key]
        if value == "":
            continue
        pairs.append(f"{key}={encode_value(value)}")
    param_string = "&".join(pairs)

    if passphrase:
        param_string = f"{param_string}&passphrase={quote(passphrase, safe=_SAFE)}"
    return param_string


def generate_signature(fields: Mapping, passphrase: Optional[str] = None) -> str:
    payload = build_param_string(fields, passphrase)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()
