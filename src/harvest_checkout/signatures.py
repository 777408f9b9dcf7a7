"""Gateway notification (ITN) signature handling."""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping, Optional
from urllib.parse import quote

# Characters encodeURIComponent leaves untouched; the gateway signs with it.
_URI_COMPONENT_SAFE = "-_.!~*'()"


def _encode(value: Any) -> str:
    return quote(str(value), safe=_URI_COMPONENT_SAFE).replace("%20", "+")


class GatewaySigner:
    """Builds and checks the gateway's MD5 parameter-string signature.

    The signed string is every non-empty field except `signature`, in the
    order received, as `key=value` pairs joined by `&`, with the merchant
    passphrase appended when one is configured.
    """

    def __init__(self, passphrase: str = ""):
        self.passphrase = passphrase

    def parameter_string(self, params: Mapping[str, Any]) -> str:
        pairs = [
            f"{key}={_encode(value)}"
            for key, value in params.items()
            if key != "signature" and value is not None and str(value) != ""
        ]
        if self.passphrase:
            pairs.append(f"passphrase={_encode(self.passphrase)}")
        return "&".join(pairs)

    def sign(self, params: Mapping[str, Any]) -> str:
        return hashlib.md5(self.parameter_string(params).encode()).hexdigest()

    def verify(self, params: Mapping[str, Any], signature: Optional[str] = None) -> bool:
        """
        Verify a notification signature.

        Returns True if valid, False otherwise.
        """
        signature = signature if signature is not None else params.get("signature")
        if not signature:
            return False
        expected = self.sign(params)
        return hmac.compare_digest(expected, str(signature).lower())
