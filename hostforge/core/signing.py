"""Capability links: HMAC-SHA256 over ``{scope, resource_id, params, expires}``.

A signed link carries its own authority. Nothing about the caller (cookies,
sessions) is consulted, the signature and the expiry are all that matter.
"""
import hmac
import time
import hashlib
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from hostforge.core.errors import AuthorizationError


def _canonical(scope: str, resource_id: str, params: Mapping[str, str]) -> bytes:
    items = sorted((str(k), str(v)) for k, v in params.items() if k != "signature")
    return f"{scope}|{resource_id}|{urlencode(items)}".encode("utf-8")


class LinkSigner:
    def __init__(self, key: str, ttl_seconds: int = 86400):
        self._key = key.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def signature(self, scope: str, resource_id: str, params: Mapping[str, str]) -> str:
        return hmac.new(self._key, _canonical(scope, resource_id, params), hashlib.sha256).hexdigest()

    def sign_params(self, scope: str, resource_id: str, params: Optional[Dict] = None, ttl_seconds: Optional[int] = None) -> Dict[str, str]:
        signed = {k: str(v) for k, v in (params or {}).items()}
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        signed["expires"] = str(int(time.time()) + ttl)
        signed["signature"] = self.signature(scope, resource_id, signed)
        return signed

    def sign_url(self, base_url: str, scope: str, resource_id: str, params: Optional[Dict] = None, ttl_seconds: Optional[int] = None) -> str:
        signed = self.sign_params(scope, resource_id, params, ttl_seconds)
        return f"{base_url}?{urlencode(signed)}"

    def verify(self, scope: str, resource_id: str, query: Mapping[str, str]):
        provided = query.get("signature")
        expires = query.get("expires")
        if not provided or not expires:
            raise AuthorizationError("Invalid signature.")
        expected = self.signature(scope, resource_id, query)
        if not hmac.compare_digest(expected, provided):
            raise AuthorizationError("Invalid signature.")
        try:
            expired = int(expires) < int(time.time())
        except ValueError:
            raise AuthorizationError("Invalid signature.")
        if expired:
            raise AuthorizationError("Signature has expired.")
