# hostforge/core/secret_store.py
import os
import base64
import json
import time
import threading
from typing import Dict, Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_AAD = b"hostforge-secret"

_lock = threading.Lock()


class SecretStore:
    """AES-GCM encryption for credentials kept in the JSON store, one key file per scope."""

    def __init__(self, key_dir: str):
        self.key_dir = key_dir
        os.makedirs(self.key_dir, exist_ok=True)

    def _key_path(self, scope: str) -> str:
        return os.path.join(self.key_dir, f"{scope}.key")

    def _read_key(self, scope: str) -> bytes:
        p = self._key_path(scope)
        if os.path.exists(p):
            with open(p, "rb") as f:
                kb = base64.b64decode(f.read().decode("ascii"))
                if len(kb) in (16, 24, 32):
                    return kb
        return b""

    def get_or_create_key(self, scope: str) -> bytes:
        with _lock:
            kb = self._read_key(scope)
            if kb:
                return kb
            kb = os.urandom(32)
            with open(self._key_path(scope), "wb") as f:
                f.write(base64.b64encode(kb))
            return kb

    def encrypt(self, scope: str, data: Dict[str, Any]) -> str:
        aesgcm = AESGCM(self.get_or_create_key(scope))
        nonce = os.urandom(12)
        pt = json.dumps(data, ensure_ascii=False).encode("utf-8")
        ct = aesgcm.encrypt(nonce, pt, _AAD)
        doc = {
            "enc": True,
            "alg": "AES-GCM",
            "ts": int(time.time()),
            "nonce_b64": base64.b64encode(nonce).decode("ascii"),
            "ct_b64": base64.b64encode(ct).decode("ascii"),
        }
        return json.dumps(doc, ensure_ascii=False)

    def decrypt(self, scope: str, text: str) -> Dict[str, Any]:
        obj = json.loads(text)
        if isinstance(obj, dict) and obj.get("enc") is True and obj.get("alg") == "AES-GCM":
            aesgcm = AESGCM(self.get_or_create_key(scope))
            nonce = base64.b64decode(obj["nonce_b64"])
            ct = base64.b64decode(obj["ct_b64"])
            pt = aesgcm.decrypt(nonce, ct, _AAD)
            return json.loads(pt.decode("utf-8"))
        if isinstance(obj, dict):
            return obj
        raise RuntimeError("Invalid secret content")

    def delete(self, scope: str):
        p = self._key_path(scope)
        if os.path.exists(p):
            os.remove(p)
