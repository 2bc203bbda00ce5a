"""
crypto.py
---------
Cifrado AES-256-GCM del metadata de auditoría.

El metadata de un evento es un blob opaco que el llamador controla y que
puede contener datos sensibles, así que se guarda cifrado.

  - Clave: sha256(SECRET_KEY) → 32 bytes exactos para AES-256.
  - Formato: nonce (12 bytes) + ciphertext + GCM tag (16 bytes).
  - El nonce es aleatorio por llamada y viaja antepuesto al ciphertext.
"""

import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_SIZE = 12   # 96 bits, recomendado por NIST para GCM


def derive_key(secret_key: str) -> bytes:
    return hashlib.sha256(secret_key.encode()).digest()


class MetadataCipher:
    """Serializa a JSON y cifra; descifra y parsea de vuelta."""

    def __init__(self, secret_key: str):
        self._aesgcm = AESGCM(derive_key(secret_key))

    def encrypt(self, metadata: dict[str, Any]) -> bytes:
        plaintext = json.dumps(
            metadata, ensure_ascii=False, sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, blob: bytes) -> dict[str, Any]:
        nonce, ciphertext = blob[:_NONCE_SIZE], blob[_NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise ValueError("AES-GCM: metadata corrupto o clave incorrecta.")
        return json.loads(plaintext.decode("utf-8"))
