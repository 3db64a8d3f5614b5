# medreminder/crypto.py
# AES-GCM helpers and key management for the encrypted state store.
import os
import uuid
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from .logs import logger

try:
    from jnius import autoclass
except Exception:
    autoclass = None

_CRYPTO_LOCK = RLock()
_ANDROID_KEY_ALIAS = "medreminder_key_v1"


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)


# -------------------------
# Android Keystore (optional) - wraps the AES key with an RSA keypair
# -------------------------
def android_ready() -> bool:
    return autoclass is not None and bool(os.environ.get("ANDROID_PRIVATE") or os.environ.get("ANDROID_ARGUMENT"))


def _android_keystore_get():
    KeyStore = autoclass("java.security.KeyStore")
    ks = KeyStore.getInstance("AndroidKeyStore")
    ks.load(None)
    return ks


def _android_keystore_ensure_rsa(alias: str):
    ks = _android_keystore_get()
    if ks.containsAlias(alias):
        return
    KeyPairGenerator = autoclass("java.security.KeyPairGenerator")
    KeyProperties = autoclass("android.security.keystore.KeyProperties")
    Builder = autoclass("android.security.keystore.KeyGenParameterSpec$Builder")

    purposes = int(KeyProperties.PURPOSE_ENCRYPT) | int(KeyProperties.PURPOSE_DECRYPT)
    builder = Builder(alias, purposes)
    builder.setDigests([KeyProperties.DIGEST_SHA256])
    builder.setEncryptionPaddings([KeyProperties.ENCRYPTION_PADDING_RSA_OAEP])
    spec = builder.build()

    kpg = KeyPairGenerator.getInstance(KeyProperties.KEY_ALGORITHM_RSA, "AndroidKeyStore")
    kpg.initialize(spec)
    kpg.generateKeyPair()


def _android_rsa_cipher(mode_name: str, key_obj):
    CipherJ = autoclass("javax.crypto.Cipher")
    cipher = CipherJ.getInstance("RSA/ECB/OAEPWithSHA-256AndMGF1Padding")
    cipher.init(getattr(CipherJ, mode_name), key_obj)
    return cipher


def _android_keystore_wrap_key(aes_key: bytes) -> bytes:
    _android_keystore_ensure_rsa(_ANDROID_KEY_ALIAS)
    pub = _android_keystore_get().getCertificate(_ANDROID_KEY_ALIAS).getPublicKey()
    return bytes(_android_rsa_cipher("ENCRYPT_MODE", pub).doFinal(aes_key))


def _android_keystore_unwrap_key(wrapped: bytes) -> bytes:
    _android_keystore_ensure_rsa(_ANDROID_KEY_ALIAS)
    priv = _android_keystore_get().getEntry(_ANDROID_KEY_ALIAS, None).getPrivateKey()
    return bytes(_android_rsa_cipher("DECRYPT_MODE", priv).doFinal(wrapped))


def _load_key(key_path: Path) -> Optional[bytes]:
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    if android_ready():
        try:
            k = _android_keystore_unwrap_key(d)
            if len(k) == 32:
                return k
        except Exception:
            logger.exception("key unwrap failed")
            return None
    return d[:32] if len(d) >= 32 else None


def _store_key(key_path: Path, raw_key: bytes):
    if android_ready():
        atomic_write_bytes(key_path, _android_keystore_wrap_key(raw_key))
        logger.info("key stored: android keystore")
    else:
        atomic_write_bytes(key_path, raw_key)
        logger.info("key stored: file")


def get_or_create_key(key_path: Path) -> bytes:
    with _CRYPTO_LOCK:
        k = _load_key(key_path)
        if k and len(k) == 32:
            return k
        key = AESGCM.generate_key(bit_length=256)
        try:
            _store_key(key_path, key)
        except Exception:
            logger.exception("keystore wrap failed; storing key as file")
            atomic_write_bytes(key_path, key)
        return key
