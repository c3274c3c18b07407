"""
Password based encryption of tox saves and avatar files.

Encrypted blob layout:
  [8 B magic] [1 B log2(N)] [1 B r] [1 B p] [32 B scrypt salt] [12 B nonce] [ciphertext + 16 B GCM tag]

Everything before the nonce is authenticated as associated data, so the KDF
parameters and the salt can't be swapped without decryption failing.
"""
import hmac
import logging
import os
import struct
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from .config import Settings
from .errors import DecryptionFailed, KeyDerivationFailed

logger = logging.getLogger(__name__)

MAGIC = b"toxVault"
MAGIC_LENGTH = len(MAGIC)
SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_PARAMS = struct.Struct(">BBB")
HEADER_LENGTH = MAGIC_LENGTH + _PARAMS.size + SALT_LENGTH
ENCRYPTION_EXTRA_LENGTH = HEADER_LENGTH + NONCE_LENGTH + TAG_LENGTH

# limits on parameters read from a blob header, the defaults need 32 MiB
MAX_LOG_N = 22
MAX_R = 32
MAX_P = 4
MAX_MEMORY = 256 * 1024 * 1024


class DerivedKey:
    __slots__ = ("_material", "salt", "log_n", "r", "p")

    def __init__(self, material: bytes, salt: bytes, log_n: int, r: int, p: int):
        self._material = material
        self.salt = salt
        self.log_n = log_n
        self.r = r
        self.p = p

    @property
    def header(self) -> bytes:
        return MAGIC + _PARAMS.pack(self.log_n, self.r, self.p) + self.salt

    def __eq__(self, other) -> bool:
        if not isinstance(other, DerivedKey):
            return NotImplemented
        return hmac.compare_digest(self._material, other._material) and self.header == other.header

    def __hash__(self):
        return hash(self.header)

    def __repr__(self) -> str:
        return f"DerivedKey(log_n={self.log_n}, r={self.r}, p={self.p}, material=<redacted>)"


def is_encrypted_blob(blob: bytes) -> bool:
    return len(blob) >= MAGIC_LENGTH and blob[:MAGIC_LENGTH] == MAGIC


def encrypt(key: DerivedKey, plaintext: bytes) -> bytes:
    nonce = os.urandom(NONCE_LENGTH)
    header = key.header
    return header + nonce + AESGCM(key._material).encrypt(nonce, plaintext, header)


def decrypt(key: DerivedKey, blob: bytes) -> bytes:
    if not is_encrypted_blob(blob) or len(blob) < ENCRYPTION_EXTRA_LENGTH:
        raise DecryptionFailed("Data is not an encrypted blob or is truncated")

    header = blob[:HEADER_LENGTH]
    nonce = blob[HEADER_LENGTH:HEADER_LENGTH + NONCE_LENGTH]
    ciphertext = blob[HEADER_LENGTH + NONCE_LENGTH:]
    try:
        return AESGCM(key._material).decrypt(nonce, ciphertext, header)
    except InvalidTag:
        raise DecryptionFailed("Invalid password or corrupted data")


class KeyVault:
    """Derives keys for new saves using the configured scrypt cost."""

    def __init__(self, log_n: int = 15, r: int = 8, p: int = 1):
        self.log_n = log_n
        self.r = r
        self.p = p

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyVault":
        return cls(settings.SCRYPT_LOG_N, settings.SCRYPT_R, settings.SCRYPT_P)

    is_encrypted_blob = staticmethod(is_encrypted_blob)
    encrypt = staticmethod(encrypt)
    decrypt = staticmethod(decrypt)

    def derive_new(self, password: str) -> DerivedKey:
        return self._derive(password, os.urandom(SALT_LENGTH), self.log_n, self.r, self.p)

    def derive_from_blob(self, password: str, blob: bytes) -> DerivedKey:
        if not is_encrypted_blob(blob) or len(blob) < HEADER_LENGTH:
            raise KeyDerivationFailed("Blob has no encryption header")

        log_n, r, p = _PARAMS.unpack_from(blob, MAGIC_LENGTH)
        salt = blob[MAGIC_LENGTH + _PARAMS.size:HEADER_LENGTH]
        return self._derive(password, salt, log_n, r, p)

    @staticmethod
    def _derive(password: str, salt: bytes, log_n: int, r: int, p: int) -> DerivedKey:
        if not password:
            raise KeyDerivationFailed("Password is empty")
        if not (1 <= log_n <= MAX_LOG_N and 1 <= r <= MAX_R and 1 <= p <= MAX_P):
            raise KeyDerivationFailed(f"Unsupported KDF parameters: log_n={log_n} r={r} p={p}")
        if 128 * r * 2 ** log_n > MAX_MEMORY:
            raise KeyDerivationFailed(f"KDF parameters need too much memory: log_n={log_n} r={r}")

        try:
            kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=2 ** log_n, r=r, p=p)
            material = kdf.derive(password.encode("utf-8"))
        except Exception as e:
            logger.error("Key derivation failed: %s", e)
            raise KeyDerivationFailed(str(e)) from e
        return DerivedKey(material, salt, log_n, r, p)
