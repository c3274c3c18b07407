import hashlib
import logging
from pathlib import Path
from typing import Optional
from toxvault.core.atomic_file import atomic_write
from toxvault.core.errors import DecryptionFailed
from toxvault.core.key_vault import DerivedKey, decrypt, encrypt
from toxvault.core.models import AvatarRecord

logger = logging.getLogger(__name__)

AVATAR_HASH_SIZE = 32


def owner_string(owner_id: bytes) -> str:
    return owner_id.hex().upper()


class AvatarStore:
    """
    Avatar cache under `<settings dir>/avatars`.

    Unencrypted profiles name files after the owner's public key. Encrypted
    profiles use a keyed BLAKE2b digest of the owner key, keyed with our own
    public key, so the directory listing doesn't reveal who our contacts are.
    """

    def __init__(self, avatar_dir: Path, self_public_key: bytes, key: Optional[DerivedKey] = None):
        self.avatar_dir = Path(avatar_dir)
        self.self_public_key = self_public_key
        self.key = key

    @property
    def encrypted(self) -> bool:
        return self.key is not None

    def path_for(self, owner_id: bytes, encrypted: bool) -> Path:
        owner_str = owner_string(owner_id)
        if not encrypted:
            return self.avatar_dir / f"{owner_str}.png"

        digest = hashlib.blake2b(owner_str.encode("utf-8"), digest_size=AVATAR_HASH_SIZE, key=self.self_public_key)
        return self.avatar_dir / f"{digest.hexdigest().upper()}.png"

    def load(self, owner_id: bytes) -> bytes:
        return self.record(owner_id).data

    def record(self, owner_id: bytes) -> AvatarRecord:
        path = self.path_for(owner_id, self.encrypted)
        avatar_encrypted = self.encrypted
        # avatars cached before the profile got a password are still plaintext
        if avatar_encrypted and not path.exists():
            avatar_encrypted = False
            path = self.path_for(owner_id, False)

        try:
            data = path.read_bytes()
        except OSError:
            return AvatarRecord(owner_id=owner_id, path=str(path))

        if avatar_encrypted and data:
            try:
                data = decrypt(self.key, data)
            except DecryptionFailed:
                logger.warning("Failed to decrypt avatar at %s", path)
                data = b""
        return AvatarRecord(owner_id=owner_id, path=str(path), data=data)

    def save(self, owner_id: bytes, data: bytes) -> bool:
        path = self.path_for(owner_id, self.encrypted)
        if not data:
            return self.remove(owner_id)

        if self.encrypted:
            data = encrypt(self.key, data)
        try:
            self.avatar_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Avatar directory %s couldn't be created: %s", self.avatar_dir, e)
            return False
        if not atomic_write(path, data):
            logger.warning("Tox avatar %s couldn't be saved", path)
            return False
        return True

    def remove(self, owner_id: bytes) -> bool:
        removed = self._unlink(self.path_for(owner_id, self.encrypted))
        # a plaintext copy from before encryption would come back through the fallback
        if self.encrypted:
            removed = self._unlink(self.path_for(owner_id, False)) and removed
        return removed

    def hash_of(self, owner_id: bytes) -> bytes:
        return hashlib.sha256(self.load(owner_id)).digest()

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove avatar %s: %s", path, e)
            return False
        return True
