import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional
from toxvault.core.atomic_file import atomic_write
from toxvault.core.config import Settings
from toxvault.core.errors import ContractViolation, KeyDerivationFailed
from toxvault.core.key_vault import MAGIC_LENGTH, DerivedKey, KeyVault, is_encrypted_blob
from toxvault.core.lock_manager import LockManager
from toxvault.core.models import (
    AvatarOfferReceived,
    FriendAvatarChanged,
    FriendAvatarRemoved,
    FriendRequestSent,
    LockResult,
    RuntimeEvent,
    SaveError,
    SaveRequested,
)
from .avatar_store import AvatarStore
from .runtime import ChatDatabase, DatabaseFactory, ErrorReporter, ToxRuntime

logger = logging.getLogger(__name__)


class Profile:
    """
    A loaded profile: the tox save, its avatar cache and chat history.

    Instances come from ProfileManager.load() / create() and already hold
    the profile lock. After remove() the instance is inert: saves and
    avatar changes are refused.
    """

    def __init__(
        self,
        name: str,
        key: Optional[DerivedKey],
        settings: Settings,
        locks: LockManager,
        vault: KeyVault,
        runtime: ToxRuntime,
        reporter: ErrorReporter,
        is_new: bool = False,
    ):
        self.name = name
        self.settings = settings
        self.is_new = is_new
        self.is_removed = False
        self.is_closed = False
        self.database: Optional[ChatDatabase] = None
        self.last_save_error: Optional[SaveError] = None
        self._key = key
        self._locks = locks
        self._vault = vault
        self._runtime = runtime
        self._reporter = reporter
        self._save_lock = threading.RLock()
        self._avatars: Optional[AvatarStore] = None
        self._handlers: Dict[type, Callable] = {
            SaveRequested: self._on_save_requested,
            FriendAvatarChanged: self._on_friend_avatar_changed,
            FriendAvatarRemoved: self._on_friend_avatar_removed,
            AvatarOfferReceived: self._on_avatar_offer_received,
            FriendRequestSent: self._on_friend_request_sent,
        }

    @property
    def is_encrypted(self) -> bool:
        return self._key is not None

    @property
    def save_path(self) -> Path:
        return self.settings.save_path(self.name)

    @property
    def runtime(self) -> ToxRuntime:
        return self._runtime

    @property
    def avatars(self) -> AvatarStore:
        if self._avatars is None:
            self._avatars = AvatarStore(self.settings.avatar_dir, self._runtime.self_public_key(), self._key)
        return self._avatars

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- 存档 ---

    def save(self) -> bool:
        """
        Serialize the runtime state and write it, encrypted if needed.

        Concurrent calls are serialized. On failure the previous save file is
        left untouched and `last_save_error` tells why.
        """
        with self._save_lock:
            if self.is_removed or self.is_closed:
                logger.warning("Refusing to save %s profile %s", "removed" if self.is_removed else "closed", self.name)
                return False
            self._locks.assert_held(self.name)

            data = self._runtime.serialize_state()
            if not data:
                raise ContractViolation("Runtime returned an empty save")

            if self._key is not None:
                try:
                    data = self._vault.encrypt(self._key, data)
                except Exception as e:
                    logger.critical("Failed to encrypt, can't save: %s", e)
                    self.last_save_error = SaveError.ENCRYPTION_FAILED
                    return False

            logger.debug("Saving tox save to %s", self.save_path)
            if not atomic_write(self.save_path, data):
                logger.critical("Failed to write, can't save")
                self.last_save_error = SaveError.WRITE_FAILED
                return False

            self.last_save_error = None
            self.is_new = False
            return True

    def verify_encryption_state(self) -> bool:
        """Check that the save file on disk matches `is_encrypted`."""
        try:
            with open(self.save_path, "rb") as f:
                header = f.read(MAGIC_LENGTH)
        except OSError as e:
            logger.warning("Couldn't open tox save %s: %s", self.save_path, e)
            return False
        on_disk = is_encrypted_blob(header)
        if on_disk != self.is_encrypted:
            logger.error(
                "Profile %s is %sencrypted in memory but %sencrypted on disk",
                self.name, "" if self.is_encrypted else "not ", "" if on_disk else "not ",
            )
            return False
        return True

    def close(self):
        """Save and release the lock. No-op on removed or closed profiles."""
        if self.is_removed or self.is_closed:
            return
        self.save()
        self._locks.release()
        self.is_closed = True

    # --- 重命名 / 删除 ---

    def rename(self, new_name: str) -> bool:
        if self.is_removed or self.is_closed or not new_name or new_name == self.name:
            return False
        if self.settings.save_path(new_name).exists():
            logger.warning("Can't rename %s, profile %s already exists", self.name, new_name)
            return False

        old_name = self.name
        db_renamed = []

        def migrate():
            moved = []
            # an open database moves itself, a closed one is just a file
            extensions = ("tox", "ini") if self.database is not None else ("tox", "ini", "db")
            try:
                for ext in extensions:
                    src = self.settings.profile_path(old_name, ext)
                    if src.exists():
                        dst = self.settings.profile_path(new_name, ext)
                        src.rename(dst)
                        moved.append((src, dst))
            except OSError:
                for src, dst in reversed(moved):
                    dst.rename(src)
                raise
            if self.database is not None:
                db_renamed.append(self.database.rename(new_name))

        with self._save_lock:
            try:
                result = self._locks.transfer(new_name, migrate)
            except OSError as e:
                logger.error("Failed to rename profile %s to %s: %s", old_name, new_name, e)
                return False
            if result is not LockResult.LOCKED:
                logger.warning("Failed to lock profile %s", new_name)
                return False
            self.name = new_name

        if db_renamed and not db_renamed[0]:
            self._reporter.show_error("Error", "Couldn't rename the chat history of this profile.")
        logger.info("Renamed profile %s to %s", old_name, new_name)
        return True

    def remove(self) -> List[str]:
        """
        Delete all files of this profile and release its lock.

        Returns the paths that could not be deleted.
        """
        with self._save_lock:
            if self.is_removed:
                logger.warning("Profile %s is already removed", self.name)
                return []
            self.is_removed = True

        logger.info("Removing profile %s", self.name)
        owners = self._avatar_owners()
        if self._locks.held_by == self.name:
            self._locks.release()

        failed = []
        for path in (self.save_path, self.settings.ini_path(self.name)):
            if not _remove_file(path):
                failed.append(str(path))

        for owner in owners:
            for encrypted in (True, False):
                path = self.avatars.path_for(owner, encrypted)
                if not _remove_file(path):
                    failed.append(str(path))

        db_path = self.settings.db_path(self.name)
        if self.database is not None and self.database.is_open:
            if not self.database.remove() and db_path.exists():
                failed.append(str(db_path))
        elif not _remove_file(db_path):
            failed.append(str(db_path))
        self.database = None

        for path in failed:
            logger.warning("Could not remove file %s", path)
        return failed

    # --- 密码 ---

    def set_password(self, new_password: str) -> str:
        """
        Change the password and re-encrypt the save, the avatars and the chat
        history with it. An empty password decrypts the profile.

        Returns an empty string on success or an error message. A failure to
        re-key the chat history is reported but the save file and avatars keep
        the new password.
        """
        if self.is_removed:
            return "The profile has been removed."

        new_key = None
        if new_password:
            try:
                new_key = self._vault.derive_new(new_password)
            except KeyDerivationFailed:
                logger.critical("Failed to derive key from password, the profile won't use the new password")
                return "Failed to derive key from password, the profile won't use the new password."

        owners = self._avatar_owners()
        old_store = self.avatars
        cached = {owner: old_store.load(owner) for owner in owners}
        old_paths = {owner: old_store.path_for(owner, old_store.encrypted) for owner in owners}

        with self._save_lock:
            old_key = self._key
            self._key = new_key
            self._avatars = AvatarStore(old_store.avatar_dir, old_store.self_public_key, new_key)

            if not self.save():
                # the old save is still on disk, keep using the old key for it
                self._key = old_key
                self._avatars = old_store
                message = "Couldn't save the profile with the new password."
                self._reporter.show_error("Error", message)
                return message

        error = ""
        if self.database is None or not self.database.set_password(new_password):
            error = "Couldn't change database password, it may be corrupted or use the old password."

        for owner, data in cached.items():
            new_path = self._avatars.path_for(owner, self._avatars.encrypted)
            self._avatars.save(owner, data)
            if old_paths[owner] != new_path:
                _remove_file(old_paths[owner])

        if error:
            self._reporter.show_error("Error", error)
        return error

    # --- 头像 ---

    def load_avatar_data(self, owner: Optional[bytes] = None) -> bytes:
        if self.is_removed:
            return b""
        return self.avatars.load(owner or self._runtime.self_public_key())

    def get_avatar_hash(self, owner: bytes) -> bytes:
        return self.avatars.hash_of(owner)

    def set_avatar(self, data: bytes) -> bool:
        return self._store_avatar(self._runtime.self_public_key(), data)

    def set_friend_avatar(self, owner: bytes, data: bytes) -> bool:
        return self._store_avatar(owner, data)

    def remove_avatar(self, owner: Optional[bytes] = None) -> bool:
        if self.is_removed:
            logger.warning("Refusing to change avatars of removed profile %s", self.name)
            return False
        return self.avatars.remove(owner or self._runtime.self_public_key())

    def _store_avatar(self, owner: bytes, data: bytes) -> bool:
        if self.is_removed:
            logger.warning("Refusing to change avatars of removed profile %s", self.name)
            return False
        return self.avatars.save(owner, data)

    def _avatar_owners(self) -> List[bytes]:
        return [self._runtime.self_public_key(), *self._runtime.friend_public_keys()]

    # --- 聊天记录 ---

    def load_database(self, password: str, factory: DatabaseFactory) -> None:
        if self.is_removed:
            logger.debug("Can't load database of removed profile")
            return

        salt = self._runtime.self_public_key()
        if len(salt) != 32:
            logger.warning("Couldn't compute salt from public key %s", self.name)
            self._reporter.show_error("Error", "Couldn't open your chat logs, they will be disabled.")
            return

        database = factory(self.settings.db_path(self.name), password, salt)
        if database is not None and database.is_open:
            self.database = database
        else:
            logger.warning("Failed to open database for profile %s", self.name)
            self._reporter.show_error("Error", "Couldn't open your chat logs, they will be disabled.")

    @property
    def is_history_enabled(self) -> bool:
        return self.database is not None and self.database.is_open

    # --- runtime 事件 ---

    def process_events(self) -> int:
        """Drain the runtime's event queue. Returns the number handled."""
        events = self._runtime.poll_events()
        for event in events:
            self.handle_event(event)
        return len(events)

    def handle_event(self, event: RuntimeEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for runtime event %r", event)
            return
        handler(event)

    def _on_save_requested(self, event: SaveRequested):
        self.save()

    def _on_friend_avatar_changed(self, event: FriendAvatarChanged):
        self.set_friend_avatar(event.owner_id, event.data)

    def _on_friend_avatar_removed(self, event: FriendAvatarRemoved):
        self.remove_avatar(event.owner_id)

    def _on_avatar_offer_received(self, event: AvatarOfferReceived):
        # accept if we don't have it already
        owner = self._runtime.friend_public_key(event.friend_id)
        accept = self.get_avatar_hash(owner) != event.avatar_hash
        self._runtime.answer_avatar_offer(event.friend_id, event.file_id, accept, event.file_size)

    def _on_friend_request_sent(self, event: FriendRequestSent):
        if not self.is_history_enabled:
            return
        text = f'/me offers friendship, "{event.message}"'
        self.database.add_message(event.friend_pk, self._runtime.self_public_key(), text, is_action=True)


def _remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        return False
    return True
