import functools
import logging
from typing import Callable, List, Optional, Tuple, Union
from toxvault.core.config import Settings, get_settings
from toxvault.core.errors import DecryptionFailed, KeyDerivationFailed
from toxvault.core.key_vault import MAGIC_LENGTH, DerivedKey, KeyVault
from toxvault.core.lock_manager import LockManager
from toxvault.core.models import BootstrapResult, CreateError, LoadError, LockResult
from .database import HistoryDatabase
from .profile import Profile
from .runtime import DatabaseFactory, ErrorReporter, LoggingErrorReporter, ToxRuntime

logger = logging.getLogger(__name__)


def list_profiles(settings: Settings) -> List[str]:
    """Names of all profiles with a save file, scanned fresh on every call."""
    settings_dir = settings.SETTINGS_DIR
    if not settings_dir.is_dir():
        return []
    return sorted(p.stem for p in settings_dir.glob("*.tox") if p.is_file())


def profile_exists(name: str, settings: Settings) -> bool:
    return settings.save_path(name).exists()


def is_profile_encrypted(name: str, settings: Settings) -> bool:
    """Checks the save file on disk, reading only its magic header."""
    path = settings.save_path(name)
    try:
        with open(path, "rb") as f:
            header = f.read(MAGIC_LENGTH)
    except OSError:
        logger.warning("Couldn't open tox save %s", path)
        return False
    return KeyVault.is_encrypted_blob(header)


class ProfileManager:
    """
    Loads and creates profiles.

    Owns the process' LockManager, so at most one profile is open per
    manager. The runtime and the history database are supplied as
    factories; a fresh runtime is built for every profile.
    """

    def __init__(
        self,
        runtime_factory: Callable[[], ToxRuntime],
        settings: Optional[Settings] = None,
        database_factory: Optional[DatabaseFactory] = None,
        reporter: Optional[ErrorReporter] = None,
    ):
        self.settings = settings or get_settings()
        self.runtime_factory = runtime_factory
        self.database_factory = database_factory or functools.partial(
            HistoryDatabase, iterations=self.settings.DB_KDF_ITERATIONS
        )
        self.reporter = reporter or LoggingErrorReporter()
        self.locks = LockManager(self.settings)
        self.vault = KeyVault.from_settings(self.settings)

    def list_profiles(self) -> List[str]:
        return list_profiles(self.settings)

    def exists(self, name: str) -> bool:
        return profile_exists(name, self.settings)

    def is_encrypted(self, name: str) -> bool:
        return is_profile_encrypted(name, self.settings)

    # --- 加载 ---

    def load(self, name: str, password: str) -> Union[Profile, LoadError]:
        """
        Lock and load an existing profile and start its runtime.

        Returns the Profile, or a LoadError if the profile is in use or its
        save can't be read. The lock is released again on any failure.
        """
        if self.locks.has_lock:
            logger.critical("Tried to load profile %s, but another profile is already locked", name)
            return self._fail(LoadError.PROFILE_LOCKED)

        result = self.locks.acquire(name)
        if result is not LockResult.LOCKED:
            logger.warning("Failed to lock profile %s (%s)", name, result.value)
            return self._fail(LoadError.LOCK_FAILED)

        data, key, error = self._read_save(name, password)
        if error is not None:
            self.locks.release()
            return self._fail(error)

        profile = Profile(name, key, self.settings, self.locks, self.vault, self.runtime_factory(), self.reporter)
        boot = profile.runtime.bootstrap(data)
        if boot is not BootstrapResult.OK:
            logger.error("Failed to start runtime for %s: %s", name, boot.value)
            self.locks.release()
            return self._fail(LoadError.BAD_PROXY if boot is BootstrapResult.BAD_PROXY else LoadError.FAILED_TO_START)

        profile.load_database(password, self.database_factory)
        return profile

    def _read_save(self, name: str, password: str) -> Tuple[bytes, Optional[DerivedKey], Optional[LoadError]]:
        path = self.settings.save_path(name)
        logger.debug("Loading tox save %s", path)

        if not path.exists():
            logger.warning("The tox save file %s was not found", path)
            return b"", None, LoadError.FILE_NOT_FOUND

        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.critical("The tox save file %s couldn't be opened: %s", path, e)
            return b"", None, LoadError.COULD_NOT_READ_FILE

        if not data:
            logger.warning("The tox save file %s is empty", path)
            return b"", None, LoadError.FILE_IS_EMPTY

        if not self.vault.is_encrypted_blob(data):
            if password:
                logger.warning("We have a password, but the tox save file is not encrypted")
            return data, None, None

        if not password:
            logger.critical("The tox save file is encrypted, but we don't have a password")
            return b"", None, LoadError.ENCRYPTED_NO_PASSWORD

        try:
            key = self.vault.derive_from_blob(password, data)
        except KeyDerivationFailed:
            logger.critical("Failed to derive key of the tox save file")
            return b"", None, LoadError.KEY_DERIVATION_FAILED

        try:
            data = self.vault.decrypt(key, data)
        except DecryptionFailed:
            logger.critical("Failed to decrypt the tox save file")
            return b"", None, LoadError.DECRYPTION_FAILED
        return data, key, None

    # --- 创建 ---

    def create(self, name: str, password: str) -> Union[Profile, CreateError]:
        """
        Create a new profile, encrypted if `password` isn't empty.

        Nothing is written unless the name is free and the lock was taken.
        """
        if self.locks.has_lock:
            logger.critical("Tried to create profile %s, but another profile is already locked", name)
            return self._fail(CreateError.PROFILE_LOCKED)

        if self.exists(name):
            logger.critical("Tried to create profile %s, but it already exists", name)
            return self._fail(CreateError.ALREADY_EXISTS)

        if self.locks.acquire(name) is not LockResult.LOCKED:
            logger.warning("Failed to lock profile %s", name)
            return self._fail(CreateError.LOCK_FAILED)

        # another instance may have created it before we got the lock
        if self.exists(name):
            self.locks.release()
            logger.critical("Tried to create profile %s, but it already exists", name)
            return self._fail(CreateError.ALREADY_EXISTS)

        key = None
        if password:
            try:
                key = self.vault.derive_new(password)
            except KeyDerivationFailed:
                self.locks.release()
                logger.critical("Failed to derive key for the tox save")
                return self._fail(CreateError.KEY_DERIVATION_FAILED)

        ini_path = self.settings.ini_path(name)
        created_ini = not ini_path.exists()
        if created_ini:
            ini_path.touch()

        profile = Profile(
            name, key, self.settings, self.locks, self.vault, self.runtime_factory(), self.reporter, is_new=True
        )
        boot = profile.runtime.bootstrap(b"")
        if boot is not BootstrapResult.OK:
            logger.error("Failed to start runtime for new profile %s: %s", name, boot.value)
            if created_ini:
                ini_path.unlink(missing_ok=True)
            self.locks.release()
            return self._fail(CreateError.BAD_PROXY if boot is BootstrapResult.BAD_PROXY else CreateError.FAILED_TO_START)

        profile.runtime.set_status_message(f"Toxing on {self.settings.APP_NAME}")
        profile.runtime.set_username(name)
        if not profile.save():
            self.reporter.show_error("Error", "Couldn't write the save file of the new profile.")

        profile.load_database(password, self.database_factory)
        return profile

    def _fail(self, error):
        self.reporter.show_error("Error", error.value)
        return error
