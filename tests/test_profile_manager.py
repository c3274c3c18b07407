import json
import threading
import pytest
from toxvault.client import profile as profile_module
from toxvault.client.profile import Profile
from toxvault.client.profile_manager import ProfileManager, is_profile_encrypted, list_profiles
from toxvault.core.errors import ContractViolation, KeyDerivationFailed
from toxvault.core.key_vault import MAGIC, KeyVault
from toxvault.core.lock_manager import LockManager
from toxvault.core.models import BootstrapResult, CreateError, LoadError, LockResult, SaveError


def test_create_save_load_plain(manager, make_manager, settings):
    alice = manager.create("alice", "")
    assert isinstance(alice, Profile)
    assert not alice.is_encrypted
    assert settings.save_path("alice").exists()
    assert settings.ini_path("alice").exists()
    assert alice.runtime.username == "alice"

    alice.runtime.status_message = "busy"
    assert alice.save()
    state = alice.runtime.serialize_state()
    alice.close()

    loaded = make_manager().load("alice", "")
    assert isinstance(loaded, Profile)
    assert not loaded.is_encrypted
    assert not loaded.is_new
    assert loaded.runtime.serialize_state() == state
    assert loaded.verify_encryption_state()
    loaded.close()


def test_encrypted_profile_needs_right_password(manager, make_manager, settings, reporter):
    bob = manager.create("bob", "secret")
    assert bob.is_encrypted
    assert is_profile_encrypted("bob", settings)
    bob.close()

    other = make_manager()
    assert other.load("bob", "") is LoadError.ENCRYPTED_NO_PASSWORD
    assert other.load("bob", "wrong") is LoadError.DECRYPTION_FAILED
    assert not other.locks.has_lock
    assert ("Error", LoadError.DECRYPTION_FAILED.value) in reporter.errors

    loaded = other.load("bob", "secret")
    assert isinstance(loaded, Profile)
    assert loaded.is_encrypted
    assert loaded.runtime.username == "bob"
    loaded.close()


def test_set_password_encrypts_profile(manager, make_manager):
    alice = manager.create("alice", "")
    assert alice.set_password("new") == ""
    assert alice.is_encrypted
    assert alice.verify_encryption_state()
    alice.close()

    other = make_manager()
    assert other.load("alice", "") is LoadError.ENCRYPTED_NO_PASSWORD
    loaded = other.load("alice", "new")
    assert isinstance(loaded, Profile)
    assert loaded.is_history_enabled
    loaded.close()


def test_set_empty_password_decrypts_profile(manager, make_manager, settings):
    bob = manager.create("bob", "secret")
    assert bob.set_password("") == ""
    assert not bob.is_encrypted
    assert not is_profile_encrypted("bob", settings)
    bob.close()

    loaded = make_manager().load("bob", "")
    assert isinstance(loaded, Profile)
    assert loaded.is_history_enabled
    loaded.close()


def test_removed_profile_is_inert(manager, settings):
    alice = manager.create("alice", "secret")
    alice.set_avatar(b"avatar")
    assert alice.remove() == []
    for path in (settings.save_path("alice"), settings.ini_path("alice"), settings.db_path("alice")):
        assert not path.exists()
    assert list(settings.avatar_dir.iterdir()) == []

    assert not alice.save()
    assert not settings.save_path("alice").exists()
    assert not alice.set_avatar(b"avatar")
    assert alice.load_avatar_data() == b""
    assert alice.remove() == []
    assert not manager.locks.has_lock


def test_create_refuses_existing_and_locked(manager, make_manager, settings):
    manager.create("alice", "").close()
    assert make_manager().create("alice", "") is CreateError.ALREADY_EXISTS

    holder = LockManager(settings)
    holder.acquire("carol")
    assert make_manager().create("carol", "") is CreateError.LOCK_FAILED
    assert not settings.save_path("carol").exists()
    holder.release()


def test_one_profile_per_manager(manager):
    alice = manager.create("alice", "")
    assert manager.create("bob", "") is CreateError.PROFILE_LOCKED
    assert manager.load("alice", "") is LoadError.PROFILE_LOCKED
    alice.close()


def test_load_errors(manager, make_manager, settings):
    assert manager.load("nobody", "") is LoadError.FILE_NOT_FOUND
    assert not manager.locks.has_lock

    settings.save_path("empty").write_bytes(b"")
    assert manager.load("empty", "") is LoadError.FILE_IS_EMPTY

    alice = manager.create("alice", "")
    assert make_manager().load("alice", "") is LoadError.LOCK_FAILED
    alice.close()


def test_password_for_plain_save_loads_unencrypted(manager, make_manager):
    manager.create("alice", "").close()
    loaded = make_manager().load("alice", "secret")
    assert isinstance(loaded, Profile)
    assert not loaded.is_encrypted
    loaded.close()


@pytest.mark.parametrize("boot, load_error, create_error", [
    (BootstrapResult.BAD_PROXY, LoadError.BAD_PROXY, CreateError.BAD_PROXY),
    (BootstrapResult.INVALID_SAVE, LoadError.FAILED_TO_START, CreateError.FAILED_TO_START),
])
def test_bootstrap_failure_releases_lock(manager, runtime_factory, settings, boot, load_error, create_error):
    manager.create("alice", "").close()
    runtime_factory.boot_result = boot

    assert manager.load("alice", "") is load_error
    assert manager.create("bob", "") is create_error
    assert not manager.locks.has_lock
    assert not settings.ini_path("bob").exists()


def test_rename(manager, make_manager, settings):
    alice = manager.create("alice", "secret")
    assert alice.rename("alicia")
    assert alice.name == "alicia"
    assert manager.locks.held_by == "alicia"
    assert not settings.save_path("alice").exists()
    assert settings.save_path("alicia").exists()
    assert settings.ini_path("alicia").exists()
    assert settings.db_path("alicia").exists()
    assert alice.save()

    other = LockManager(settings)
    assert other.acquire("alice") is LockResult.LOCKED
    other.release()
    alice.close()

    loaded = make_manager().load("alicia", "secret")
    assert isinstance(loaded, Profile)
    assert loaded.is_history_enabled
    loaded.close()


def test_rename_to_locked_or_existing_name(manager, make_manager, settings):
    make_manager().create("bob", "").close()
    alice = manager.create("alice", "")
    assert not alice.rename("bob")

    holder = LockManager(settings)
    holder.acquire("carol")
    assert not alice.rename("carol")
    holder.release()

    assert alice.name == "alice"
    assert manager.locks.held_by == "alice"
    assert settings.save_path("alice").exists()
    assert not settings.save_path("carol").exists()
    alice.close()


def test_list_profiles(manager, make_manager, settings):
    assert list_profiles(settings) == []
    manager.create("zoe", "").close()
    make_manager().create("adam", "secret").close()
    (settings.SETTINGS_DIR / "notes.txt").write_text("ignored")
    assert manager.list_profiles() == ["adam", "zoe"]


def test_save_failure_keeps_previous_file(manager, settings, monkeypatch):
    alice = manager.create("alice", "")
    before = settings.save_path("alice").read_bytes()

    monkeypatch.setattr(profile_module, "atomic_write", lambda path, data: False)
    alice.runtime.username = "changed"
    assert not alice.save()
    assert alice.last_save_error is SaveError.WRITE_FAILED
    assert settings.save_path("alice").read_bytes() == before
    monkeypatch.undo()
    alice.close()


def test_empty_serialization_is_a_contract_violation(manager, monkeypatch):
    alice = manager.create("alice", "")
    monkeypatch.setattr(alice.runtime, "serialize_state", lambda: b"")
    with pytest.raises(ContractViolation):
        alice.save()
    monkeypatch.undo()
    alice.close()


def test_concurrent_saves_serialize(manager, settings):
    bob = manager.create("bob", "secret")
    results = []

    def worker():
        for _ in range(5):
            results.append(bob.save())

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(results) and len(results) == 20
    bob.close()
    blob = settings.save_path("bob").read_bytes()
    key = manager.vault.derive_from_blob("secret", blob)
    assert json.loads(manager.vault.decrypt(key, blob))["username"] == "bob"


def test_load_unreadable_save(manager, settings):
    settings.SETTINGS_DIR.mkdir(parents=True, exist_ok=True)
    settings.save_path("alice").mkdir()
    assert manager.load("alice", "") is LoadError.COULD_NOT_READ_FILE
    assert not manager.locks.has_lock


def test_load_truncated_encrypted_header(manager, settings, reporter):
    settings.SETTINGS_DIR.mkdir(parents=True, exist_ok=True)
    settings.save_path("alice").write_bytes(MAGIC + b"\x0f")
    assert manager.load("alice", "secret") is LoadError.KEY_DERIVATION_FAILED
    assert not manager.locks.has_lock
    assert reporter.errors[-1] == ("Error", LoadError.KEY_DERIVATION_FAILED.value)


def test_create_key_derivation_failure_writes_nothing(manager, settings, monkeypatch):
    def fail(password):
        raise KeyDerivationFailed("scrypt failed")

    monkeypatch.setattr(manager.vault, "derive_new", fail)
    assert manager.create("alice", "secret") is CreateError.KEY_DERIVATION_FAILED
    assert not manager.locks.has_lock
    assert not settings.save_path("alice").exists()
    assert not settings.ini_path("alice").exists()


def test_lock_io_error_aborts_load_and_create(manager, settings, tmp_path):
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("")
    settings.SETTINGS_DIR = not_a_dir
    assert manager.load("alice", "") is LoadError.LOCK_FAILED
    assert manager.create("alice", "") is CreateError.LOCK_FAILED
    assert not manager.locks.has_lock


def test_rename_and_remove_with_closed_history(manager, runtime_factory, settings, reporter):
    manager.create("alice", "").close()
    assert settings.db_path("alice").exists()

    no_history = ProfileManager(
        runtime_factory, settings=settings, reporter=reporter, database_factory=lambda path, password, salt: None
    )
    alice = no_history.load("alice", "")
    assert alice.database is None

    assert alice.rename("alicia")
    assert not settings.db_path("alice").exists()
    assert settings.db_path("alicia").exists()

    assert alice.remove() == []
    assert not settings.db_path("alicia").exists()
    assert list(settings.SETTINGS_DIR.glob("*.db")) == []


def test_save_during_failed_password_change_uses_old_key(manager, settings, monkeypatch):
    alice = manager.create("alice", "")
    real_write = profile_module.atomic_write
    writes = []

    def flaky_write(path, data):
        writes.append(data)
        return len(writes) > 1 and real_write(path, data)

    serialize = alice.runtime.serialize_state
    waiting = []

    def serialize_and_race():
        if not waiting:
            other = threading.Thread(target=alice.save)
            other.start()
            other.join(timeout=0.2)
            waiting.append(other)
            # the other save must wait for the password change to finish
            assert other.is_alive()
        return serialize()

    monkeypatch.setattr(profile_module, "atomic_write", flaky_write)
    monkeypatch.setattr(alice.runtime, "serialize_state", serialize_and_race)
    assert alice.set_password("secret") == "Couldn't save the profile with the new password."
    waiting[0].join()

    assert not alice.is_encrypted
    assert len(writes) == 2
    assert not KeyVault.is_encrypted_blob(writes[1])
    assert alice.verify_encryption_state()
    monkeypatch.undo()
    alice.close()
