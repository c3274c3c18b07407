import json
import os
from typing import Dict, List, Optional
import pytest
from toxvault.core.config import Settings
from toxvault.core.models import BootstrapResult, RuntimeEvent
from toxvault.client.profile_manager import ProfileManager


class FakeRuntime:
    """In-memory stand-in for the tox runtime; its save is plain JSON."""

    def __init__(self, friends: Optional[Dict[int, bytes]] = None, boot_result=BootstrapResult.OK):
        self.public_key = os.urandom(32)
        self.friends = dict(friends or {})
        self.username = ""
        self.status_message = ""
        self.boot_result = boot_result
        self.booted_with: Optional[bytes] = None
        self.events: List[RuntimeEvent] = []
        self.offer_answers = []

    def bootstrap(self, save_data: bytes) -> BootstrapResult:
        self.booted_with = save_data
        if self.boot_result is not BootstrapResult.OK:
            return self.boot_result
        if save_data:
            state = json.loads(save_data)
            self.public_key = bytes.fromhex(state["public_key"])
            self.username = state["username"]
            self.status_message = state["status_message"]
            self.friends = {int(k): bytes.fromhex(v) for k, v in state["friends"].items()}
        return BootstrapResult.OK

    def serialize_state(self) -> bytes:
        return json.dumps({
            "public_key": self.public_key.hex(),
            "username": self.username,
            "status_message": self.status_message,
            "friends": {str(k): v.hex() for k, v in self.friends.items()},
        }, sort_keys=True).encode()

    def self_public_key(self) -> bytes:
        return self.public_key

    def friend_public_keys(self) -> List[bytes]:
        return list(self.friends.values())

    def friend_public_key(self, friend_id: int) -> bytes:
        return self.friends[friend_id]

    def set_username(self, name: str) -> None:
        self.username = name

    def set_status_message(self, message: str) -> None:
        self.status_message = message

    def answer_avatar_offer(self, friend_id, file_id, accept, file_size) -> None:
        self.offer_answers.append((friend_id, file_id, accept, file_size))

    def poll_events(self) -> List[RuntimeEvent]:
        events, self.events = self.events, []
        return events


class RecordingReporter:
    def __init__(self):
        self.errors = []

    def show_error(self, title: str, message: str) -> None:
        self.errors.append((title, message))


class RuntimeFactory:
    def __init__(self):
        self.friends: Dict[int, bytes] = {}
        self.boot_result = BootstrapResult.OK
        self.created: List[FakeRuntime] = []

    def __call__(self) -> FakeRuntime:
        runtime = FakeRuntime(self.friends, self.boot_result)
        self.created.append(runtime)
        return runtime


@pytest.fixture
def settings(tmp_path):
    return Settings(SETTINGS_DIR=tmp_path / "profiles", SCRYPT_LOG_N=4, DB_KDF_ITERATIONS=1000)


@pytest.fixture
def runtime_factory():
    return RuntimeFactory()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def make_manager(settings, runtime_factory, reporter):
    def _make():
        return ProfileManager(runtime_factory, settings=settings, reporter=reporter)
    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()
