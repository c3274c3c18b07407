"""
Seams to the collaborators a profile drives but doesn't own: the tox
runtime, the chat history database and whatever shows errors to the user.
"""
import logging
from pathlib import Path
from typing import List, Optional, Protocol
from toxvault.core.models import BootstrapResult, HistoryEntry, RuntimeEvent

logger = logging.getLogger(__name__)


class ToxRuntime(Protocol):
    def bootstrap(self, save_data: bytes) -> BootstrapResult: ...

    def serialize_state(self) -> bytes: ...

    def self_public_key(self) -> bytes: ...

    def friend_public_keys(self) -> List[bytes]: ...

    def friend_public_key(self, friend_id: int) -> bytes: ...

    def set_username(self, name: str) -> None: ...

    def set_status_message(self, message: str) -> None: ...

    def answer_avatar_offer(self, friend_id: int, file_id: int, accept: bool, file_size: int) -> None: ...

    def poll_events(self) -> List[RuntimeEvent]: ...


class ChatDatabase(Protocol):
    @property
    def is_open(self) -> bool: ...

    def set_password(self, new_password: str) -> bool: ...

    def rename(self, new_name: str) -> bool: ...

    def remove(self) -> bool: ...

    def add_message(self, friend_pk: bytes, sender_pk: bytes, body: str, is_action: bool = False) -> None: ...

    def get_messages(self, friend_pk: bytes) -> List[HistoryEntry]: ...


class DatabaseFactory(Protocol):
    def __call__(self, path: Path, password: str, salt: bytes) -> Optional[ChatDatabase]: ...


class ErrorReporter(Protocol):
    def show_error(self, title: str, message: str) -> None: ...


class LoggingErrorReporter:
    """Default reporter for headless use."""

    def show_error(self, title: str, message: str) -> None:
        logger.error("%s: %s", title, message)
