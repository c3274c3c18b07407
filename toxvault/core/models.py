from enum import Enum
from datetime import datetime
from typing import Union
from pydantic import BaseModel, ConfigDict, Field


# --- 操作结果 ---

class LockResult(Enum):
    LOCKED = "locked"
    ALREADY_LOCKED = "already_locked"
    IO_ERROR = "io_error"


class LoadError(Enum):
    FILE_NOT_FOUND = "The tox save file was not found"
    COULD_NOT_READ_FILE = "The tox save file couldn't be opened"
    FILE_IS_EMPTY = "The tox save file is empty"
    ENCRYPTED_NO_PASSWORD = "The tox save file is encrypted, but no password was given"
    KEY_DERIVATION_FAILED = "Failed to derive key of the tox save file"
    DECRYPTION_FAILED = "Failed to decrypt the tox save file"
    LOCK_FAILED = "The profile is already in use"
    PROFILE_LOCKED = "Another profile is already loaded"
    FAILED_TO_START = "The runtime failed to start"
    BAD_PROXY = "The proxy settings are invalid"


class CreateError(Enum):
    ALREADY_EXISTS = "A profile with this name already exists"
    LOCK_FAILED = "Failed to lock the profile"
    PROFILE_LOCKED = "Another profile is already loaded"
    KEY_DERIVATION_FAILED = "Failed to derive key for the tox save"
    FAILED_TO_START = "The runtime failed to start"
    BAD_PROXY = "The proxy settings are invalid"


class SaveError(Enum):
    ENCRYPTION_FAILED = "encryption_failed"
    WRITE_FAILED = "write_failed"


class BootstrapResult(Enum):
    OK = "ok"
    BAD_PROXY = "bad_proxy"
    ALLOC_ERROR = "alloc_error"
    INVALID_SAVE = "invalid_save"
    FAILED_TO_START = "failed_to_start"


# --- 数据模型 ---

class AvatarRecord(BaseModel):
    owner_id: bytes
    path: str
    data: bytes = b""

    @property
    def is_empty(self) -> bool:
        return not self.data


class HistoryEntry(BaseModel):
    friend_pk: str
    sender_pk: str
    body: str
    is_action: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


# --- runtime 事件 ---

class SaveRequested(BaseModel):
    model_config = ConfigDict(frozen=True)


class FriendAvatarChanged(BaseModel):
    model_config = ConfigDict(frozen=True)
    owner_id: bytes
    data: bytes


class FriendAvatarRemoved(BaseModel):
    model_config = ConfigDict(frozen=True)
    owner_id: bytes


class AvatarOfferReceived(BaseModel):
    model_config = ConfigDict(frozen=True)
    friend_id: int
    file_id: int
    avatar_hash: bytes
    file_size: int


class FriendRequestSent(BaseModel):
    model_config = ConfigDict(frozen=True)
    friend_pk: bytes
    message: str


RuntimeEvent = Union[SaveRequested, FriendAvatarChanged, FriendAvatarRemoved, AvatarOfferReceived, FriendRequestSent]
