import base64
import logging
from typing import ClassVar, Optional, List
from datetime import datetime
from pathlib import Path
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlmodel import SQLModel, Field, Session, create_engine, select
from toxvault.core.models import HistoryEntry

logger = logging.getLogger(__name__)

VALIDATION_PLAINTEXT = b"toxvault-history-v1"

# --- 1. 本地数据模型 ---

class HistoryConfig(SQLModel, table=True):
    __tablename__: ClassVar[str] = "history_config"
    __table_args__ = {"extend_existing": True}
    id: int = Field(default=1, primary_key=True)
    # 有密码时存放加密后的校验串, 用来识别错误密码
    validation_token: Optional[str] = None

class HistoryMessage(SQLModel, table=True):
    __tablename__: ClassVar[str] = "history_message"
    __table_args__ = {"extend_existing": True}
    id: Optional[int] = Field(default=None, primary_key=True)
    friend_pk: str = Field(index=True)
    sender_pk: str
    body: str
    is_action: bool = Field(default=False)
    timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())


def derive_fernet(password: str, salt: bytes, iterations: int) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(password.encode())))

# --- 数据库管理 ---

class HistoryDatabase:
    """
    Chat history of one profile, stored in `<name>.db`.

    With a password, message bodies are Fernet encrypted under a key derived
    from the password and `salt` (the profile's public key). Opening with the
    wrong password, or with a password for a plaintext database and vice
    versa, leaves the database closed.
    """

    def __init__(self, path: Path, password: str, salt: bytes, iterations: int = 600000):
        self.path = Path(path)
        self.salt = salt
        self.iterations = iterations
        self.engine = None
        self._fernet: Optional[Fernet] = None
        self._open(password)

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def _connect(self):
        db_path = self.path.as_posix()
        self.engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        SQLModel.metadata.create_all(self.engine)

    def _open(self, password: str):
        fernet = derive_fernet(password, self.salt, self.iterations) if password else None
        try:
            self._connect()
            with Session(self.engine) as session:
                config = session.get(HistoryConfig, 1)
                if config is None:
                    token = fernet.encrypt(VALIDATION_PLAINTEXT).decode("utf-8") if fernet else None
                    session.add(HistoryConfig(id=1, validation_token=token))
                    session.commit()
                elif not self._check_token(config.validation_token, fernet):
                    logger.warning("Wrong password for chat history %s", self.path)
                    self.close()
                    return
        except Exception as e:
            logger.error("Failed to open chat history %s: %s", self.path, e)
            self.close()
            return
        self._fernet = fernet
        logger.debug("Chat history opened: %s", self.path)

    @staticmethod
    def _check_token(token: Optional[str], fernet: Optional[Fernet]) -> bool:
        if token is None or fernet is None:
            return token is None and fernet is None
        try:
            return fernet.decrypt(token.encode("utf-8")) == VALIDATION_PLAINTEXT
        except InvalidToken:
            return False

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
        self.engine = None
        self._fernet = None

    # --- 消息 ---
    def _seal(self, text: str, fernet: Optional[Fernet]) -> str:
        if fernet is None:
            return text
        return fernet.encrypt(text.encode("utf-8")).decode("utf-8")

    def _unseal(self, text: str, fernet: Optional[Fernet]) -> str:
        if fernet is None:
            return text
        return fernet.decrypt(text.encode("utf-8")).decode("utf-8")

    def add_message(self, friend_pk: bytes, sender_pk: bytes, body: str, is_action: bool = False):
        if not self.engine: raise ValueError("DB not connected")
        with Session(self.engine) as session:
            session.add(HistoryMessage(
                friend_pk=friend_pk.hex().upper(),
                sender_pk=sender_pk.hex().upper(),
                body=self._seal(body, self._fernet),
                is_action=is_action,
            ))
            session.commit()

    def get_messages(self, friend_pk: bytes) -> List[HistoryEntry]:
        if not self.engine: raise ValueError("DB not connected")
        with Session(self.engine) as session:
            statement = (
                select(HistoryMessage)
                .where(HistoryMessage.friend_pk == friend_pk.hex().upper())
                .order_by(HistoryMessage.timestamp, HistoryMessage.id)
            )
            return [
                HistoryEntry(
                    friend_pk=row.friend_pk,
                    sender_pk=row.sender_pk,
                    body=self._unseal(row.body, self._fernet),
                    is_action=row.is_action,
                    timestamp=datetime.fromtimestamp(row.timestamp),
                )
                for row in session.exec(statement).all()
            ]

    # --- 密码 / 文件 ---
    def set_password(self, new_password: str) -> bool:
        """Re-key every stored message in a single transaction."""
        if not self.engine:
            return False
        new_fernet = derive_fernet(new_password, self.salt, self.iterations) if new_password else None
        try:
            with Session(self.engine) as session:
                for row in session.exec(select(HistoryMessage)).all():
                    row.body = self._seal(self._unseal(row.body, self._fernet), new_fernet)
                    session.add(row)

                config = session.get(HistoryConfig, 1)
                if config is None:
                    config = HistoryConfig(id=1)
                config.validation_token = (
                    new_fernet.encrypt(VALIDATION_PLAINTEXT).decode("utf-8") if new_fernet else None
                )
                session.add(config)
                session.commit()
        except Exception as e:
            logger.error("Failed to change chat history password: %s", e)
            return False
        self._fernet = new_fernet
        return True

    def rename(self, new_name: str) -> bool:
        if not self.engine:
            return False
        new_path = self.path.with_name(f"{new_name}.db")
        fernet = self._fernet
        self.engine.dispose()
        try:
            self.path.replace(new_path)
        except OSError as e:
            logger.error("Failed to rename chat history %s: %s", self.path, e)
            self._connect()
            return False
        self.path = new_path
        self._connect()
        self._fernet = fernet
        return True

    def remove(self) -> bool:
        self.close()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove chat history %s: %s", self.path, e)
            return False
        return True
