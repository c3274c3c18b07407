# 客户端配置: 档案目录、KDF 参数等
# 档案锁基于 fcntl, 仅支持 POSIX 系统 (Linux / macOS)
from functools import lru_cache
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_app_data_path(app_name: str = "toxvault") -> Path:
    # Linux/Mac: /home/name/.local/share/toxvault
    return Path.home() / ".local" / "share" / app_name


class Settings(BaseSettings):
    # --- 基础配置 ---
    APP_NAME: str = "toxvault"

    # 所有档案文件 (.tox / .ini / .db / .lock) 所在目录
    SETTINGS_DIR: Path = Field(default_factory=get_app_data_path)
    AVATAR_DIR_NAME: str = "avatars"

    # --- 存档加密 (scrypt) ---
    # N = 2 ** SCRYPT_LOG_N; 参数会写入加密头, 修改后旧存档仍可解密
    SCRYPT_LOG_N: int = 15
    SCRYPT_R: int = 8
    SCRYPT_P: int = 1

    # --- 聊天记录数据库 (PBKDF2) ---
    DB_KDF_ITERATIONS: int = 600000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", env_prefix="TOXVAULT_")

    def profile_path(self, name: str, extension: str) -> Path:
        return Path(self.SETTINGS_DIR) / f"{name}.{extension}"

    def save_path(self, name: str) -> Path:
        return self.profile_path(name, "tox")

    def ini_path(self, name: str) -> Path:
        return self.profile_path(name, "ini")

    def db_path(self, name: str) -> Path:
        return self.profile_path(name, "db")

    def lock_path(self, name: str) -> Path:
        return self.profile_path(name, "lock")

    @property
    def avatar_dir(self) -> Path:
        return Path(self.SETTINGS_DIR) / self.AVATAR_DIR_NAME


# 缓存配置, 避免重复读取 .env
@lru_cache
def get_settings() -> Settings:
    return Settings()
