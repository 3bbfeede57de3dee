#!filepath: harness/config/app_config.py
import os

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .log_config import LogConfig
from .server_config import ServerConfig, TrainingConfig
from .store_config import MirrorConfig, StoreConfig


def project_root() -> str:
    """
    harness/config/app_config.py → harness/config → harness → project_root
    """
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "../../"))


# env 变量 → (section, key)
_ENV_OVERRIDES = {
    "HARNESS_STORE_ROOT": ("store", "root"),
    "HARNESS_MIRROR_ROOT": ("mirror", "root"),
    "HARNESS_HOST": ("server", "host"),
    "HARNESS_PORT": ("server", "port"),
}


class AppConfig(BaseModel):
    log: LogConfig = Field(default_factory=LogConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    mirror: MirrorConfig = Field(default_factory=MirrorConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    training: TrainingConfig = Field(default_factory=TrainingConfig)

    @classmethod
    def load(cls, path: str | None = None) -> "AppConfig":
        """
        加载 YAML 配置 + .env
        - 默认使用 harness/config/base.yml
        - 不依赖当前工作目录
        """
        root = project_root()
        load_dotenv(os.path.join(root, ".env"))

        if path is None:
            path = os.path.join(root, "harness/config/base.yml")

        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        for env_key, (section, key) in _ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value:
                raw.setdefault(section, {})[key] = value

        return cls(**raw)
