#!filepath: harness/config/store_config.py
from typing import Literal

from pydantic import BaseModel


class StoreConfig(BaseModel):
    """
    metadata / dataset / model 的落盘位置

    backend:
      - file   : dataset 写 JSON-lines（重启后仍在）
      - memory : dataset 仅在进程内（测试 / 演示）
    metadata 始终写文件，restore_all 依赖它。
    """

    backend: Literal["file", "memory"] = "file"
    root: str = "data/harness"


class MirrorConfig(BaseModel):
    # engine 开启 mirroring 但未给 mirrorLocation 时使用
    root: str = "data/mirrors"
