#!filepath: harness/config/server_config.py
from pydantic import BaseModel


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 9090


class TrainingConfig(BaseModel):
    # False: continuous 更新入队后立即返回，不等待结果
    wait_for_incremental: bool = True
