#!filepath: harness/utils/filesystem.py
import os
import shutil
from pathlib import Path
from typing import Any, Callable, List, Optional

from harness.utils.logger import logs


class FileSystem:
    """
    文件系统工具（metadata / dataset / mirror 共用）
    - 自动创建目录
    - 原子写入（临时文件 → fsync → rename）
    - durable append（flush + fsync 后才返回）
    - 删除文件/目录
    - 扫描目录
    """

    @staticmethod
    def ensure_dir(path: str | Path) -> Path:
        p = Path(path)
        if not p.exists():
            p.mkdir(parents=True, exist_ok=True)
            logs.debug(f"[FS] create dir: {p}")
        return p

    @staticmethod
    def safe_write(path: str | Path, data: bytes) -> None:
        """
        原子写入（避免部分写入导致文件损坏）
            1) 写入同目录 tmp 文件并 fsync
            2) os.replace → 正式文件
        """
        path = Path(path)
        FileSystem.ensure_dir(path.parent)

        tmp_path = path.with_name(path.name + ".tmp")

        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        logs.debug(f"[FS] atomic write done: {path}")

    @staticmethod
    def safe_dump(path: str | Path, dump: Callable[[Path], Any]) -> None:
        """
        safe_write 的回调版本：dump(tmp_path) 自己写文件（joblib.dump 等）
        失败时删除 tmp，正式文件保持原样
        """
        path = Path(path)
        FileSystem.ensure_dir(path.parent)

        tmp_path = path.with_name(path.name + ".tmp")

        try:
            dump(tmp_path)
            with open(tmp_path, "rb+") as f:
                os.fsync(f.fileno())
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

        os.replace(tmp_path, path)
        logs.debug(f"[FS] atomic dump done: {path}")

    @staticmethod
    def durable_append(path: str | Path, line: str) -> None:
        """
        追加一行并 fsync。返回即代表已落盘。
        """
        path = Path(path)
        FileSystem.ensure_dir(path.parent)

        with open(path, "a", encoding="utf-8") as f:
            f.write(line)
            if not line.endswith("\n"):
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def remove(path: str | Path) -> None:
        p = Path(path)

        if not p.exists():
            logs.debug(f"[FS] path not found, skip remove: {p}")
            return

        if p.is_dir():
            shutil.rmtree(p)
            logs.debug(f"[FS] remove dir: {p}")
        else:
            p.unlink()
            logs.debug(f"[FS] remove file: {p}")

    @staticmethod
    def scan_dir(path: str | Path, suffix: Optional[str] = None) -> List[Path]:
        """
        返回目录下所有文件（可按后缀过滤），按名称排序
        """
        p = Path(path)
        if not p.exists():
            return []

        files = []
        for f in p.iterdir():
            if f.is_file():
                if suffix is None or f.suffix == suffix:
                    files.append(f)

        return sorted(files)

    @staticmethod
    def clean_temp_files(path: str | Path, suffix=".tmp") -> int:
        """
        删除目录下所有 *.tmp 残留（crash 时 safe_write 未完成的产物）
        """
        p = Path(path)
        count = 0

        if not p.exists():
            return 0

        for f in p.rglob(f"*{suffix}"):
            f.unlink()
            count += 1
            logs.debug(f"[FS] remove temp file: {f}")

        return count
