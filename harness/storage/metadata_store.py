# harness/storage/metadata_store.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple

import pydantic

from harness.core.types import EngineRecord
from harness.utils.errors import StorageFailure
from harness.utils.filesystem import FileSystem
from harness.utils.logger import logs
from harness.utils.retry import Retry


class MetadataStore:
    """
    One JSON record per engine instance: <root>/engines/<engineId>.json

    - save() is an atomic replace, retried on OSError
    - load_all() never raises on a single bad record, it reports it
    """

    SUFFIX = ".json"

    def __init__(self, root: str | Path, *, max_attempts: int = 3, delay: float = 0.05):
        self.dir = Path(root) / "engines"
        self.max_attempts = max_attempts
        self.delay = delay

    def path_for(self, engine_id: str) -> Path:
        return self.dir / f"{engine_id}{self.SUFFIX}"

    def save(self, record: EngineRecord) -> None:
        path = self.path_for(record.engine_id)
        try:
            Retry.run(
                FileSystem.safe_write,
                path,
                record.to_json().encode("utf-8"),
                exceptions=(OSError,),
                max_attempts=self.max_attempts,
                delay=self.delay,
            )
        except OSError as e:
            raise StorageFailure(
                f"metadata write failed: {e}", engine_id=record.engine_id
            ) from e

    def load(self, engine_id: str) -> EngineRecord | None:
        path = self.path_for(engine_id)
        if not path.exists():
            return None
        return self._read(path)

    def delete(self, engine_id: str) -> None:
        try:
            FileSystem.remove(self.path_for(engine_id))
        except OSError as e:
            raise StorageFailure(
                f"metadata delete failed: {e}", engine_id=engine_id
            ) from e

    def load_all(self) -> Tuple[List[EngineRecord], Dict[str, str]]:
        """
        Returns (records, bad) where bad maps file name → reason.
        """
        FileSystem.clean_temp_files(self.dir)

        records: List[EngineRecord] = []
        bad: Dict[str, str] = {}
        for path in FileSystem.scan_dir(self.dir, suffix=self.SUFFIX):
            try:
                records.append(self._read(path))
            except (OSError, ValueError) as e:
                logs.error(f"[MetadataStore] unreadable record {path.name}: {e}")
                bad[path.name] = str(e)
        return records, bad

    @staticmethod
    def _read(path: Path) -> EngineRecord:
        try:
            return EngineRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except pydantic.ValidationError as e:
            raise ValueError(f"invalid metadata record: {e.error_count()} error(s)") from e
