# harness/mirror/log.py
"""
Mirror Log

Append-only per-instance archive of raw accepted events:

    <mirrorLocation>/<engineId>/events.jsonl
    {"seq": 1, "eventTime": ..., "creationTime": ..., "event": {...raw...}}
    {"retract": 1}

- record() returns only after the line is fsync'ed (durable before ack)
- appends for one engine id are serialized, so seq is monotonic and gapless
- an event mirrored but then refused by the engine is retracted with a
  tombstone line; its seq stays used and read() no longer returns it
- a torn trailing line (crash mid-write) burns its sequence number, which
  makes the crash visible through find_gaps(); nothing is auto-repaired
- disabling mirroring stops new writes, history is never deleted
- the log is never read while serving; read()/replay_into() are offline paths
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Set, Tuple

from harness.core.types import Event
from harness.utils.errors import StorageFailure, ValidationError
from harness.utils.filesystem import FileSystem
from harness.utils.keyed_lock import KeyedLock
from harness.utils.logger import logs

RETRACT_KEY = "retract"


@dataclass(frozen=True)
class MirrorRecord:
    engine_id: str
    sequence: int
    event_time: str
    creation_time: str
    event: Dict[str, Any]

    def to_line(self) -> str:
        return json.dumps(
            {
                "seq": self.sequence,
                "eventTime": self.event_time,
                "creationTime": self.creation_time,
                "event": self.event,
            },
            ensure_ascii=False,
            default=str,
        )

    @classmethod
    def from_line(cls, engine_id: str, line: str) -> "MirrorRecord":
        return cls.from_doc(engine_id, json.loads(line))

    @classmethod
    def from_doc(cls, engine_id: str, doc: Dict[str, Any]) -> "MirrorRecord":
        return cls(
            engine_id=engine_id,
            sequence=int(doc["seq"]),
            event_time=doc["eventTime"],
            creation_time=doc["creationTime"],
            event=doc["event"],
        )


@dataclass
class _Scan:
    records: List[MirrorRecord] = field(default_factory=list)
    retracted: Set[int] = field(default_factory=set)
    torn: int = 0

    @property
    def used(self) -> Set[int]:
        """Every seq that was handed out, retracted or not."""
        return {r.sequence for r in self.records} | self.retracted

    @property
    def live(self) -> List[MirrorRecord]:
        return sorted(
            (r for r in self.records if r.sequence not in self.retracted),
            key=lambda r: r.sequence,
        )


@dataclass
class _Cursor:
    next_seq: int
    dirty: bool = False


class MirrorLog:
    FILE_NAME = "events.jsonl"

    def __init__(self, default_root: str | Path):
        self.default_root = Path(default_root)
        self._guard = threading.Lock()
        self._enabled: Dict[str, bool] = {}
        self._locations: Dict[str, Path] = {}
        self._locks = KeyedLock()
        self._cursors: Dict[str, _Cursor] = {}

    # --------------------------------------------------
    # mode
    # --------------------------------------------------
    def set_mode(self, engine_id: str, enabled: bool, location: str | None = None) -> None:
        with self._guard:
            self._enabled[engine_id] = enabled
            if location:
                self._locations[engine_id] = Path(location)
            else:
                self._locations.pop(engine_id, None)
            # cursor is rebuilt from disk on next append
            self._cursors.pop(engine_id, None)
        logs.info(
            f"[MirrorLog] {engine_id} mirroring={'on' if enabled else 'off'} "
            f"path={self.path_for(engine_id)}"
        )

    def is_enabled(self, engine_id: str) -> bool:
        with self._guard:
            return self._enabled.get(engine_id, False)

    def forget(self, engine_id: str) -> None:
        """Instance destroyed: stop writing. The file and its location stay."""
        with self._guard:
            self._enabled.pop(engine_id, None)
            self._cursors.pop(engine_id, None)

    def path_for(self, engine_id: str, location: str | Path | None = None) -> Path:
        if location is not None:
            root = Path(location)
        else:
            with self._guard:
                root = self._locations.get(engine_id, self.default_root)
        return root / engine_id / self.FILE_NAME

    # --------------------------------------------------
    # write path
    # --------------------------------------------------
    def record(self, engine_id: str, event: Event) -> MirrorRecord | None:
        if not self.is_enabled(engine_id):
            return None

        path = self.path_for(engine_id)
        with self._locks.hold(engine_id):
            cursor = self._cursors.get(engine_id)
            if cursor is None or cursor.dirty:
                cursor = self._open_cursor(engine_id, path)
                self._cursors[engine_id] = cursor

            rec = MirrorRecord(
                engine_id=engine_id,
                sequence=cursor.next_seq,
                event_time=event.event_time.isoformat(),
                creation_time=event.creation_time.isoformat(),
                event=event.raw,
            )
            self._append(engine_id, path, rec.to_line(), cursor, rec.sequence)
            cursor.next_seq += 1
            return rec

    def retract(self, engine_id: str, sequence: int) -> None:
        """
        Tombstone a record whose event the engine did not accept.

        The seq is not reused. Readers skip the record and find_gaps() does
        not report it.
        """
        path = self.path_for(engine_id)
        line = json.dumps({RETRACT_KEY: sequence})
        with self._locks.hold(engine_id):
            self._append(engine_id, path, line, self._cursors.get(engine_id), sequence)
        logs.warning(f"[MirrorLog] {engine_id} retracted seq={sequence}")

    def _append(
        self, engine_id: str, path: Path, line: str, cursor: _Cursor | None, sequence: int
    ) -> None:
        try:
            FileSystem.durable_append(path, line)
        except OSError as e:
            # a partial line may be on disk, re-scan before the next append
            if cursor is not None:
                cursor.dirty = True
            logs.error(f"[MirrorLog] {engine_id} append failed at seq={sequence}: {e}")
            raise StorageFailure(f"mirror append failed: {e}", engine_id=engine_id) from e

    def _open_cursor(self, engine_id: str, path: Path) -> _Cursor:
        scan = self._scan(engine_id, path)
        next_seq = max(scan.used, default=0) + 1

        if scan.torn:
            # burn one number per torn record so the crash shows up as a gap
            next_seq += scan.torn
            logs.warning(
                f"[MirrorLog] {engine_id} found {scan.torn} torn record(s) in {path}, "
                f"continuing at seq={next_seq}"
            )

        if path.exists() and path.stat().st_size > 0:
            with open(path, "rb") as f:
                f.seek(-1, 2)
                ends_clean = f.read(1) == b"\n"
            if not ends_clean:
                FileSystem.durable_append(path, "")

        return _Cursor(next_seq=next_seq)

    # --------------------------------------------------
    # read path (offline only)
    # --------------------------------------------------
    @staticmethod
    def _scan(engine_id: str, path: Path) -> _Scan:
        scan = _Scan()
        if not path.exists():
            return scan

        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StorageFailure(f"mirror read failed: {e}", engine_id=engine_id) from e

        for n, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                doc = json.loads(line)
                if RETRACT_KEY in doc:
                    scan.retracted.add(int(doc[RETRACT_KEY]))
                else:
                    scan.records.append(MirrorRecord.from_doc(engine_id, doc))
            except (ValueError, KeyError, TypeError):
                scan.torn += 1
                logs.warning(f"[MirrorLog] {engine_id} skip torn record at line {n}")
        return scan

    def _scan_locked(self, engine_id: str, location: str | Path | None) -> _Scan:
        path = self.path_for(engine_id, location)
        with self._locks.hold(engine_id):
            return self._scan(engine_id, path)

    def read(self, engine_id: str, location: str | Path | None = None) -> List[MirrorRecord]:
        """Live records in sequence order; retracted ones are left out."""
        return self._scan_locked(engine_id, location).live

    def last_sequence(self, engine_id: str, location: str | Path | None = None) -> int:
        return max(self._scan_locked(engine_id, location).used, default=0)

    def find_gaps(self, engine_id: str, location: str | Path | None = None) -> List[int]:
        used = self._scan_locked(engine_id, location).used
        if not used:
            return []
        return [s for s in range(1, max(used) + 1) if s not in used]

    def replay_into(
        self,
        engine_id: str,
        sink: Callable[[Dict[str, Any]], Any],
        location: str | Path | None = None,
    ) -> Tuple[int, List[int]]:
        """
        Feed every live record's raw event to sink in sequence order.

        The records are read up front, so a sink that mirrors into this same
        log does not see its own appends. A record the sink rejects with
        ValidationError is skipped and its seq reported; any other error
        stops the replay.

        :return: (replayed, rejected seqs)
        """
        records = self.read(engine_id, location)
        gaps = self.find_gaps(engine_id, location)
        if gaps:
            logs.warning(f"[MirrorLog] {engine_id} replay with sequence gaps: {gaps}")

        replayed = 0
        rejected: List[int] = []
        for rec in records:
            try:
                sink(rec.event)
            except ValidationError as e:
                rejected.append(rec.sequence)
                logs.warning(f"[MirrorLog] {engine_id} replay rejected seq={rec.sequence}: {e}")
                continue
            replayed += 1

        logs.info(
            f"[MirrorLog] {engine_id} replayed {replayed} record(s), rejected {len(rejected)}"
        )
        return replayed, rejected
