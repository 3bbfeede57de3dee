# harness/core/dataset.py
from __future__ import annotations

from typing import List

import pandas as pd

from harness.core.types import Event
from harness.storage.document_store import Collection, DocumentStore


class Dataset:
    """
    Per-instance accumulated events.

    Scoped to one engine id: every collection it opens lives in that
    engine's namespace, and destroy() drops the whole namespace.
    """

    EVENTS = "events"

    def __init__(self, engine_id: str, store: DocumentStore):
        self.engine_id = engine_id
        self.store = store

    def collection(self, name: str) -> Collection:
        return self.store.collection(self.engine_id, name)

    def append(self, event: Event) -> None:
        self.collection(self.EVENTS).insert(event.to_document())

    def events(self) -> List[Event]:
        return [Event.from_document(d) for d in self.collection(self.EVENTS).find()]

    def count(self) -> int:
        return self.collection(self.EVENTS).count()

    def to_frame(self) -> pd.DataFrame:
        """
        One row per event: entityType, entityId, event, targetEntityType,
        targetEntityId, eventTime (UTC), properties.
        """
        columns = [
            "entityType", "entityId", "event",
            "targetEntityType", "targetEntityId", "eventTime", "properties",
        ]
        docs = self.collection(self.EVENTS).find()
        df = pd.DataFrame(docs, columns=columns)
        if not df.empty:
            df["eventTime"] = pd.to_datetime(df["eventTime"], utc=True, format="ISO8601")
        return df

    def destroy(self) -> None:
        self.store.drop_namespace(self.engine_id)
