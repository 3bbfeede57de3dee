from harness.config.store_config import StoreConfig

from .document_store import (
    Collection,
    DocumentStore,
    FileDocumentStore,
    MemoryDocumentStore,
)
from .metadata_store import MetadataStore


def build_document_store(cfg: StoreConfig) -> DocumentStore:
    if cfg.backend == "memory":
        return MemoryDocumentStore()
    return FileDocumentStore(f"{cfg.root}/datasets")


__all__ = [
    "Collection",
    "DocumentStore",
    "FileDocumentStore",
    "MemoryDocumentStore",
    "MetadataStore",
    "build_document_store",
]
