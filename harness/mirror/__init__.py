from .log import MirrorLog, MirrorRecord

__all__ = ["MirrorLog", "MirrorRecord"]
