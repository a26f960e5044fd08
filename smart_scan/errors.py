"""Failure kinds raised by the indexing and decision engine.

Per-item failures (decode, embed, store, move) are caught at the item
boundary by the pipeline and only logged. DimensionMismatch is fatal to a
run because similarities cannot be computed across differing lengths.
"""


class ScanError(Exception):
    """Base class for all engine failures."""


class DecodeFailure(ScanError):
    """Media is missing, unreadable, or yields no frames."""


class EmbedFailure(ScanError):
    """Model inference failed."""


class NotInitialized(EmbedFailure):
    """An encoder was used before load() or after close()."""


class StoreFailure(ScanError):
    """Embedding or repository persistence failed."""


class MoveFailure(ScanError):
    """A file could not be moved to or from its destination."""


class DimensionMismatch(ScanError):
    def __init__(self, expected: int, actual: int | None = None, where: str = ""):
        self.expected = expected
        self.actual = actual
        detail = f" in {where}" if where else ""
        if actual is None:
            msg = f"Data is not a whole number of length-{expected} embedding records{detail}"
        else:
            msg = f"Expected embedding length {expected} but found {actual}{detail}"
        super().__init__(msg)
