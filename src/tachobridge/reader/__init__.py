"""Smart card reader monitoring.

The pyscard implementation lives in :mod:`tachobridge.reader.pcsc` and is
imported on demand, so the rest of the package works without a PC/SC stack.
"""

from tachobridge.reader.backend import ChangeSet, ChangeSource, ReaderBackend
from tachobridge.reader.monitor import ObservationCallback, ReaderMonitor, ReaderWatcher

__all__ = [
    "ChangeSet",
    "ChangeSource",
    "ObservationCallback",
    "ReaderBackend",
    "ReaderMonitor",
    "ReaderWatcher",
]
