"""Connection capability implementations.

Only SQLite ships with fluentdb, over the stdlib ``sqlite3`` driver. Other
databases plug in by implementing :mod:`fluentdb.connection`.
"""

from fluentdb.adapters.sqlite import SQLitePool

__all__ = ["SQLitePool"]
