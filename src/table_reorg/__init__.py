"""Top-level package for table_reorg.

Staged reorganization of large relational tables: partition strategy migration,
column removal and storage relocation, with a transaction-independent audit log.
"""

__version__ = "0.1.0"

__all__ = ["config", "errors", "heuristics", "planner", "driver", "service"]
