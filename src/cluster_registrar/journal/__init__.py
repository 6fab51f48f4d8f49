"""Hash-chained journal of calls made to the directory and the configurator."""

from cluster_registrar.journal.journal import (
    GENESIS_HASH,
    Journal,
    JournalError,
    JournalReport,
    verify_journal,
)

__all__ = [
    "GENESIS_HASH",
    "Journal",
    "JournalError",
    "JournalReport",
    "verify_journal",
]
