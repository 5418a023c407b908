"""Key store adapters.

The scheduler depends on the abstract store only, so the SQLite file can be
replaced by another transactional backend without touching the HTTP layer.
"""

from keyrelay.adapters.key_store.base import (
    AbstractKeyStore,
    Credential,
    LeaseResult,
    LeaseStatus,
)
from keyrelay.adapters.key_store.sqlite import SQLiteKeyStore

__all__ = [
    "AbstractKeyStore",
    "Credential",
    "LeaseResult",
    "LeaseStatus",
    "SQLiteKeyStore",
]
