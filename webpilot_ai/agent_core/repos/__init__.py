"""Repository interfaces and SQL implementations for agent persistence.

The repository layer is the persistence boundary for the agent runner.

Responsibilities
----------------

- Provide a small set of async repository interfaces (Protocols) that the
  engine, run service and worker depend on.
- Persist the run record (status, prompt, checkpoint blob, log lines), the
  append-only audit trail, and session/long-term memory.

Design notes
------------

The runtime is written against interfaces so it can be used with:

- a SQL database (async SQLAlchemy implementation in ``repos.sql``),
- in-memory fakes for unit tests,
- ``NotProvisionedMemoryRepository`` when the memory tables do not exist.

The SQL implementation commits at repository-method boundaries, so each
checkpoint write is atomic.
"""

from .interfaces import AuditRepository, MemoryRepository, RunRepository
from .unprovisioned import NotProvisionedMemoryRepository

__all__ = [
    "RunRepository",
    "AuditRepository",
    "MemoryRepository",
    "NotProvisionedMemoryRepository",
]
