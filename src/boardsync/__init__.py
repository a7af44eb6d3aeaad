"""boardsync: optimistic kanban board synchronization and ordering."""

__version__ = "0.1.0"
