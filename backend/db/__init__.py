from .sqlite_client import (
    Base,
    Machine,
    MachineStatus,
    SQLiteClient,
    StatusColor,
    create_sqlite_client,
)

__all__ = [
    "Base",
    "Machine",
    "MachineStatus",
    "SQLiteClient",
    "StatusColor",
    "create_sqlite_client",
]
