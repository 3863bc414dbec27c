from models.base import (
    Base,
    async_session,
    engine,
    get_session,
    get_session_factory,
    make_session_factory,
)
from models.user import User, UserRole
from models.equipment import (
    DEFAULT_SECTION,
    LAUNCHABLE_STATUSES,
    EquipmentRecord,
    EquipmentStatus,
    Lifecycle,
    Priority,
)
from models.archive import ArchiveReason, EquipmentArchive
from models.history import EquipmentHistory

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "get_session_factory",
    "make_session_factory",
    "User",
    "UserRole",
    "DEFAULT_SECTION",
    "LAUNCHABLE_STATUSES",
    "EquipmentRecord",
    "EquipmentStatus",
    "Lifecycle",
    "Priority",
    "ArchiveReason",
    "EquipmentArchive",
    "EquipmentHistory",
]
