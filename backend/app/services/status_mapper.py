"""Status Mapper: JMineOps codes → internal status, malfunction text, section.

Pure data + one total function. Unknown codes never raise: they map to a
safe default (status Down, to keep the unit visible on the dashboard) and
the result is flagged with ``used_default`` so the engine can count it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from models.equipment import DEFAULT_SECTION, EquipmentStatus

if TYPE_CHECKING:
    from services.source_feed import ExternalRecord

# enum_tables.id (type='Status') → статус
STATUS_MAPPING: dict[int, EquipmentStatus] = {
    331: EquipmentStatus.Down,
    332: EquipmentStatus.Ready,
    333: EquipmentStatus.Standby,
    334: EquipmentStatus.Delay,
    335: EquipmentStatus.Shiftchange,
}

DEFAULT_STATUS = EquipmentStatus.Down

# equipment.type → (тип техники, участок)
TYPE_MAPPING: dict[str, tuple[str, str]] = {
    "Shovel": ("Экскаватор", "гусеничные техники"),
    "Dozer":  ("Бульдозер", "колесные техники"),
    "Drill":  ("Буровая установка", "легкотоннажные техники"),
    "Truck":  ("Грузовик", "колесные техники"),
    "Grader": ("Грейдер", "колесные техники"),
    "AuxE":   ("Вспомогательное оборудование", "легкотоннажные техники"),
}

# reasons.code → текст неисправности
REASON_MAPPING: dict[str, str] = {
    "ENGINE":     "Ремонт двигателя",
    "TRACK":      "Замена гусениц",
    "PM":         "Плановое ТО",
    "HYDRAULIC":  "Ремонт гидравлики",
    "ELECTRICAL": "Ремонт электрооборудования",
    "TIRE":       "Замена шин",
    "BRAKES":     "Ремонт тормозной системы",
    "TRANSMISSION": "Ремонт трансмиссии",
    "WELDING":    "Сварочные работы",
    "BUCKET":     "Ремонт ковша",
    "ACCIDENT":   "Аварийный ремонт",
}

# Причины, которые закреплены за отдельным участком независимо от типа
REASON_SECTION: dict[str, str] = {
    "TIRE":    "шиномонтажный участок",
    "WELDING": "сварочный участок",
}

NO_REASON_TEXT = "Причина не указана"


@dataclass(frozen=True)
class MappedStatus:
    status: EquipmentStatus
    malfunction: str
    equipment_type: str
    section: str
    used_default: bool = False


def map_status(status_id: int | None) -> tuple[EquipmentStatus, bool]:
    if status_id is not None and status_id in STATUS_MAPPING:
        return STATUS_MAPPING[status_id], False
    return DEFAULT_STATUS, True


def map_type(type_code: str | None) -> tuple[str, str]:
    if type_code and type_code in TYPE_MAPPING:
        return TYPE_MAPPING[type_code]
    return (type_code or "Неизвестно"), DEFAULT_SECTION


def map_reason(reason_code: str | None, reason_text: str | None) -> tuple[str, bool]:
    code = (reason_code or "").strip().upper()
    if code in REASON_MAPPING:
        return REASON_MAPPING[code], False
    if reason_text and reason_text.strip():
        return reason_text.strip(), bool(code)
    if code:
        return reason_code.strip(), True
    return NO_REASON_TEXT, False


def map_section(reason_code: str | None, type_code: str | None) -> str:
    code = (reason_code or "").strip().upper()
    if code in REASON_SECTION:
        return REASON_SECTION[code]
    if type_code and type_code in TYPE_MAPPING:
        return TYPE_MAPPING[type_code][1]
    return DEFAULT_SECTION


def map_external_record(record: ExternalRecord) -> MappedStatus:
    status, status_default = map_status(record.status_id)
    equipment_type, _ = map_type(record.equipment_type)
    section = map_section(record.reason_code, record.equipment_type)

    malfunction = ""
    reason_default = False
    if status == EquipmentStatus.Down:
        malfunction, reason_default = map_reason(record.reason_code, record.reason_text)

    return MappedStatus(
        status=status,
        malfunction=malfunction,
        equipment_type=equipment_type,
        section=section,
        used_default=status_default or reason_default,
    )
