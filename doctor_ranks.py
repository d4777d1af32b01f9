from __future__ import annotations

from typing import Optional

DOCTOR_RANKS: list[dict[str, str]] = [
    {"value": "10", "label": "ผู้อำนวยการโรงพยาบาล", "description": "Hospital Director"},
    {"value": "09", "label": "รองผู้อำนวยการโรงพยาบาล", "description": "Deputy Hospital Director"},
    {"value": "08", "label": "ผู้ช่วยผู้อำนวยการโรงพยาบาล", "description": "Assistant Hospital Director"},
    {"value": "07", "label": "หัวหน้าแพทย์", "description": "Head Doctor"},
    {"value": "06", "label": "รองหัวหน้าแพทย์", "description": "Deputy Head Doctor"},
    {"value": "05", "label": "เลขานุการแพทย์", "description": "Medical Secretary"},
    {"value": "04", "label": "แพทย์ชำนาญ", "description": "Expert Doctor / Specialist Doctor"},
    {"value": "03", "label": "แพทย์ปี 3", "description": "Doctor Year 3"},
    {"value": "02", "label": "แพทย์ปี 2", "description": "Doctor Year 2"},
    {"value": "01", "label": "แพทย์ปี 1", "description": "Doctor Year 1"},
    {"value": "00", "label": "นักเรียนแพทย์", "description": "Medical Student"},
]

_RANKS_BY_VALUE = {rank["value"]: rank for rank in DOCTOR_RANKS}


def rank_label(value: Optional[str]) -> str:
    if not value:
        return "-"
    rank = _RANKS_BY_VALUE.get(value)
    return rank["label"] if rank else value


def rank_description(value: Optional[str]) -> str:
    if not value:
        return ""
    rank = _RANKS_BY_VALUE.get(value)
    return rank["description"] if rank else ""


def format_doctor(doctor: dict) -> str:
    """Render a participant as ``Name (rank label)`` for chat messages."""
    name = doctor.get("name") or "-"
    rank = doctor.get("doctorRank")
    if rank:
        return f"{name} ({rank_label(rank)})"
    return name
