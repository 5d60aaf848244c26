from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Dict, Any


@dataclass
class PatientInfo:
    """Patient metadata carried through to the report; opaque to the screening core."""

    name: str = ""
    id: str = ""
    age: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PatientInfo":
        return PatientInfo(
            name=str(d.get("name") or ""),
            id=str(d.get("id") or ""),
            age=str(d.get("age") or ""),
            notes=str(d.get("notes") or ""),
        )
