"""
Database repair engine.
"""
from yamisskey_doctor.repair.engine import ORPHAN_REPAIRS, OrphanRepair, RepairEngine, RepairFilter

__all__ = [
    "ORPHAN_REPAIRS",
    "OrphanRepair",
    "RepairEngine",
    "RepairFilter",
]
