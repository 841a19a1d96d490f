"""Blueprint-driven question assembly."""

from assessment_engine.core.assembly.assembler import AssemblyResult, BlueprintAssembler
from assessment_engine.core.assembly.inventory import (
    InventoryAnalyzer,
    InventoryHealth,
    InventoryWarning,
    WarningCode,
    WarningSeverity,
    classify_inventory_health,
)

__all__ = [
    "AssemblyResult",
    "BlueprintAssembler",
    "InventoryAnalyzer",
    "InventoryHealth",
    "InventoryWarning",
    "WarningCode",
    "WarningSeverity",
    "classify_inventory_health",
]
