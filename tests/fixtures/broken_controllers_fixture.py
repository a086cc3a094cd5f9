"""Controllers whose metadata cannot be fully extracted."""
from __future__ import annotations

from app.services.surface_markers import ControllerBase


class InventoryController(ControllerBase):
    def __init__(self, manager: IMissingManager) -> None:  # noqa: F821
        self._manager = manager

    def get_stock__sp_Inventory_GetStock(self, sku: str) -> int:
        return self._manager.count(sku)


class BrokenController(ControllerBase):
    def get_everything(self) -> list:
        return []


BrokenController.get_everything.__signature__ = 42
