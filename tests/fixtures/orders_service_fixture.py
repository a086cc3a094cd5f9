"""Controllers and manager interfaces used as analysis input by the tests."""
from __future__ import annotations

from abc import ABC, abstractmethod

from app.services.surface_markers import (
    ControllerBase,
    http_get,
    http_post,
    http_put,
    route,
    stored_procedure,
)


class IOrderManager(ABC):
    @abstractmethod
    def get_order_by_id__sp_Orders_GetById(self, order_id: int) -> dict:
        ...

    @abstractmethod
    def search_orders__sp_Orders_Search(self, customer_id: int, status: str | None = None) -> list:
        ...

    @abstractmethod
    def archive_order__archive__sp_Orders_Archive(self, order_id: int) -> None:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...


class OrdersController(ControllerBase):
    def __init__(self, manager: IOrderManager, logger: object | None = None) -> None:
        self._manager = manager
        self._logger = logger

    def get_order_by_id(self, order_id: int) -> dict:
        if self._logger is not None:
            self._logger.info("get_order_by_id")
        return self._manager.get_order_by_id__sp_Orders_GetById(order_id)

    @http_post("search")
    def search_orders(self, customer_id: int, status: str | None = None) -> list:
        return self._manager.search_orders__sp_Orders_Search(customer_id, status)

    def delete_order(self, order_id: int) -> None:
        self._manager.archive_order__archive__sp_Orders_Archive(order_id)

    def get_dashboard(self, order_id: int) -> dict:
        order = self._manager.get_order_by_id__sp_Orders_GetById(order_id)
        recent = self._manager.search_orders__sp_Orders_Search(order_id)
        return {"order": order, "recent": recent}

    @stored_procedure("[dbo].[sp_Orders_GetById]")
    def get_summary(self, order_id: str) -> list:
        return self._manager.search_orders__sp_Orders_Search(order_id)

    def getaway(self) -> None:
        return None

    def helper(self) -> None:
        return None


@route("api/v2/[controller]")
class CustomersController(ControllerBase):
    @http_get("{customer_id}")
    def fetch(self, customer_id: int) -> dict:
        return {"customer_id": customer_id}

    @http_put("/absolute/[action]")
    @stored_procedure("sales.sp_Customers_Rename")
    def rename(self, customer_id: int, new_name: str) -> None:
        return None
