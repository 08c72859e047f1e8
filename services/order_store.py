"""
Order store: pending orders for export and status updates from the ERP.

OrderStore is the interface the exchange service depends on.
SupabaseOrderStore reads the `orders` and `customers` tables. Export GUIDs
for orders and registered customers are generated on first export and
persisted, so the ERP always sees the same identity.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
import hashlib
from typing import Any, Optional
from uuid import uuid4
import structlog

from config import get_supabase_client
from exceptions import DatabaseError
from models.catalog import EntityType
from models.orders import (
    Address,
    OrderExportRecord,
    OrderLineItem,
    OrderUpdate,
    status_from_label,
)
from services.catalog_store import CatalogStore, get_catalog_store

logger = structlog.get_logger(__name__)

# Never exported, or changed since the last export
PENDING_EXPORT_FILTER = "exported.is.null,exported.eq.false,needs_update.eq.true"


def guest_customer_guid(email: str) -> str:
    """Stable customer id for orders without an account."""
    return hashlib.md5(f"guest_{email}".encode("utf-8")).hexdigest()


def _decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


class OrderStore(ABC):
    """Interface to local orders."""

    @abstractmethod
    def orders_pending_export(self, statuses: list[str]) -> list[OrderExportRecord]:
        """
        Orders with one of the statuses that were never exported or
        changed since the last export, oldest first.
        """
        pass

    @abstractmethod
    def mark_exported(self, order_ids: list[str]) -> int:
        """Flag orders as exported; returns how many were marked."""
        pass

    @abstractmethod
    def apply_update(self, update: OrderUpdate) -> bool:
        """Apply an ERP update; False if no order has that GUID."""
        pass

    @abstractmethod
    def flag_status_changed(self, order_id: str) -> bool:
        """Queue an already exported order for export again; False if it was never exported."""
        pass


class SupabaseOrderStore(OrderStore):
    """OrderStore backed by Supabase tables."""

    def __init__(self, client=None, catalog_store: Optional[CatalogStore] = None, log=None):
        self.db = client or get_supabase_client()
        self.catalog_store = catalog_store or get_catalog_store()
        self.logger = log or logger
        self.orders_table = "orders"
        self.customers_table = "customers"

    def _execute(self, operation: str, query):
        try:
            return query.execute()
        except Exception as e:
            self.logger.error(
                "order_store_query_failed",
                operation=operation,
                error=str(e)
            )
            raise DatabaseError(operation, str(e))

    # ===================
    # EXPORT
    # ===================

    def orders_pending_export(self, statuses: list[str]) -> list[OrderExportRecord]:
        self.logger.info("getting_orders_for_export", statuses=statuses)

        result = self._execute(
            "select_pending_orders",
            self.db.table(self.orders_table)
            .select("*")
            .in_("status", statuses)
            .or_(PENDING_EXPORT_FILTER)
            .order("created_at")
        )

        records = [self._to_export_record(row) for row in result.data]

        self.logger.info("orders_for_export_retrieved", count=len(records))

        return records

    def _to_export_record(self, row: dict[str, Any]) -> OrderExportRecord:
        billing = Address(**(row.get("billing") or {}))

        return OrderExportRecord(
            local_id=str(row["id"]),
            export_guid=self._order_guid(row),
            number=str(row.get("number") or row["id"]),
            created_at=row["created_at"],
            status=row.get("status") or "pending",
            currency=row.get("currency") or "RUB",
            total=_decimal(row.get("total")),
            customer_guid=self._customer_guid(row.get("customer_id"), billing.email),
            customer_note=row.get("customer_note") or "",
            payment_method=row.get("payment_method_title") or "",
            shipping_method=row.get("shipping_method_title") or "",
            shipping_total=_decimal(row.get("shipping_total")),
            paid_date=_date_only(row.get("paid_date")),
            billing=billing,
            shipping=Address(**(row.get("shipping") or {})),
            items=[
                self._to_line_item(index, item)
                for index, item in enumerate(row.get("line_items") or [], start=1)
            ],
        )

    def _order_guid(self, row: dict[str, Any]) -> str:
        """Existing export GUID, or a new one persisted on the order."""
        if row.get("export_guid"):
            return row["export_guid"]

        guid = str(uuid4())
        self._execute(
            "set_order_guid",
            self.db.table(self.orders_table).update({"export_guid": guid}).eq("id", row["id"])
        )
        self.logger.debug("order_guid_generated", order_id=row["id"], guid=guid)
        return guid

    def _customer_guid(self, customer_id: Optional[Any], email: str) -> str:
        if not customer_id:
            return guest_customer_guid(email)

        result = self._execute(
            "get_customer",
            self.db.table(self.customers_table)
            .select("id, export_guid")
            .eq("id", customer_id)
            .limit(1)
        )
        if result.data and result.data[0].get("export_guid"):
            return result.data[0]["export_guid"]

        guid = str(uuid4())
        self._execute(
            "set_customer_guid",
            self.db.table(self.customers_table).update({"export_guid": guid}).eq("id", customer_id)
        )
        return guid

    def _to_line_item(self, index: int, item: dict[str, Any]) -> OrderLineItem:
        product_id = str(item.get("product_id") or "")
        variation_id = str(item.get("variation_id") or "")

        foreign_id = None
        if variation_id:
            foreign_id = self.catalog_store.foreign_guid(variation_id, EntityType.VARIATION)
        if not foreign_id and product_id:
            foreign_id = self.catalog_store.foreign_guid(product_id, EntityType.PRODUCT)

        quantity = _decimal(item.get("quantity"))
        subtotal = _decimal(item.get("subtotal", item.get("total")))
        total = _decimal(item.get("total"))
        price = (subtotal / quantity) if quantity else subtotal

        return OrderLineItem(
            id=str(item.get("id") or index),
            product_id=product_id,
            variation_id=variation_id,
            foreign_product_id=foreign_id or "",
            name=item.get("name") or "",
            sku=item.get("sku") or "",
            quantity=quantity,
            price=price,
            total=total,
            discount=subtotal - total,
        )

    def mark_exported(self, order_ids: list[str]) -> int:
        if not order_ids:
            return 0

        exported_at = datetime.now(timezone.utc).isoformat()
        result = self._execute(
            "mark_orders_exported",
            self.db.table(self.orders_table)
            .update({"exported": True, "exported_at": exported_at, "needs_update": False})
            .in_("id", order_ids)
        )

        marked = len(result.data) if result.data else 0
        self.logger.info("orders_marked_exported", requested=len(order_ids), marked=marked)
        return marked

    # ===================
    # UPDATES FROM THE ERP
    # ===================

    def apply_update(self, update: OrderUpdate) -> bool:
        result = self._execute(
            "find_order_by_guid",
            self.db.table(self.orders_table)
            .select("id, status")
            .eq("export_guid", update.order_guid)
            .limit(1)
        )
        if not result.data:
            self.logger.warning("order_update_unknown_guid", order_guid=update.order_guid)
            return False

        order = result.data[0]
        changes: dict[str, Any] = {}

        if update.status:
            new_status = status_from_label(update.status)
            if new_status is None:
                self.logger.warning(
                    "unknown_order_status_label",
                    order_guid=update.order_guid,
                    label=update.status
                )
            elif new_status.value != order.get("status"):
                changes["status"] = new_status.value

        if update.tracking_number:
            changes["tracking_number"] = update.tracking_number
        if update.erp_document_number:
            changes["erp_document_number"] = update.erp_document_number

        if changes:
            self._execute(
                "apply_order_update",
                self.db.table(self.orders_table).update(changes).eq("id", order["id"])
            )
            if "status" in changes:
                self.flag_status_changed(str(order["id"]))

        self.logger.info(
            "order_update_applied",
            order_id=order["id"],
            order_guid=update.order_guid,
            changes=list(changes)
        )
        return True

    def flag_status_changed(self, order_id: str) -> bool:
        result = self._execute(
            "flag_order_status_changed",
            self.db.table(self.orders_table)
            .update({"needs_update": True})
            .eq("id", order_id)
            .eq("exported", True)
        )

        flagged = bool(result.data)
        if flagged:
            self.logger.info("order_queued_for_reexport", order_id=order_id)
        return flagged


def _date_only(value: Optional[str]) -> Optional[str]:
    """'2025-03-01T10:00:00Z' -> '2025-03-01'."""
    if not value:
        return None
    return str(value)[:10]


# Singleton instance
_order_store: Optional[SupabaseOrderStore] = None


def get_order_store() -> SupabaseOrderStore:
    """Get or create order store instance."""
    global _order_store
    if _order_store is None:
        _order_store = SupabaseOrderStore()
    return _order_store
