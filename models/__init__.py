"""
Pydantic models for validation and serialization.
"""

from models.base import BaseSchema
from models.catalog import (
    EntityType,
    ProductStatus,
    ProductType,
    DocumentKind,
    Category,
    Property,
    ProductAttribute,
    Product,
    PriceType,
    Warehouse,
    OfferPrice,
    WarehouseStock,
    Characteristic,
    Offer,
    SyncStats,
)
from models.orders import (
    OrderStatus,
    ORDER_STATUS_LABELS,
    FOREIGN_STATUS_MAP,
    status_label,
    status_from_label,
    Address,
    OrderLineItem,
    OrderExportRecord,
    OrderUpdate,
)
from models.exchange import (
    ExchangeKind,
    ExchangeMode,
    MODES_BY_KIND,
    SessionState,
    SESSION_TRANSITIONS,
    is_valid_session_transition,
    ExchangeSession,
    ProtocolParameters,
)

__all__ = [
    # Base
    "BaseSchema",

    # Catalog
    "EntityType",
    "ProductStatus",
    "ProductType",
    "DocumentKind",
    "Category",
    "Property",
    "ProductAttribute",
    "Product",
    "PriceType",
    "Warehouse",
    "OfferPrice",
    "WarehouseStock",
    "Characteristic",
    "Offer",
    "SyncStats",

    # Orders
    "OrderStatus",
    "ORDER_STATUS_LABELS",
    "FOREIGN_STATUS_MAP",
    "status_label",
    "status_from_label",
    "Address",
    "OrderLineItem",
    "OrderExportRecord",
    "OrderUpdate",

    # Exchange
    "ExchangeKind",
    "ExchangeMode",
    "MODES_BY_KIND",
    "SessionState",
    "SESSION_TRANSITIONS",
    "is_valid_session_transition",
    "ExchangeSession",
    "ProtocolParameters",
]
