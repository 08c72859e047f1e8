"""
Business logic services.

Each service handles one part of the exchange.
"""

from services.catalog_store import CatalogStore, SupabaseCatalogStore, get_catalog_store
from services.order_store import OrderStore, SupabaseOrderStore, get_order_store
from services.sync_log_service import SyncLogService, get_sync_log_service
from services.reconciliation_service import (
    ReconciliationService,
    sort_categories_by_hierarchy,
    select_price,
)
from services.order_export_service import (
    OrderExportService,
    get_order_export_service,
    generate_orders_document,
)
from services.exchange_file_service import ExchangeFileService, parse_size, compute_file_limit
from services.exchange_service import ExchangeService, get_exchange_service

__all__ = [
    "CatalogStore",
    "SupabaseCatalogStore",
    "get_catalog_store",
    "OrderStore",
    "SupabaseOrderStore",
    "get_order_store",
    "SyncLogService",
    "get_sync_log_service",
    "ReconciliationService",
    "sort_categories_by_hierarchy",
    "select_price",
    "OrderExportService",
    "get_order_export_service",
    "generate_orders_document",
    "ExchangeFileService",
    "parse_size",
    "compute_file_limit",
    "ExchangeService",
    "get_exchange_service",
]
