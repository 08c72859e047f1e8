"""
Catalog store: local categories, products, attributes and GUID mappings.

CatalogStore is the interface the reconciliation service depends on.
SupabaseCatalogStore keeps everything in Supabase tables:

    exchange_id_mapping  (guid, entity_type, local_id), unique on (guid, entity_type)
    categories           (id, name, parent_id, description)
    products             (id, parent_id, product_type, status, sku, name, ...)
    product_attributes   (slug, name)
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
import structlog

from config import get_supabase_client
from exceptions import DatabaseError, EntitySaveError
from models.catalog import EntityType, ProductType
from utils.text_utils import slugify_attribute_name

logger = structlog.get_logger(__name__)

ATTRIBUTE_SLUG_PREFIX = "pa_"

# Local product status values
STATUS_PUBLISH = "publish"
STATUS_TRASH = "trash"


def attribute_slug(name: str) -> str:
    """Taxonomy slug for an attribute name, e.g. 'Размер' -> 'pa_размер'."""
    return ATTRIBUTE_SLUG_PREFIX + (slugify_attribute_name(name) or "attribute")


class CatalogStore(ABC):
    """
    Interface to the local catalog.

    Product and variation payloads are plain dicts of local column names.
    Implementations return local IDs as strings.
    """

    # ===================
    # GUID MAPPING
    # ===================

    @abstractmethod
    def map_guid(self, guid: str, entity_type: EntityType, local_id: str) -> None:
        """Create or replace the mapping for (guid, entity_type)."""
        pass

    @abstractmethod
    def resolve_guid(self, guid: str, entity_type: EntityType) -> Optional[str]:
        """Local ID mapped to a foreign GUID, None if unmapped."""
        pass

    @abstractmethod
    def foreign_guid(self, local_id: str, entity_type: EntityType) -> Optional[str]:
        """Foreign GUID mapped to a local ID, None if unmapped."""
        pass

    # ===================
    # CATEGORIES
    # ===================

    @abstractmethod
    def upsert_category(
        self,
        local_id: Optional[str],
        name: str,
        parent_local_id: Optional[str],
        description: str = ""
    ) -> str:
        """Create a category, or update it when local_id is given."""
        pass

    # ===================
    # PRODUCTS
    # ===================

    @abstractmethod
    def get_product(self, local_id: str) -> Optional[dict[str, Any]]:
        """Product or variation row, None if it no longer exists."""
        pass

    @abstractmethod
    def find_product_id_by_sku(self, sku: str) -> Optional[str]:
        """Local ID of the product owning a SKU."""
        pass

    @abstractmethod
    def upsert_product(self, local_id: Optional[str], data: dict[str, Any]) -> str:
        """Create a product, or update it when local_id is given."""
        pass

    @abstractmethod
    def upsert_variation(
        self,
        local_id: Optional[str],
        parent_local_id: str,
        data: dict[str, Any]
    ) -> str:
        """Create a variation under a parent, or update it when local_id is given."""
        pass

    @abstractmethod
    def update_product(self, local_id: str, data: dict[str, Any]) -> None:
        """Partial update of a product or variation."""
        pass

    @abstractmethod
    def trash_product(self, local_id: str) -> None:
        """Soft delete."""
        pass

    # ===================
    # ATTRIBUTES
    # ===================

    @abstractmethod
    def ensure_attribute(self, name: str) -> str:
        """Register a global attribute if missing and return its slug."""
        pass


class SupabaseCatalogStore(CatalogStore):
    """CatalogStore backed by Supabase tables."""

    def __init__(self, client=None, log=None):
        self.db = client or get_supabase_client()
        self.logger = log or logger
        self.mapping_table = "exchange_id_mapping"
        self.categories_table = "categories"
        self.products_table = "products"
        self.attributes_table = "product_attributes"

    def _execute(self, operation: str, query):
        """Run a query, converting client failures to DatabaseError."""
        try:
            return query.execute()
        except Exception as e:
            self.logger.error(
                "catalog_store_query_failed",
                operation=operation,
                error=str(e)
            )
            raise DatabaseError(operation, str(e))

    def _insert(self, table: str, data: dict[str, Any], entity_type: str) -> str:
        result = self._execute(f"insert_{entity_type}", self.db.table(table).insert(data))
        if not result.data:
            raise EntitySaveError(entity_type, data.get("name", ""))
        return str(result.data[0]["id"])

    # ===================
    # GUID MAPPING
    # ===================

    def map_guid(self, guid: str, entity_type: EntityType, local_id: str) -> None:
        self._execute(
            "map_guid",
            self.db.table(self.mapping_table).upsert(
                {
                    "guid": guid,
                    "entity_type": entity_type.value,
                    "local_id": str(local_id),
                },
                on_conflict="guid,entity_type"
            )
        )
        self.logger.debug("guid_mapped", guid=guid, entity_type=entity_type.value, local_id=local_id)

    def resolve_guid(self, guid: str, entity_type: EntityType) -> Optional[str]:
        result = self._execute(
            "resolve_guid",
            self.db.table(self.mapping_table)
            .select("local_id")
            .eq("guid", guid)
            .eq("entity_type", entity_type.value)
            .limit(1)
        )
        return str(result.data[0]["local_id"]) if result.data else None

    def foreign_guid(self, local_id: str, entity_type: EntityType) -> Optional[str]:
        result = self._execute(
            "foreign_guid",
            self.db.table(self.mapping_table)
            .select("guid")
            .eq("local_id", str(local_id))
            .eq("entity_type", entity_type.value)
            .limit(1)
        )
        return result.data[0]["guid"] if result.data else None

    # ===================
    # CATEGORIES
    # ===================

    def upsert_category(
        self,
        local_id: Optional[str],
        name: str,
        parent_local_id: Optional[str],
        description: str = ""
    ) -> str:
        data = {
            "name": name,
            "parent_id": parent_local_id,
            "description": description,
        }

        if local_id:
            self._execute(
                "update_category",
                self.db.table(self.categories_table).update(data).eq("id", local_id)
            )
            return local_id

        return self._insert(self.categories_table, data, EntityType.CATEGORY.value)

    # ===================
    # PRODUCTS
    # ===================

    def get_product(self, local_id: str) -> Optional[dict[str, Any]]:
        result = self._execute(
            "get_product",
            self.db.table(self.products_table).select("*").eq("id", local_id).limit(1)
        )
        return result.data[0] if result.data else None

    def find_product_id_by_sku(self, sku: str) -> Optional[str]:
        if not sku:
            return None
        result = self._execute(
            "find_product_by_sku",
            self.db.table(self.products_table).select("id").eq("sku", sku).limit(1)
        )
        return str(result.data[0]["id"]) if result.data else None

    def upsert_product(self, local_id: Optional[str], data: dict[str, Any]) -> str:
        if local_id:
            self.update_product(local_id, data)
            return local_id
        return self._insert(self.products_table, data, EntityType.PRODUCT.value)

    def upsert_variation(
        self,
        local_id: Optional[str],
        parent_local_id: str,
        data: dict[str, Any]
    ) -> str:
        data = {
            **data,
            "parent_id": parent_local_id,
            "product_type": ProductType.VARIATION.value,
        }
        if local_id:
            self.update_product(local_id, data)
            return local_id
        return self._insert(self.products_table, data, EntityType.VARIATION.value)

    def update_product(self, local_id: str, data: dict[str, Any]) -> None:
        self._execute(
            "update_product",
            self.db.table(self.products_table).update(data).eq("id", local_id)
        )

    def trash_product(self, local_id: str) -> None:
        self.update_product(local_id, {"status": STATUS_TRASH})
        self.logger.info("product_trashed", product_id=local_id)

    # ===================
    # ATTRIBUTES
    # ===================

    def ensure_attribute(self, name: str) -> str:
        slug = attribute_slug(name)

        existing = self._execute(
            "get_attribute",
            self.db.table(self.attributes_table).select("slug").eq("slug", slug).limit(1)
        )
        if not existing.data:
            self._execute(
                "insert_attribute",
                self.db.table(self.attributes_table).insert({"slug": slug, "name": name})
            )
            self.logger.info("attribute_created", slug=slug, name=name)

        return slug


# Singleton instance
_catalog_store: Optional[SupabaseCatalogStore] = None


def get_catalog_store() -> SupabaseCatalogStore:
    """Get or create catalog store instance."""
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = SupabaseCatalogStore()
    return _catalog_store
