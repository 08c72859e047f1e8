"""
Reconciliation of parsed CommerceML records with the local catalog.

Foreign GUIDs are mapped onto local IDs through the catalog store.
Categories are written parents first; products are written in two
passes so variations always find their parent. A failing entity is
counted and logged and the batch carries on.
"""

from pathlib import Path
from typing import Any, Iterable, Optional, Union
import structlog

from config.settings import Settings, get_settings
from exceptions import ParentNotFoundError, ParentNotVariableError, EntitySaveError
from models.catalog import (
    Category,
    Characteristic,
    EntityType,
    Offer,
    OfferPrice,
    Product,
    ProductAttribute,
    ProductType,
    SyncStats,
)
from services.catalog_store import CatalogStore, STATUS_PUBLISH
from utils.text_utils import trim_words

logger = structlog.get_logger(__name__)

SHORT_DESCRIPTION_WORDS = 30

STOCK_IN = "instock"
STOCK_OUT = "outofstock"


# ===================
# PURE HELPERS
# ===================

def sort_categories_by_hierarchy(categories: Iterable[Category]) -> list[Category]:
    """
    Order categories so every parent precedes its children.

    Scans the remaining categories repeatedly, moving those whose parent
    is empty or already placed. Gives up after 2 x N scans (or a scan
    that places nothing); whatever is left, e.g. cycles or parents
    outside this batch, is appended in input order.
    """
    remaining = list(categories)
    max_scans = 2 * len(remaining)

    ordered: list[Category] = []
    placed: set[str] = set()
    scans = 0

    while remaining and scans < max_scans:
        still_waiting = []
        for category in remaining:
            if not category.parent_id or category.parent_id in placed:
                ordered.append(category)
                placed.add(category.id)
            else:
                still_waiting.append(category)

        scans += 1
        if len(still_waiting) == len(remaining):
            break
        remaining = still_waiting

    if remaining:
        logger.warning(
            "categories_unresolved_hierarchy",
            count=len(remaining),
            ids=[c.id for c in remaining]
        )

    return ordered + remaining


def select_price(
    prices: Union[dict[str, OfferPrice], Iterable[OfferPrice]],
    price_type_name: str
) -> Optional[OfferPrice]:
    """
    Price of the configured type, else the first price in document order.

    An empty type name takes the first price.
    """
    candidates = list(prices.values()) if isinstance(prices, dict) else list(prices)
    if not candidates:
        return None

    for price in candidates:
        if not price_type_name or price.type_name == price_type_name:
            return price

    return candidates[0]


def select_stock(offer: Offer, warehouse_id: str) -> float:
    """Quantity in the configured warehouse if the offer lists it, else the total."""
    if warehouse_id and warehouse_id in offer.stock_by_warehouse:
        return offer.stock_by_warehouse[warehouse_id].quantity
    return offer.total_stock


def _quantity(value: float) -> Union[int, float]:
    return int(value) if float(value).is_integer() else value


class ReconciliationService:
    """
    Applies parsed catalog and offers documents to a CatalogStore.

    Sync switches, price type, warehouse and the exchange directory
    come from Settings.
    """

    def __init__(
        self,
        store: CatalogStore,
        settings: Optional[Settings] = None,
        log=None
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.logger = log or logger

    # ===================
    # CATEGORIES
    # ===================

    def reconcile_categories(
        self,
        categories: Union[dict[str, Category], Iterable[Category]]
    ) -> SyncStats:
        """
        Create or update categories, parents first.

        An unmapped parent makes the category a root.
        """
        stats = SyncStats()

        if not self.settings.sync_categories:
            self.logger.info("category_sync_disabled")
            return stats

        items = list(categories.values()) if isinstance(categories, dict) else list(categories)
        self.logger.info("reconciling_categories", count=len(items))

        for category in sort_categories_by_hierarchy(items):
            try:
                local_id = self.store.resolve_guid(category.id, EntityType.CATEGORY)

                parent_local_id = None
                if category.parent_id:
                    parent_local_id = self.store.resolve_guid(category.parent_id, EntityType.CATEGORY)
                    if parent_local_id is None:
                        self.logger.warning(
                            "category_parent_unmapped",
                            guid=category.id,
                            parent_guid=category.parent_id
                        )

                saved_id = self.store.upsert_category(
                    local_id,
                    category.name,
                    parent_local_id,
                    category.description
                )
                if not saved_id:
                    raise EntitySaveError(EntityType.CATEGORY.value, category.id)

                self.store.map_guid(category.id, EntityType.CATEGORY, saved_id)

                if local_id:
                    stats.updated += 1
                else:
                    stats.created += 1

            except Exception as e:
                self.logger.error(
                    "category_sync_failed",
                    guid=category.id,
                    name=category.name,
                    error=str(e)
                )
                stats.record_failure(f'Category "{category.name}": {e}')

        self.logger.info("categories_reconciled", **stats.model_dump(exclude={"errors"}))
        return stats

    # ===================
    # PRODUCTS
    # ===================

    def reconcile_products(
        self,
        products: Union[dict[str, Product], Iterable[Product]],
        offers: Optional[dict[str, Offer]] = None
    ) -> SyncStats:
        """
        Create or update products, then their variations.

        Args:
            products: Parsed products keyed by GUID
            offers: Offers keyed by GUID; price and stock are only
                written for products that have one

        Returns:
            SyncStats over both passes
        """
        offers = offers or {}
        items = list(products.values()) if isinstance(products, dict) else list(products)
        variable_parents = {p.parent_id for p in items if p.is_variation}

        self.logger.info(
            "reconciling_products",
            count=len(items),
            variable_parents=len(variable_parents)
        )

        stats = SyncStats()

        # Pass 1: simple products and variable parents
        for product in items:
            if product.is_variation:
                continue
            try:
                action = self._sync_product(
                    product,
                    offers.get(product.id),
                    product.id in variable_parents
                )
                self._count(stats, action)
            except Exception as e:
                self.logger.error(
                    "product_sync_failed",
                    guid=product.id,
                    sku=product.sku,
                    error=str(e)
                )
                stats.record_failure(f'Product "{product.name}" (SKU: {product.sku}): {e}')

        # Pass 2: variations
        for product in items:
            if not product.is_variation:
                continue
            try:
                action = self._sync_variation(product, offers.get(product.id))
                self._count(stats, action)
            except Exception as e:
                self.logger.error(
                    "variation_sync_failed",
                    guid=product.id,
                    parent_guid=product.parent_id,
                    error=str(e)
                )
                stats.record_failure(f'Variation "{product.name}": {e}')

        self.logger.info("products_reconciled", **stats.model_dump(exclude={"errors"}))
        return stats

    @staticmethod
    def _count(stats: SyncStats, action: str) -> None:
        if action == "created":
            stats.created += 1
        elif action == "updated":
            stats.updated += 1
        else:
            stats.skipped += 1

    def _existing_local_id(self, guid: str, entity_type: EntityType) -> Optional[str]:
        """Mapped local ID, ignoring mappings whose product has vanished."""
        local_id = self.store.resolve_guid(guid, entity_type)
        if local_id and self.store.get_product(local_id) is None:
            self.logger.warning("mapped_product_missing", guid=guid, local_id=local_id)
            return None
        return local_id

    def _sync_product(self, product: Product, offer: Optional[Offer], is_variable: bool) -> str:
        if product.is_deleted:
            return self._trash(product.id, EntityType.PRODUCT)

        local_id = self._existing_local_id(product.id, EntityType.PRODUCT)
        existing = self.store.get_product(local_id) if local_id else None

        # A parent resent without its variations stays variable
        if existing and existing.get("product_type") == ProductType.VARIABLE.value:
            is_variable = True

        data: dict[str, Any] = {
            "name": product.name,
            "product_type": (ProductType.VARIABLE if is_variable else ProductType.SIMPLE).value,
            "status": STATUS_PUBLISH,
            "unit": product.unit,
        }

        sku = self._unique_sku(product.sku, local_id)
        if sku:
            data["sku"] = sku
        if product.description:
            data["description"] = product.description
        if product.short_description:
            data["short_description"] = trim_words(product.short_description, SHORT_DESCRIPTION_WORDS)
        if product.barcode:
            data["barcode"] = product.barcode
        if product.manufacturer:
            data["manufacturer"] = product.manufacturer
        if product.weight:
            data["weight"] = product.weight

        category_ids = self._map_categories(product.category_ids)
        if category_ids:
            data["category_ids"] = category_ids

        if product.attributes and self.settings.sync_attributes:
            data["attributes"] = self._product_attributes(product.attributes, existing)

        if offer is not None:
            data.update(self._offer_fields(offer))

        if product.image_paths and self.settings.sync_images:
            images = self._resolve_images(product.image_paths)
            if images:
                data["images"] = images

        saved_id = self.store.upsert_product(local_id, data)
        if not saved_id:
            raise EntitySaveError(EntityType.PRODUCT.value, product.id)

        self.store.map_guid(product.id, EntityType.PRODUCT, saved_id)

        self.logger.debug(
            "product_synced",
            guid=product.id,
            product_id=saved_id,
            action="updated" if local_id else "created"
        )
        return "updated" if local_id else "created"

    def _sync_variation(self, product: Product, offer: Optional[Offer]) -> str:
        if product.is_deleted:
            return self._trash(product.id, EntityType.VARIATION)

        parent_local_id = self.store.resolve_guid(product.parent_id, EntityType.PRODUCT)
        if not parent_local_id:
            raise ParentNotFoundError(product.parent_id)

        parent = self.store.get_product(parent_local_id)
        if parent is None:
            raise ParentNotFoundError(product.parent_id)
        if parent.get("product_type") != ProductType.VARIABLE.value:
            raise ParentNotVariableError(product.parent_id, parent.get("product_type"))

        local_id = self._existing_local_id(product.id, EntityType.VARIATION)

        data: dict[str, Any] = {
            "name": product.name,
            "status": STATUS_PUBLISH,
        }

        sku = self._unique_sku(product.sku, local_id)
        if sku:
            data["sku"] = sku

        if offer is not None:
            if offer.characteristics:
                data["attributes"] = self._apply_characteristics(
                    parent_local_id,
                    parent,
                    offer.characteristics
                )
            data.update(self._offer_fields(offer))

        saved_id = self.store.upsert_variation(local_id, parent_local_id, data)
        if not saved_id:
            raise EntitySaveError(EntityType.VARIATION.value, product.id)

        self.store.map_guid(product.id, EntityType.VARIATION, saved_id)
        return "updated" if local_id else "created"

    def _trash(self, guid: str, entity_type: EntityType) -> str:
        local_id = self.store.resolve_guid(guid, entity_type)
        if local_id and self.store.get_product(local_id) is not None:
            self.store.trash_product(local_id)
        self.logger.info("deleted_product_skipped", guid=guid, local_id=local_id)
        return "skipped"

    def _unique_sku(self, sku: str, local_id: Optional[str]) -> Optional[str]:
        """The SKU if nobody else owns it, else None."""
        if not sku:
            return None
        owner = self.store.find_product_id_by_sku(sku)
        if owner is None or owner == local_id:
            return sku
        self.logger.warning("sku_taken", sku=sku, owner=owner, product_id=local_id)
        return None

    def _map_categories(self, category_guids: list[str]) -> list[str]:
        local_ids = []
        for guid in category_guids:
            local_id = self.store.resolve_guid(guid, EntityType.CATEGORY)
            if local_id:
                local_ids.append(local_id)
        return local_ids

    def _product_attributes(
        self,
        attributes: dict[str, ProductAttribute],
        existing: Optional[dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        """
        Attribute block for a product.

        Variation attributes already on the product are kept; they are
        rebuilt from offers, not from the catalog.
        """
        result = {
            slug: value
            for slug, value in ((existing or {}).get("attributes") or {}).items()
            if isinstance(value, dict) and value.get("variation")
        }

        for attribute in attributes.values():
            slug = self.store.ensure_attribute(attribute.name)
            result[slug] = {
                "name": attribute.name,
                "options": [attribute.value],
                "visible": True,
                "variation": False,
            }
        return result

    def _apply_characteristics(
        self,
        parent_local_id: str,
        parent: dict[str, Any],
        characteristics: list[Characteristic]
    ) -> dict[str, str]:
        """
        Variation attribute values, with each value added to the parent's options.

        Adding a value the parent already lists changes nothing.
        """
        variation_attributes: dict[str, str] = {}
        parent_attributes = dict(parent.get("attributes") or {})
        changed = False

        for characteristic in characteristics:
            slug = self.store.ensure_attribute(characteristic.name)
            variation_attributes[slug] = characteristic.value

            entry = dict(parent_attributes.get(slug) or {
                "name": characteristic.name,
                "options": [],
                "visible": True,
                "variation": True,
            })
            options = list(entry.get("options") or [])
            if characteristic.value not in options:
                options.append(characteristic.value)
                changed = True
            if not entry.get("variation"):
                changed = True
            entry["options"] = options
            entry["variation"] = True
            parent_attributes[slug] = entry

        if changed:
            self.store.update_product(parent_local_id, {"attributes": parent_attributes})
            parent["attributes"] = parent_attributes

        return variation_attributes

    def _offer_fields(self, offer: Offer) -> dict[str, Any]:
        """Price and stock columns from an offer, per the sync switches."""
        data: dict[str, Any] = {}

        if self.settings.sync_prices:
            price = select_price(offer.prices, self.settings.price_type)
            if price is not None:
                data["regular_price"] = price.amount
                data["price"] = price.amount
                data["currency"] = price.currency

        if self.settings.sync_stock:
            quantity = select_stock(offer, self.settings.warehouse)
            data["manage_stock"] = True
            data["stock_quantity"] = _quantity(quantity)
            data["stock_status"] = STOCK_IN if quantity > 0 else STOCK_OUT

        return data

    def _resolve_images(self, image_paths: list[str]) -> list[str]:
        """Image paths that exist under the exchange directory."""
        base = Path(self.settings.exchange_dir).resolve()
        found = []
        for image_path in image_paths:
            candidate = (base / image_path).resolve()
            if base not in candidate.parents or not candidate.is_file():
                self.logger.warning("image_missing", path=image_path)
                continue
            found.append(image_path)
        return found

    # ===================
    # OFFERS
    # ===================

    def reconcile_offers(self, offers: Union[dict[str, Offer], Iterable[Offer]]) -> SyncStats:
        """
        Update price and stock of already mapped products and variations.

        Unknown GUIDs are counted as not_found.
        """
        items = list(offers.values()) if isinstance(offers, dict) else list(offers)
        self.logger.info("reconciling_offers", count=len(items))

        stats = SyncStats()

        for offer in items:
            try:
                local_id = self.store.resolve_guid(offer.id, EntityType.PRODUCT)
                if not local_id:
                    local_id = self.store.resolve_guid(offer.id, EntityType.VARIATION)

                if not local_id or self.store.get_product(local_id) is None:
                    stats.not_found += 1
                    self.logger.debug("offer_target_not_found", guid=offer.id)
                    continue

                data = self._offer_fields(offer)
                if not data:
                    stats.skipped += 1
                    continue

                self.store.update_product(local_id, data)
                stats.updated += 1

            except Exception as e:
                self.logger.error("offer_sync_failed", guid=offer.id, error=str(e))
                stats.record_failure(f"Offer {offer.id}: {e}")

        self.logger.info("offers_reconciled", **stats.model_dump(exclude={"errors"}))
        return stats
