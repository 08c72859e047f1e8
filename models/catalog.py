"""
Catalog schemas produced by the CommerceML parsers.

Records live for one parse call; the reconciliation service consumes
them and writes GUID mappings through the catalog store.
"""

from pydantic import Field, model_validator
from typing import Optional
from enum import Enum

from models.base import BaseSchema


VARIATION_SEPARATOR = "#"


class EntityType(str, Enum):
    """Local entity kinds a foreign GUID can map to."""
    CATEGORY = "category"
    PRODUCT = "product"
    VARIATION = "variation"


class ProductStatus(str, Enum):
    """Product state as sent by the ERP."""
    ACTIVE = "active"
    DELETED = "deleted"


class ProductType(str, Enum):
    """Local product kinds."""
    SIMPLE = "simple"
    VARIABLE = "variable"
    VARIATION = "variation"


class DocumentKind(str, Enum):
    """Exchange document kinds recognised by sniffing."""
    CATALOG = "catalog"
    OFFERS = "offers"


# ===================
# CATALOG (import.xml)
# ===================

class Category(BaseSchema):
    """Product group from the classifier."""
    id: str = Field(..., min_length=1, description="Foreign GUID")
    name: str = Field("", description="Category name")
    parent_id: str = Field("", description="Foreign GUID of the parent, empty for roots")
    description: str = Field("", description="Category description")


class Property(BaseSchema):
    """Classifier property with its optional value dictionary."""
    id: str = Field(..., min_length=1)
    name: str = ""
    value_type: str = "Строка"
    values: dict[str, str] = Field(
        default_factory=dict,
        description="Foreign value ID -> display string"
    )


class ProductAttribute(BaseSchema):
    """Resolved property value on a product."""
    id: str
    name: str
    value: str


class Product(BaseSchema):
    """
    Catalog product or variation.

    An id containing '#' is a variation; the part before the separator
    is the parent product's id.
    """
    id: str = Field(..., min_length=1, description="Foreign GUID")
    is_variation: bool = False
    parent_id: str = ""
    sku: str = ""
    name: str = ""
    description: str = ""
    short_description: str = ""
    barcode: str = ""
    unit: str = "шт"
    category_ids: list[str] = Field(default_factory=list)
    image_paths: list[str] = Field(default_factory=list)
    attributes: dict[str, ProductAttribute] = Field(default_factory=dict)
    weight: Optional[float] = None
    manufacturer: Optional[str] = None
    product_type: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE

    @model_validator(mode="after")
    def derive_variation(self) -> "Product":
        """Derive is_variation and parent_id from the id."""
        is_variation = VARIATION_SEPARATOR in self.id
        parent_id = self.id.split(VARIATION_SEPARATOR, 1)[0] if is_variation else ""
        if self.is_variation != is_variation or self.parent_id != parent_id:
            # Bypass validate_assignment to avoid re-running this validator
            object.__setattr__(self, "is_variation", is_variation)
            object.__setattr__(self, "parent_id", parent_id)
        return self

    @property
    def is_deleted(self) -> bool:
        return self.status == ProductStatus.DELETED


# ===================
# OFFERS (offers.xml)
# ===================

class PriceType(BaseSchema):
    """Price type declared in one offers document."""
    id: str
    name: str = ""
    currency: str = "RUB"


class Warehouse(BaseSchema):
    """Warehouse declared in one offers document."""
    id: str
    name: str = ""


class OfferPrice(BaseSchema):
    """One price of an offer."""
    type_id: str
    type_name: str = ""
    amount: float = 0.0
    currency: str = "RUB"
    unit: str = ""


class WarehouseStock(BaseSchema):
    """Stock of an offer in one warehouse."""
    warehouse_id: str
    warehouse_name: str = ""
    quantity: float = 0.0


class Characteristic(BaseSchema):
    """Variation-defining attribute value (size, color, ...)."""
    id: str = ""
    name: str
    value: str


class Offer(BaseSchema):
    """Price and stock record for a product or variation."""
    id: str = Field(..., min_length=1, description="Foreign GUID of the product or variation")
    sku: str = ""
    name: str = ""
    prices: dict[str, OfferPrice] = Field(
        default_factory=dict,
        description="Price type ID -> price, in document order"
    )
    stock_by_warehouse: dict[str, WarehouseStock] = Field(default_factory=dict)
    total_stock: float = 0.0
    characteristics: list[Characteristic] = Field(default_factory=list)


# ===================
# RECONCILIATION RESULTS
# ===================

class SyncStats(BaseSchema):
    """Counters and collected per-item errors of one reconciliation batch."""
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    not_found: int = 0
    errors: list[str] = Field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def merge(self, other: "SyncStats") -> "SyncStats":
        """Return combined counters of two batches."""
        return SyncStats(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            not_found=self.not_found + other.not_found,
            errors=self.errors + other.errors,
        )
