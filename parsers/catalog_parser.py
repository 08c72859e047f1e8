"""
CommerceML catalog parser (import.xml).

Extracts the classifier (category tree and properties) and the catalog
products. Unrecognized elements and requisites are ignored.
"""

from dataclasses import dataclass, field
import html
import re
from typing import Optional
import structlog

from lxml import etree

from models.catalog import (
    Category,
    Property,
    Product,
    ProductAttribute,
    ProductStatus,
)
from parsers.commerceml import (
    load_document,
    child,
    children,
    path,
    text,
    attribute,
    parse_number,
    requisites,
)

logger = structlog.get_logger(__name__)

# Tags kept in product descriptions
ALLOWED_DESCRIPTION_TAGS = frozenset({
    "p", "br", "strong", "b", "em", "i", "ul", "ol", "li",
    "h2", "h3", "h4", "table", "tr", "td", "th",
})

_TAG_RE = re.compile(r"</?\s*([a-zA-Z][a-zA-Z0-9]*)\b[^>]*>")

# Requisite names mapped onto product fields
REQUISITE_WEIGHT = "Вес"
REQUISITE_PRODUCT_TYPE = "ТипНоменклатуры"
REQUISITE_DELETION_MARK = "ПометкаУдаления"
REQUISITE_MANUFACTURER = "Производитель"

DELETED_STATUS_ATTRIBUTE = "Удален"


@dataclass
class CatalogParseResult:
    """Result of parsing a catalog document."""
    categories: dict[str, Category] = field(default_factory=dict)
    properties: dict[str, Property] = field(default_factory=dict)
    products: dict[str, Product] = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        """True if any categories or products were parsed."""
        return bool(self.categories or self.products)

    @property
    def variations(self) -> list[Product]:
        return [p for p in self.products.values() if p.is_variation]

    def to_dict(self) -> dict:
        """Summary for logs and API responses."""
        return {
            "categories": len(self.categories),
            "properties": len(self.properties),
            "products": len(self.products),
            "variations": len(self.variations),
        }


def parse_catalog(content: bytes) -> CatalogParseResult:
    """
    Parse a catalog document.

    Args:
        content: Raw document bytes in any declared encoding

    Returns:
        CatalogParseResult with categories, properties and products keyed by foreign GUID

    Raises:
        MalformedDocumentError: If the document is not well-formed XML
    """
    logger.info("parsing_catalog_document", size=len(content))

    root = load_document(content)
    result = CatalogParseResult()

    classifier = child(root, "Классификатор")
    if classifier is not None:
        _parse_categories(child(classifier, "Группы"), "", result)
        _parse_properties(classifier, result)

    catalog = child(root, "Каталог")
    if catalog is not None:
        for element in children(child(catalog, "Товары"), "Товар"):
            product = _parse_product(element, result.properties)
            if product is not None:
                result.products[product.id] = product

    logger.info("catalog_document_parsed", **result.to_dict())

    return result


def _parse_categories(
    groups: Optional[etree._Element],
    parent_id: str,
    result: CatalogParseResult
) -> None:
    """Walk Группы/Группа recursively, passing the enclosing id down."""
    for group in children(groups, "Группа"):
        category_id = text(group, "Ид")
        if not category_id:
            logger.warning("category_without_id", name=text(group, "Наименование"))
            continue

        result.categories[category_id] = Category(
            id=category_id,
            name=text(group, "Наименование"),
            parent_id=parent_id,
            description=text(group, "Описание"),
        )

        _parse_categories(child(group, "Группы"), category_id, result)


def _parse_properties(classifier: etree._Element, result: CatalogParseResult) -> None:
    """Parse Свойства/Свойство with their value dictionaries."""
    for element in children(child(classifier, "Свойства"), "Свойство"):
        property_id = text(element, "Ид")
        if not property_id:
            continue

        values = {}
        for entry in children(child(element, "ВариантыЗначений"), "Справочник"):
            value_id = text(entry, "ИдЗначения")
            if value_id:
                values[value_id] = text(entry, "Значение")

        result.properties[property_id] = Property(
            id=property_id,
            name=text(element, "Наименование"),
            value_type=text(element, "ТипЗначений", default="Строка"),
            values=values,
        )


def _parse_product(
    element: etree._Element,
    properties: dict[str, Property]
) -> Optional[Product]:
    """Parse a single Товар element."""
    product_id = text(element, "Ид")
    if not product_id:
        logger.warning("product_without_id", name=text(element, "Наименование"))
        return None

    raw_description = text(element, "Описание")

    fields = {
        "id": product_id,
        "sku": text(element, "Артикул"),
        "name": text(element, "Наименование"),
        "description": clean_description(raw_description),
        "short_description": raw_description,
        "barcode": text(element, "Штрихкод"),
        "unit": text(element, "БазоваяЕдиница", default="шт") or "шт",
        "category_ids": [text(g) for g in children(child(element, "Группы"), "Ид") if text(g)],
        "image_paths": [text(i) for i in children(element, "Картинка") if text(i)],
        "attributes": _parse_attribute_values(element, properties),
        "status": ProductStatus.ACTIVE,
    }

    if attribute(element, "Статус") == DELETED_STATUS_ATTRIBUTE:
        fields["status"] = ProductStatus.DELETED

    for name, value in requisites(element):
        if name == REQUISITE_WEIGHT:
            fields["weight"] = parse_number(value)
        elif name == REQUISITE_PRODUCT_TYPE:
            fields["product_type"] = value
        elif name == REQUISITE_DELETION_MARK:
            if value.lower() in ("true", "1"):
                fields["status"] = ProductStatus.DELETED
        elif name == REQUISITE_MANUFACTURER:
            fields["manufacturer"] = value

    return Product(**fields)


def _parse_attribute_values(
    element: etree._Element,
    properties: dict[str, Property]
) -> dict[str, ProductAttribute]:
    """Resolve ЗначенияСвойств through each property's value dictionary."""
    attributes: dict[str, ProductAttribute] = {}

    for entry in children(path(element, "ЗначенияСвойств"), "ЗначенияСвойства"):
        property_id = text(entry, "Ид")
        value = text(entry, "Значение")
        if not property_id or not value:
            continue

        prop = properties.get(property_id)
        if prop is not None and value in prop.values:
            value = prop.values[value]

        attributes[property_id] = ProductAttribute(
            id=property_id,
            name=prop.name if prop is not None and prop.name else property_id,
            value=value,
        )

    return attributes


def clean_description(description: str) -> str:
    """
    Decode HTML entities and keep only allow-listed tags.

    '&lt;p&gt;Tile &lt;script&gt;x&lt;/script&gt;&lt;/p&gt;' -> '<p>Tile x</p>'
    """
    if not description:
        return ""

    decoded = html.unescape(description)

    def _keep_allowed(match: re.Match) -> str:
        return match.group(0) if match.group(1).lower() in ALLOWED_DESCRIPTION_TAGS else ""

    return _TAG_RE.sub(_keep_allowed, decoded).strip()
