"""
CommerceML offers parser (offers.xml).

Extracts price types, warehouses and per-offer prices, stock and
variation characteristics. Price type names are resolved against the
table of the same document only.
"""

from dataclasses import dataclass, field
import structlog

from lxml import etree

from models.catalog import (
    PriceType,
    Warehouse,
    Offer,
    OfferPrice,
    WarehouseStock,
    Characteristic,
)
from parsers.commerceml import (
    load_document,
    child,
    children,
    text,
    attribute,
    parse_number,
)

logger = structlog.get_logger(__name__)

DEFAULT_CURRENCY = "RUB"


@dataclass
class OffersParseResult:
    """Result of parsing an offers document."""
    price_types: dict[str, PriceType] = field(default_factory=dict)
    warehouses: dict[str, Warehouse] = field(default_factory=dict)
    offers: dict[str, Offer] = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        """True if any offers were parsed."""
        return len(self.offers) > 0

    def to_dict(self) -> dict:
        """Summary for logs and API responses."""
        return {
            "price_types": len(self.price_types),
            "warehouses": len(self.warehouses),
            "offers": len(self.offers),
        }


def parse_offers(content: bytes) -> OffersParseResult:
    """
    Parse an offers document.

    Args:
        content: Raw document bytes in any declared encoding

    Returns:
        OffersParseResult keyed by foreign GUID

    Raises:
        MalformedDocumentError: If the document is not well-formed XML
    """
    logger.info("parsing_offers_document", size=len(content))

    root = load_document(content)
    result = OffersParseResult()

    package = child(root, "ПакетПредложений")
    if package is None:
        logger.warning("offers_package_missing")
        return result

    for element in children(child(package, "ТипыЦен"), "ТипЦены"):
        price_type_id = text(element, "Ид")
        if price_type_id:
            result.price_types[price_type_id] = PriceType(
                id=price_type_id,
                name=text(element, "Наименование"),
                currency=text(element, "Валюта", default=DEFAULT_CURRENCY) or DEFAULT_CURRENCY,
            )

    for element in children(child(package, "Склады"), "Склад"):
        warehouse_id = text(element, "Ид")
        if warehouse_id:
            result.warehouses[warehouse_id] = Warehouse(
                id=warehouse_id,
                name=text(element, "Наименование"),
            )

    for element in children(child(package, "Предложения"), "Предложение"):
        offer = _parse_offer(element, result)
        if offer is not None:
            result.offers[offer.id] = offer

    logger.info("offers_document_parsed", **result.to_dict())

    return result


def _parse_offer(element: etree._Element, result: OffersParseResult) -> Offer | None:
    """Parse a single Предложение element."""
    offer_id = text(element, "Ид")
    if not offer_id:
        logger.warning("offer_without_id", name=text(element, "Наименование"))
        return None

    prices: dict[str, OfferPrice] = {}
    for price in children(child(element, "Цены"), "Цена"):
        type_id = text(price, "ИдТипаЦены")
        price_type = result.price_types.get(type_id)
        prices[type_id] = OfferPrice(
            type_id=type_id,
            type_name=price_type.name if price_type else "",
            amount=parse_number(text(price, "ЦенаЗаЕдиницу")),
            currency=text(price, "Валюта")
                or (price_type.currency if price_type else DEFAULT_CURRENCY),
            unit=text(price, "Единица"),
        )

    stock = _parse_warehouse_stock(element, result.warehouses)
    if stock:
        total_stock = sum(entry.quantity for entry in stock.values())
    else:
        total_stock = parse_number(text(element, "Количество"))

    characteristics = [
        Characteristic(
            id=text(entry, "Ид"),
            name=text(entry, "Наименование"),
            value=text(entry, "Значение"),
        )
        for entry in children(child(element, "ХарактеристикиТовара"), "ХарактеристикаТовара")
        if text(entry, "Наименование")
    ]

    return Offer(
        id=offer_id,
        sku=text(element, "Артикул"),
        name=text(element, "Наименование"),
        prices=prices,
        stock_by_warehouse=stock,
        total_stock=total_stock,
        characteristics=characteristics,
    )


def _parse_warehouse_stock(
    element: etree._Element,
    warehouses: dict[str, Warehouse]
) -> dict[str, WarehouseStock]:
    """
    Collect per-warehouse quantities.

    Two layouts are in use:
        <Склад ИдСклада="..." КоличествоНаСкладе="..."/>
        <Остатки><Остаток><Склад><Ид/><Количество/></Склад></Остаток></Остатки>
    Quantities for the same warehouse are added up.
    """
    stock: dict[str, WarehouseStock] = {}

    def _add(warehouse_id: str, quantity: float) -> None:
        if not warehouse_id:
            return
        if warehouse_id in stock:
            stock[warehouse_id].quantity += quantity
            return
        warehouse = warehouses.get(warehouse_id)
        stock[warehouse_id] = WarehouseStock(
            warehouse_id=warehouse_id,
            warehouse_name=warehouse.name if warehouse else "",
            quantity=quantity,
        )

    for entry in children(element, "Склад"):
        _add(
            attribute(entry, "ИдСклада"),
            parse_number(attribute(entry, "КоличествоНаСкладе")),
        )

    for remainder in children(child(element, "Остатки"), "Остаток"):
        for entry in children(remainder, "Склад"):
            _add(text(entry, "Ид"), parse_number(text(entry, "Количество")))

    return stock
