"""
Order export service: generate the CommerceML orders document.

Serializes OrderExportRecords into the document the ERP pulls in the
sale `query` step. Output is pretty-printed UTF-8 and identical for
identical input when generated_at is fixed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from lxml import etree
import structlog

from models.orders import Address, OrderExportRecord, OrderLineItem, status_label

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = "2.10"
DEFAULT_CURRENCY = "RUB"

# Base unit written on every line (piece, OKEI code 796)
BASE_UNIT = "шт"
BASE_UNIT_CODE = "796"
BASE_UNIT_FULL_NAME = "Штука"

# (requisite label, Address field) in emission order
ADDRESS_FIELDS = [
    ("Почтовый индекс", "postcode"),
    ("Страна", "country"),
    ("Регион", "state"),
    ("Город", "city"),
    ("Улица", "address_1"),
]


def format_number(value: Decimal) -> str:
    """
    Plain decimal string without exponent or trailing zeros.

    Decimal("1500.00") → "1500", Decimal("12.50") → "12.5"
    """
    value = Decimal(value)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return format(value.normalize(), "f")


def _add(parent: etree._Element, tag: str, text: Optional[str] = None) -> etree._Element:
    element = etree.SubElement(parent, tag)
    if text is not None:
        element.text = text
    return element


class OrderExportService:
    """Builds CommerceML orders documents."""

    def generate_orders_document(
        self,
        orders: list[OrderExportRecord],
        generated_at: Optional[datetime] = None
    ) -> bytes:
        """
        Serialize orders into a КоммерческаяИнформация document.

        Args:
            orders: Orders in export order
            generated_at: Value of ДатаФормирования (defaults to now)

        Returns:
            UTF-8 encoded XML with declaration
        """
        if generated_at is None:
            generated_at = datetime.now()

        logger.info("generating_orders_document", order_count=len(orders))

        root = etree.Element("КоммерческаяИнформация")
        root.set("ВерсияСхемы", SCHEMA_VERSION)
        root.set("ДатаФормирования", generated_at.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%S"))

        for order in orders:
            self._add_document(root, order)

        content = etree.tostring(
            root,
            xml_declaration=True,
            encoding="UTF-8",
            pretty_print=True,
        )

        logger.info("orders_document_generated", order_count=len(orders), size=len(content))

        return content

    def _add_document(self, root: etree._Element, order: OrderExportRecord) -> None:
        doc = _add(root, "Документ")

        _add(doc, "Ид", order.export_guid)
        _add(doc, "Номер", order.number)
        _add(doc, "Дата", order.created_at.strftime("%Y-%m-%d"))
        _add(doc, "Время", order.created_at.strftime("%H:%M:%S"))
        _add(doc, "ХозОперация", "Заказ товара")
        _add(doc, "Роль", "Продавец")
        _add(doc, "Валюта", order.currency or DEFAULT_CURRENCY)
        _add(doc, "Курс", "1")
        _add(doc, "Сумма", format_number(order.total))
        _add(doc, "Комментарий", order.customer_note)

        requisites = _add(doc, "ЗначенияРеквизитов")
        for name, value in [
            ("Статус заказа", status_label(order.status)),
            ("Дата оплаты", order.paid_date or ""),
            ("Способ оплаты", order.payment_method),
            ("Способ доставки", order.shipping_method),
            ("Итого по доставке", format_number(order.shipping_total)),
        ]:
            requisite = _add(requisites, "ЗначениеРеквизита")
            _add(requisite, "Наименование", name)
            _add(requisite, "Значение", value)

        self._add_counterparty(doc, order)

        items = _add(doc, "Товары")
        for item in order.items:
            self._add_item(items, item)

    def _add_counterparty(self, doc: etree._Element, order: OrderExportRecord) -> None:
        billing = order.billing

        counterparty = _add(_add(doc, "Контрагенты"), "Контрагент")
        _add(counterparty, "Ид", order.customer_guid)
        _add(counterparty, "Наименование", billing.company or billing.full_name)
        _add(counterparty, "Роль", "Покупатель")
        _add(counterparty, "ПолноеНаименование", billing.full_name)

        self._add_address(_add(counterparty, "АдресРегистрации"), billing)

        if order.shipping.has_location:
            self._add_address(_add(counterparty, "Адрес"), order.shipping)

        contacts = [
            (kind, value)
            for kind, value in (("Почта", billing.email), ("Телефон", billing.phone))
            if value
        ]
        if contacts:
            contacts_element = _add(counterparty, "Контакты")
            for kind, value in contacts:
                contact = _add(contacts_element, "Контакт")
                _add(contact, "Тип", kind)
                _add(contact, "Значение", value)

    @staticmethod
    def _add_address(parent: etree._Element, address: Address) -> None:
        for label, field_name in ADDRESS_FIELDS:
            value = getattr(address, field_name)
            if not value:
                continue
            address_field = _add(parent, "АдресноеПоле")
            _add(address_field, "Тип", label)
            _add(address_field, "Значение", value)

    @staticmethod
    def _add_item(items: etree._Element, item: OrderLineItem) -> None:
        product = _add(items, "Товар")
        _add(product, "Ид", item.export_id)
        _add(product, "Артикул", item.sku)
        _add(product, "Наименование", item.name)

        unit = _add(product, "БазоваяЕдиница", BASE_UNIT)
        unit.set("Код", BASE_UNIT_CODE)
        unit.set("НаименованиеПолное", BASE_UNIT_FULL_NAME)

        _add(product, "ЦенаЗаЕдиницу", format_number(item.price))
        _add(product, "Количество", format_number(item.quantity))
        _add(product, "Сумма", format_number(item.total))

        if item.discount:
            discount = _add(_add(product, "Скидки"), "Скидка")
            _add(discount, "Наименование", "Скидка")
            _add(discount, "Сумма", format_number(item.discount))
            _add(discount, "УчтеноВСумме", "true")


# Singleton instance
_order_export_service: Optional[OrderExportService] = None


def get_order_export_service() -> OrderExportService:
    """Get or create OrderExportService instance."""
    global _order_export_service
    if _order_export_service is None:
        _order_export_service = OrderExportService()
    return _order_export_service


def generate_orders_document(
    orders: list[OrderExportRecord],
    generated_at: Optional[datetime] = None
) -> bytes:
    """Shortcut for get_order_export_service().generate_orders_document()."""
    return get_order_export_service().generate_orders_document(orders, generated_at)
