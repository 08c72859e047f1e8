"""
Order schemas for the sale exchange.

OrderExportRecord is the normalized view the orders document is built
from; OrderUpdate is what the ERP sends back.
"""

from pydantic import Field
from typing import Optional
from enum import Enum
from datetime import datetime
from decimal import Decimal

from models.base import BaseSchema


class OrderStatus(str, Enum):
    """Local order statuses."""
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


# Local -> foreign status labels written into the orders document
ORDER_STATUS_LABELS: dict[str, str] = {
    OrderStatus.PENDING.value: "Новый",
    OrderStatus.PROCESSING.value: "В обработке",
    OrderStatus.ON_HOLD.value: "На удержании",
    OrderStatus.COMPLETED.value: "Выполнен",
    OrderStatus.CANCELLED.value: "Отменен",
    OrderStatus.REFUNDED.value: "Возврат",
    OrderStatus.FAILED.value: "Ошибка",
}

# Foreign -> local, includes labels the ERP uses that we never send
FOREIGN_STATUS_MAP: dict[str, OrderStatus] = {
    "Новый": OrderStatus.PENDING,
    "В обработке": OrderStatus.PROCESSING,
    "На удержании": OrderStatus.ON_HOLD,
    "Выполнен": OrderStatus.COMPLETED,
    "Отменен": OrderStatus.CANCELLED,
    "Возврат": OrderStatus.REFUNDED,
    "Ошибка": OrderStatus.FAILED,
    "Отгружен": OrderStatus.COMPLETED,
    "Оплачен": OrderStatus.PROCESSING,
}


def status_label(status: str) -> str:
    """Foreign label for a local status; unknown statuses pass through."""
    return ORDER_STATUS_LABELS.get(status, status)


def status_from_label(label: str) -> Optional[OrderStatus]:
    """Local status for a foreign label, None if the label is unknown."""
    return FOREIGN_STATUS_MAP.get(label.strip())


class Address(BaseSchema):
    """Billing or shipping address of an order."""
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""
    email: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def has_location(self) -> bool:
        return any([self.postcode, self.country, self.state, self.city, self.address_1])


class OrderLineItem(BaseSchema):
    """One line of an exported order."""
    id: str
    product_id: str = ""
    variation_id: str = ""
    foreign_product_id: str = Field("", description="ERP GUID of the product, if mapped")
    name: str = ""
    sku: str = ""
    quantity: Decimal = Decimal("0")
    price: Decimal = Field(Decimal("0"), description="Unit price before discounts")
    total: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")

    @property
    def export_id(self) -> str:
        """ERP id if known, else the local product id."""
        return self.foreign_product_id or self.variation_id or self.product_id


class OrderExportRecord(BaseSchema):
    """Normalized local order ready for the orders document."""
    local_id: str = Field(..., description="Local order ID")
    export_guid: str = Field(..., description="Stable GUID sent to the ERP")
    number: str
    created_at: datetime
    status: str = OrderStatus.PENDING.value
    currency: str = "RUB"
    total: Decimal = Decimal("0")
    customer_guid: str = ""
    customer_note: str = ""
    payment_method: str = ""
    shipping_method: str = ""
    shipping_total: Decimal = Decimal("0")
    paid_date: Optional[str] = None
    billing: Address = Field(default_factory=Address)
    shipping: Address = Field(default_factory=Address)
    items: list[OrderLineItem] = Field(default_factory=list)


class OrderUpdate(BaseSchema):
    """Order status update received from the ERP."""
    order_guid: str = Field(..., min_length=1)
    number: str = ""
    status: Optional[str] = Field(None, description="Foreign status label")
    tracking_number: Optional[str] = None
    erp_document_number: Optional[str] = None
