"""
Parser for order documents sent back by the ERP (sale exchange `file` mode).

Only the document identity and three requisites are read: the order
status label, the shipment tracking number and the ERP document number.
"""

import structlog

from lxml import etree

from models.orders import OrderUpdate
from parsers.commerceml import load_document, children, text, requisites

logger = structlog.get_logger(__name__)

REQUISITE_STATUS = "Статус заказа"
REQUISITE_TRACKING_NUMBER = "Номер отправления"
REQUISITE_DOCUMENT_NUMBER = "Номер документа 1С"


def parse_order_updates(content: bytes) -> list[OrderUpdate]:
    """
    Parse an inbound orders document.

    Documents sit directly under the root or, in newer schema versions,
    inside Контейнер elements. Documents without an Ид are skipped.

    Raises:
        MalformedDocumentError: If the document is not well-formed XML
    """
    root = load_document(content)

    documents = list(children(root, "Документ"))
    for container in children(root, "Контейнер"):
        documents.extend(children(container, "Документ"))

    updates = []
    for document in documents:
        update = _parse_document(document)
        if update is not None:
            updates.append(update)

    logger.info("order_updates_parsed", documents=len(documents), updates=len(updates))

    return updates


def _parse_document(document: etree._Element) -> OrderUpdate | None:
    order_guid = text(document, "Ид")
    if not order_guid:
        logger.warning("order_document_without_id", number=text(document, "Номер"))
        return None

    fields = {"order_guid": order_guid, "number": text(document, "Номер")}

    for name, value in requisites(document):
        if name == REQUISITE_STATUS:
            fields["status"] = value
        elif name == REQUISITE_TRACKING_NUMBER:
            fields["tracking_number"] = value
        elif name == REQUISITE_DOCUMENT_NUMBER:
            fields["erp_document_number"] = value

    return OrderUpdate(**fields)
