"""
CommerceML document parsers.
"""

from parsers.commerceml import (
    load_document,
    normalize_encoding,
    detect_encoding,
    detect_document_kind,
)
from parsers.catalog_parser import parse_catalog, CatalogParseResult
from parsers.offers_parser import parse_offers, OffersParseResult
from parsers.order_update_parser import parse_order_updates

__all__ = [
    "load_document",
    "normalize_encoding",
    "detect_encoding",
    "detect_document_kind",
    "parse_catalog",
    "CatalogParseResult",
    "parse_offers",
    "OffersParseResult",
    "parse_order_updates",
]
