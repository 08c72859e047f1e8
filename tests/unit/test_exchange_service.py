"""
Unit tests for ExchangeService.

Drives the protocol steps against in-memory stores, a temporary
exchange directory and a settable clock.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from services.exchange_service import ExchangeService, resolve_step
from services.sync_log_service import SyncDirection, SyncStatus
from models.catalog import EntityType
from models.exchange import ExchangeKind, ExchangeMode, SessionState
from exceptions import (
    AuthenticationFailedError,
    DatabaseError,
    EmptyPayloadError,
    ExchangeDisabledError,
    ExchangeFileNotFoundError,
    InvalidExchangeTransitionError,
    MalformedDocumentError,
    SessionExpiredError,
    UnknownExchangeTypeError,
    UnknownModeError,
)
from tests.factories import (
    OrderFactory,
    catalog_document,
    document,
    group,
    offer,
    offers_document,
    order_update,
    price,
    price_type,
    product,
)


def make_service(catalog_store, order_store, settings, clock, **kwargs) -> ExchangeService:
    return ExchangeService(
        catalog_store=catalog_store,
        order_store=order_store,
        settings=settings,
        clock=clock,
        **kwargs
    )


def upload(service, filename: str, content: bytes, session=None, chunk_size: int = 64) -> None:
    """Send a document in several file requests."""
    for start in range(0, len(content), chunk_size):
        service.receive_chunk(filename, content[start:start + chunk_size], session)


# ===================
# STEP RESOLUTION TESTS
# ===================

class TestResolveStep:
    """Tests for type/mode validation."""

    def test_valid_steps(self):
        assert resolve_step("catalog", "checkauth") == (ExchangeKind.CATALOG, ExchangeMode.CHECKAUTH)
        assert resolve_step("SALE", "query") == (ExchangeKind.SALE, ExchangeMode.QUERY)
        assert resolve_step("sale", "file") == (ExchangeKind.SALE, ExchangeMode.FILE)

    def test_unknown_type(self):
        with pytest.raises(UnknownExchangeTypeError):
            resolve_step("stock", "init")
        with pytest.raises(UnknownExchangeTypeError):
            resolve_step(None, "init")

    def test_unknown_mode(self):
        with pytest.raises(UnknownModeError):
            resolve_step("catalog", "deactivate")

    def test_mode_not_valid_for_type(self):
        with pytest.raises(UnknownModeError):
            resolve_step("catalog", "query")
        with pytest.raises(UnknownModeError):
            resolve_step("sale", "import")


# ===================
# AUTH / SESSION TESTS
# ===================

class TestAuthentication:
    """Tests for credentials and session lifecycle."""

    def test_disabled(self, catalog_store, order_store, test_settings, clock):
        settings = test_settings.model_copy(update={"exchange_enabled": False})
        service = make_service(catalog_store, order_store, settings, clock)

        with pytest.raises(ExchangeDisabledError):
            service.check_enabled()

    def test_open_when_no_credentials_configured(self, exchange_service):
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        assert session.state == SessionState.AUTHENTICATED
        assert len(session.session_id) == 32

    def test_credentials_checked(self, catalog_store, order_store, test_settings, clock):
        settings = test_settings.model_copy(update={"exchange_username": "1c", "exchange_password": "secret"})
        service = make_service(catalog_store, order_store, settings, clock)

        with pytest.raises(AuthenticationFailedError):
            service.authenticate(ExchangeKind.CATALOG, "1c", "wrong")
        with pytest.raises(AuthenticationFailedError):
            service.authenticate(ExchangeKind.CATALOG, None, None)

        session = service.authenticate(ExchangeKind.CATALOG, "1c", "secret")
        assert session.session_id in service.sessions

    def test_session_lookup(self, exchange_service):
        session = exchange_service.authenticate(ExchangeKind.SALE, None, None)

        assert exchange_service.get_session(session.session_id) is session

    def test_unknown_token(self, exchange_service):
        with pytest.raises(SessionExpiredError):
            exchange_service.get_session("not-a-session")

    def test_sessionless_request(self, exchange_service):
        assert exchange_service.get_session(None) is None

    def test_required_session(self, catalog_store, order_store, test_settings, clock):
        settings = test_settings.model_copy(update={"require_session": True})
        service = make_service(catalog_store, order_store, settings, clock)

        with pytest.raises(SessionExpiredError):
            service.get_session(None)

    def test_session_bound_to_kind(self, exchange_service):
        """A catalog session cannot drive a sale exchange."""
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        assert exchange_service.get_session(session.session_id, ExchangeKind.CATALOG) is session
        with pytest.raises(SessionExpiredError):
            exchange_service.get_session(session.session_id, ExchangeKind.SALE)

    def test_session_expires(self, exchange_service, clock):
        # Arrange
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        # Act
        clock.advance(seconds=3601)

        # Assert
        with pytest.raises(SessionExpiredError):
            exchange_service.get_session(session.session_id)
        assert session.state == SessionState.EXPIRED
        assert session.session_id not in exchange_service.sessions

    def test_expired_sessions_purged_on_checkauth(self, exchange_service, clock):
        old = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        clock.advance(hours=2)

        exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        assert old.session_id not in exchange_service.sessions
        assert len(exchange_service.sessions) == 1


# ===================
# INIT / FILE TESTS
# ===================

class TestInitAndFile:
    """Tests for init and chunk uploads."""

    def test_init_parameters(self, exchange_service):
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        params = exchange_service.initialize(ExchangeKind.CATALOG, session)

        assert session.state == SessionState.INITIALIZED
        assert params.zip is False
        assert params.file_limit == 64 * 1024 * 1024
        assert params.to_body() == f"zip=no\nfile_limit={64 * 1024 * 1024}"

    def test_file_before_init_rejected(self, exchange_service):
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)

        with pytest.raises(InvalidExchangeTransitionError):
            exchange_service.receive_chunk("import.xml", b"<a/>", session)

    def test_chunks_concatenated(self, exchange_service, exchange_dir):
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        exchange_service.initialize(ExchangeKind.CATALOG, session)

        exchange_service.receive_chunk("import.xml", b"AB", session)
        exchange_service.receive_chunk("import.xml", b"CD", session)

        assert (exchange_dir / "import.xml").read_bytes() == b"ABCD"
        assert session.state == SessionState.RECEIVING

    def test_leftover_file_replaced_in_new_session(self, exchange_service, exchange_dir):
        (exchange_dir / "import.xml").write_bytes(b"LEFTOVER")
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        exchange_service.initialize(ExchangeKind.CATALOG, session)

        exchange_service.receive_chunk("import.xml", b"NEW", session)

        assert (exchange_dir / "import.xml").read_bytes() == b"NEW"

    def test_sessionless_chunks_append(self, exchange_service, exchange_dir):
        exchange_service.receive_chunk("import.xml", b"AB")
        exchange_service.receive_chunk("import.xml", b"CD")

        assert (exchange_dir / "import.xml").read_bytes() == b"ABCD"

    def test_empty_chunk_does_not_advance(self, exchange_service):
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        exchange_service.initialize(ExchangeKind.CATALOG, session)

        with pytest.raises(EmptyPayloadError):
            exchange_service.receive_chunk("import.xml", b"", session)

        assert session.state == SessionState.INITIALIZED


# ===================
# CATALOG IMPORT TESTS
# ===================

class TestCommitCatalog:
    """Tests for the import step."""

    def test_full_catalog_exchange(self, exchange_service, catalog_store):
        """checkauth -> init -> file -> import creates categories and products."""
        # Arrange
        content = catalog_document(
            groups=group("grp-root", "Плитка", children=group("grp-child", "Керамогранит")),
            products=product("prod-1", "Nogal", sku="NOGAL-01", groups=("grp-child",)),
        )
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        exchange_service.initialize(ExchangeKind.CATALOG, session)
        upload(exchange_service, "import.xml", content, session)

        # Act
        stats = exchange_service.commit_catalog("import.xml", session)

        # Assert
        assert stats.created == 3
        assert stats.failed == 0
        assert session.state == SessionState.COMMITTED
        assert len(catalog_store.mapped(EntityType.CATEGORY)) == 2
        assert len(catalog_store.mapped(EntityType.PRODUCT)) == 1
        child_id = catalog_store.resolve_guid("grp-child", EntityType.CATEGORY)
        product_id = catalog_store.resolve_guid("prod-1", EntityType.PRODUCT)
        assert catalog_store.products[product_id]["category_ids"] == [child_id]
        assert "price" not in catalog_store.products[product_id]

    def test_offers_after_catalog(self, exchange_service, catalog_store):
        # Arrange
        session = exchange_service.authenticate(ExchangeKind.CATALOG, None, None)
        exchange_service.initialize(ExchangeKind.CATALOG, session)
        upload(exchange_service, "import.xml", catalog_document(products=product("prod-1", "Nogal")), session)
        exchange_service.commit_catalog("import.xml", session)

        offers = offers_document(
            price_types=price_type("pt-retail", "Розничная"),
            offers=offer("prod-1", prices=price("pt-retail", "1 250,00"), quantity="4")
            + offer("unknown", prices=price("pt-retail", "1")),
        )
        upload(exchange_service, "offers.xml", offers, session)

        # Act
        stats = exchange_service.commit_catalog("offers.xml", session)

        # Assert
        assert stats.updated == 1
        assert stats.not_found == 1
        saved = catalog_store.products[catalog_store.resolve_guid("prod-1", EntityType.PRODUCT)]
        assert saved["price"] == 1250.0
        assert saved["stock_quantity"] == 4

    def test_default_file(self, exchange_service, catalog_store):
        exchange_service.receive_chunk("import.xml", catalog_document(groups=group("g1", "Плитка")))

        stats = exchange_service.commit_catalog()

        assert stats.created == 1

    def test_no_files(self, exchange_service):
        with pytest.raises(ExchangeFileNotFoundError):
            exchange_service.commit_catalog()

    def test_named_file_missing(self, exchange_service):
        with pytest.raises(ExchangeFileNotFoundError):
            exchange_service.commit_catalog("offers.xml")

    def test_kind_sniffed_for_other_names(self, exchange_service, catalog_store):
        exchange_service.receive_chunk("catalog_1.xml", catalog_document(groups=group("g1", "Плитка")))

        stats = exchange_service.commit_catalog("catalog_1.xml")

        assert stats.created == 1

    def test_malformed_document(self, catalog_store, order_store, test_settings, clock):
        sync_log = MagicMock()
        service = make_service(catalog_store, order_store, test_settings, clock, sync_log=sync_log)
        content = catalog_document(groups=group("g1", "Плитка"))
        service.receive_chunk("import.xml", content[:-40])

        with pytest.raises(MalformedDocumentError):
            service.commit_catalog("import.xml")

        args = sync_log.record.call_args.args
        assert args[0] == "catalog_import"
        assert args[2] == SyncStatus.FAILED

    def test_store_failure_logged(self, catalog_store, order_store, test_settings, clock):
        # Arrange
        sync_log = MagicMock()
        reconciliation = MagicMock()
        reconciliation.reconcile_categories.side_effect = DatabaseError("resolve_guid", "timeout")
        service = make_service(
            catalog_store, order_store, test_settings, clock,
            sync_log=sync_log, reconciliation=reconciliation
        )
        service.receive_chunk("import.xml", catalog_document(groups=group("g1", "Плитка")))

        # Act
        with pytest.raises(DatabaseError):
            service.commit_catalog("import.xml")

        # Assert
        args = sync_log.record.call_args.args
        assert args[:3] == ("catalog_import", SyncDirection.INCOMING, SyncStatus.FAILED)
        assert "timeout" in args[3]

    def test_sync_log_recorded(self, catalog_store, order_store, test_settings, clock):
        sync_log = MagicMock()
        service = make_service(catalog_store, order_store, test_settings, clock, sync_log=sync_log)
        service.receive_chunk("import.xml", catalog_document(groups=group("g1", "Плитка")))

        service.commit_catalog("import.xml")

        call = sync_log.record.call_args
        assert call.args[:3] == ("catalog_import", SyncDirection.INCOMING, SyncStatus.SUCCESS)
        assert call.kwargs["items_processed"] == 1


# ===================
# SALE TESTS
# ===================

class TestSaleExchange:
    """Tests for query, success and inbound order files."""

    @pytest.fixture
    def orders(self, order_store):
        order_store.orders = [
            OrderFactory.create(local_id="1", export_guid="guid-1", status="processing"),
            OrderFactory.create(local_id="2", export_guid="guid-2", status="completed", total=Decimal("99.90")),
            OrderFactory.create(local_id="3", export_guid="guid-3", status="pending"),
        ]
        return order_store.orders

    def test_query_exports_pending_orders(self, exchange_service, orders):
        session = exchange_service.authenticate(ExchangeKind.SALE, None, None)
        exchange_service.initialize(ExchangeKind.SALE, session)

        content = exchange_service.export_orders(session)

        assert "guid-1".encode() in content
        assert "guid-2".encode() in content
        assert "guid-3".encode() not in content
        assert session.exported_order_ids == ["1", "2"]

    def test_success_marks_queried_orders(self, exchange_service, order_store, orders):
        # Arrange
        session = exchange_service.authenticate(ExchangeKind.SALE, None, None)
        exchange_service.initialize(ExchangeKind.SALE, session)
        exchange_service.export_orders(session)

        # Act
        marked = exchange_service.confirm_exported(session)

        # Assert
        assert marked == 2
        assert order_store.exported == {"1", "2"}
        assert session.exported_order_ids == []
        assert exchange_service.export_orders(session).count("<Документ>".encode()) == 0

    def test_success_without_query_uses_pending(self, exchange_service, order_store, orders):
        marked = exchange_service.confirm_exported()

        assert marked == 2
        assert order_store.exported == {"1", "2"}

    def test_query_before_init_rejected(self, exchange_service, orders):
        session = exchange_service.authenticate(ExchangeKind.SALE, None, None)

        with pytest.raises(InvalidExchangeTransitionError):
            exchange_service.export_orders(session)

    def test_order_updates_applied(self, exchange_service, order_store, orders):
        content = document(
            order_update("guid-1", status="Выполнен", tracking_number="RU1")
            + order_update("guid-unknown", status="Отменен")
        )

        stats = exchange_service.receive_order_updates(content)

        assert stats.updated == 1
        assert stats.not_found == 1
        assert order_store.statuses == {"1": "completed"}
        assert order_store.applied[0].tracking_number == "RU1"

    def test_sale_file_waits_for_complete_document(self, exchange_service, order_store, exchange_dir, orders):
        """An orders file that does not parse yet is kept for the next chunk."""
        # Arrange
        content = document(order_update("guid-2", status="Выполнен"))
        session = exchange_service.authenticate(ExchangeKind.SALE, None, None)
        exchange_service.initialize(ExchangeKind.SALE, session)
        half = len(content) // 2

        # Act
        first = exchange_service.receive_sale_file("orders.xml", content[:half], session)
        second = exchange_service.receive_sale_file("orders.xml", content[half:], session)

        # Assert
        assert first is None
        assert second.updated == 1
        assert order_store.statuses == {"2": "completed"}
        assert not (exchange_dir / "orders.xml").exists()
        assert "orders.xml" not in session.received_paths

    def test_other_sale_files_only_stored(self, exchange_service, exchange_dir):
        result = exchange_service.receive_sale_file("import_files/a.jpg", b"\xff\xd8")

        assert result is None
        assert (exchange_dir / "import_files" / "a.jpg").exists()
