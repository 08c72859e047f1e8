"""
Exchange service: the CommerceML exchange protocol.

Drives an exchange session through
    checkauth -> init -> file* -> import   (catalog)
    checkauth -> init -> query -> success  (sale, plus inbound order files)

Sessions live in process memory and expire lazily: a session is only
checked when it is used, and expired sessions are purged on checkauth
and init.
"""

from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
import secrets
from typing import Callable, Optional
import structlog

from config.settings import Settings, get_settings
from exceptions import (
    AppError,
    AuthenticationFailedError,
    EmptyPayloadError,
    ExchangeDisabledError,
    ExchangeFileNotFoundError,
    InvalidExchangeTransitionError,
    MalformedDocumentError,
    SessionExpiredError,
    UnknownExchangeTypeError,
    UnknownModeError,
)
from models.catalog import DocumentKind, SyncStats
from models.exchange import (
    MODES_BY_KIND,
    ExchangeKind,
    ExchangeMode,
    ExchangeSession,
    ProtocolParameters,
    SessionState,
    is_valid_session_transition,
)
from parsers import detect_document_kind, parse_catalog, parse_offers, parse_order_updates
from services.catalog_store import CatalogStore, get_catalog_store
from services.exchange_file_service import ExchangeFileService, validate_relative_path
from services.order_export_service import OrderExportService
from services.order_store import OrderStore, get_order_store
from services.reconciliation_service import ReconciliationService
from services.sync_log_service import (
    SyncDirection,
    SyncLogService,
    SyncStatus,
    get_sync_log_service,
)

logger = structlog.get_logger(__name__)

# Files looked for, in order, when import is called without a filename
DEFAULT_IMPORT_FILES = ("import.xml", "offers.xml")

ORDERS_FILE_MARKER = "orders"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_step(exchange_type: Optional[str], mode: Optional[str]) -> tuple[ExchangeKind, ExchangeMode]:
    """
    Validate the type and mode query parameters.

    Raises:
        UnknownExchangeTypeError: type is not catalog or sale
        UnknownModeError: mode is not valid for the type
    """
    try:
        kind = ExchangeKind((exchange_type or "").strip().lower())
    except ValueError:
        raise UnknownExchangeTypeError(exchange_type or "")

    try:
        step = ExchangeMode((mode or "").strip().lower())
    except ValueError:
        raise UnknownModeError(kind.value, mode or "")

    if step not in MODES_BY_KIND[kind]:
        raise UnknownModeError(kind.value, step.value)

    return kind, step


def _summary(stats: SyncStats) -> str:
    return (
        f"created={stats.created} updated={stats.updated} skipped={stats.skipped} "
        f"not_found={stats.not_found} failed={stats.failed}"
    )


class ExchangeService:
    """
    Exchange session state machine.

    Collaborators are injected; get_exchange_service() wires the
    Supabase-backed ones.
    """

    def __init__(
        self,
        catalog_store: CatalogStore,
        order_store: OrderStore,
        sync_log: Optional[SyncLogService] = None,
        files: Optional[ExchangeFileService] = None,
        reconciliation: Optional[ReconciliationService] = None,
        exporter: Optional[OrderExportService] = None,
        settings: Optional[Settings] = None,
        log=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.settings = settings or get_settings()
        self.logger = log or logger
        self.catalog_store = catalog_store
        self.order_store = order_store
        self.sync_log = sync_log
        self.files = files or ExchangeFileService(settings=self.settings, log=self.logger)
        self.reconciliation = reconciliation or ReconciliationService(
            catalog_store,
            settings=self.settings,
            log=self.logger
        )
        self.exporter = exporter or OrderExportService()
        self.clock = clock or _utcnow
        self.sessions: dict[str, ExchangeSession] = {}

    # ===================
    # ACCESS
    # ===================

    def check_enabled(self) -> None:
        """
        Raises:
            ExchangeDisabledError: Exchange switched off in settings
        """
        if not self.settings.exchange_enabled:
            raise ExchangeDisabledError()

    def verify_credentials(self, username: Optional[str], password: Optional[str]) -> None:
        """
        Compare Basic credentials in constant time.

        Passes when no credentials are configured.

        Raises:
            AuthenticationFailedError: Missing or wrong credentials
        """
        if not self.settings.auth_configured:
            return

        user_ok = secrets.compare_digest(
            (username or "").encode("utf-8"),
            self.settings.exchange_username.encode("utf-8")
        )
        password_ok = secrets.compare_digest(
            (password or "").encode("utf-8"),
            self.settings.exchange_password.encode("utf-8")
        )
        if not (user_ok and password_ok):
            self.logger.warning("exchange_authentication_failed", username=username)
            raise AuthenticationFailedError()

    # ===================
    # SESSIONS
    # ===================

    def authenticate(
        self,
        kind: ExchangeKind,
        username: Optional[str],
        password: Optional[str]
    ) -> ExchangeSession:
        """
        checkauth: verify credentials and open a session.

        Raises:
            AuthenticationFailedError: Missing or wrong credentials
        """
        self.verify_credentials(username, password)
        self.purge_expired()

        now = self.clock()
        session = ExchangeSession(
            session_id=secrets.token_hex(16),
            kind=kind,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.session_ttl_seconds),
            state=SessionState.UNAUTHENTICATED,
        )
        self._advance(session, SessionState.AUTHENTICATED)
        self.sessions[session.session_id] = session

        self.logger.info(
            "exchange_session_started",
            kind=kind.value,
            session_id=session.session_id,
            expires_at=session.expires_at.isoformat()
        )
        return session

    def get_session(
        self,
        session_id: Optional[str],
        kind: Optional[ExchangeKind] = None
    ) -> Optional[ExchangeSession]:
        """
        Session for a token.

        Returns None for requests without a token unless sessions are
        required. When a kind is given the session must have been opened
        for it.

        Raises:
            SessionExpiredError: Unknown or expired token, a token opened for
                another exchange type, or a required token missing
        """
        if not session_id:
            if self.settings.require_session:
                raise SessionExpiredError()
            return None

        session = self.sessions.get(session_id)
        if session is None:
            raise SessionExpiredError(session_id)

        if session.is_expired(self.clock()):
            self._expire(session)
            raise SessionExpiredError(session_id)

        if kind is not None and session.kind != kind:
            self.logger.warning(
                "exchange_session_kind_mismatch",
                session_id=session_id,
                session_kind=session.kind.value,
                requested_kind=kind.value
            )
            raise SessionExpiredError(session_id)

        return session

    def purge_expired(self) -> int:
        """Drop expired sessions; returns how many were dropped."""
        now = self.clock()
        expired = [s for s in self.sessions.values() if s.is_expired(now)]
        for session in expired:
            self._expire(session)
        return len(expired)

    def _expire(self, session: ExchangeSession) -> None:
        if session.state != SessionState.EXPIRED:
            self._advance(session, SessionState.EXPIRED)
        self.sessions.pop(session.session_id, None)
        self.logger.info("exchange_session_expired", session_id=session.session_id)

    def _advance(self, session: Optional[ExchangeSession], new_state: SessionState) -> None:
        """
        Move a session to a new state.

        Sessionless requests are not tracked.

        Raises:
            InvalidExchangeTransitionError: Transition not allowed
        """
        if session is None:
            return
        if not is_valid_session_transition(session.state, new_state):
            self.logger.warning(
                "invalid_exchange_transition",
                session_id=session.session_id,
                current_state=session.state.value,
                new_state=new_state.value
            )
            raise InvalidExchangeTransitionError(session.state.value, new_state.value)
        session.state = new_state

    # ===================
    # INIT / FILE
    # ===================

    def initialize(self, kind: ExchangeKind, session: Optional[ExchangeSession] = None) -> ProtocolParameters:
        """
        init: clean up stale files and announce transfer parameters.
        """
        self._advance(session, SessionState.INITIALIZED)
        if session is not None:
            session.received_paths.clear()

        self.purge_expired()
        removed = self.files.cleanup_stale(self.settings.file_retention_seconds)

        params = ProtocolParameters(zip=False, file_limit=self.files.file_limit())

        self.logger.info(
            "exchange_initialized",
            kind=kind.value,
            file_limit=params.file_limit,
            stale_files_removed=removed
        )
        return params

    def receive_chunk(
        self,
        filename: Optional[str],
        content: bytes,
        session: Optional[ExchangeSession] = None
    ) -> int:
        """
        file: append one chunk.

        Within a session the first chunk for a path replaces any file left
        from an earlier exchange. Without a session chunks always append.

        Returns:
            File size after the write

        Raises:
            MissingFilenameError, InvalidFilenameError, EmptyPayloadError
        """
        key = str(validate_relative_path(filename))
        self.files.resolve(key)
        if not content:
            raise EmptyPayloadError(key)

        self._advance(session, SessionState.RECEIVING)

        truncate = session is not None and key not in session.received_paths
        size = self.files.append_chunk(key, content, truncate=truncate)

        if session is not None:
            session.received_paths.add(key)

        return size

    # ===================
    # CATALOG IMPORT
    # ===================

    def commit_catalog(
        self,
        filename: Optional[str] = None,
        session: Optional[ExchangeSession] = None
    ) -> SyncStats:
        """
        import: parse an uploaded document and apply it to the catalog.

        Without a filename import.xml is used, then offers.xml.

        Raises:
            ExchangeFileNotFoundError: Nothing to import
            MalformedDocumentError: Document cannot be parsed
            DatabaseError: Store failure outside a single item
        """
        if not filename:
            filename = next((name for name in DEFAULT_IMPORT_FILES if self.files.exists(name)), None)
            if filename is None:
                raise ExchangeFileNotFoundError()

        content = self.files.read(filename)
        self._advance(session, SessionState.COMMITTED)

        started_at = self.clock()
        document_kind = self._document_kind(filename, content)
        sync_type = "catalog_import" if document_kind == DocumentKind.CATALOG else "offers_import"

        self.logger.info(
            "catalog_import_started",
            filename=filename,
            document_kind=document_kind.value if document_kind else None,
            size=len(content)
        )

        try:
            if document_kind == DocumentKind.CATALOG:
                result = parse_catalog(content)
                stats = self.reconciliation.reconcile_categories(result.categories).merge(
                    self.reconciliation.reconcile_products(result.products, {})
                )
            elif document_kind == DocumentKind.OFFERS:
                result = parse_offers(content)
                stats = self.reconciliation.reconcile_offers(result.offers)
            else:
                self.logger.warning("unrecognized_exchange_document", filename=filename)
                stats = SyncStats()

        except AppError as e:
            self._record(sync_type, SyncDirection.INCOMING, SyncStatus.FAILED, e.message, started_at=started_at)
            raise

        self._record_stats(sync_type, SyncDirection.INCOMING, stats, started_at)

        self.logger.info(
            "catalog_import_complete",
            filename=filename,
            **stats.model_dump(exclude={"errors"})
        )
        return stats

    @staticmethod
    def _document_kind(filename: str, content: bytes) -> Optional[DocumentKind]:
        name = PurePosixPath(filename.replace("\\", "/")).name.lower()
        if "import" in name:
            return DocumentKind.CATALOG
        if "offers" in name:
            return DocumentKind.OFFERS
        return detect_document_kind(content)

    # ===================
    # SALE
    # ===================

    def export_orders(self, session: Optional[ExchangeSession] = None) -> bytes:
        """
        query: build the orders document from pending orders.

        The exported IDs are remembered on the session for `success`.
        """
        self._advance(session, SessionState.COMMITTED)

        started_at = self.clock()
        orders = self.order_store.orders_pending_export(self.settings.order_statuses)
        content = self.exporter.generate_orders_document(orders)

        if session is not None:
            session.exported_order_ids = [order.local_id for order in orders]

        self._record(
            "orders_export",
            SyncDirection.OUTGOING,
            SyncStatus.SUCCESS,
            f"orders={len(orders)}",
            items_processed=len(orders),
            started_at=started_at
        )

        self.logger.info("orders_exported", count=len(orders), size=len(content))
        return content

    def confirm_exported(self, session: Optional[ExchangeSession] = None) -> int:
        """
        success: mark the orders of the last query as exported.

        Without a remembered query the currently pending orders are used.

        Returns:
            Number of orders marked
        """
        self._advance(session, SessionState.COMMITTED)

        if session is not None and session.exported_order_ids:
            order_ids = list(session.exported_order_ids)
        else:
            pending = self.order_store.orders_pending_export(self.settings.order_statuses)
            order_ids = [order.local_id for order in pending]

        marked = self.order_store.mark_exported(order_ids)

        if session is not None:
            session.exported_order_ids = []

        self.logger.info("orders_export_confirmed", requested=len(order_ids), marked=marked)
        return marked

    def receive_order_updates(self, content: bytes) -> SyncStats:
        """
        Apply an orders document sent by the ERP.

        Raises:
            MalformedDocumentError: Document cannot be parsed
        """
        started_at = self.clock()
        updates = parse_order_updates(content)
        stats = SyncStats()

        for update in updates:
            try:
                if self.order_store.apply_update(update):
                    stats.updated += 1
                else:
                    stats.not_found += 1
            except Exception as e:
                self.logger.error("order_update_failed", order_guid=update.order_guid, error=str(e))
                stats.record_failure(f"Order {update.order_guid}: {e}")

        self._record_stats("order_updates", SyncDirection.INCOMING, stats, started_at)

        self.logger.info("order_updates_processed", **stats.model_dump(exclude={"errors"}))
        return stats

    def receive_sale_file(
        self,
        filename: Optional[str],
        content: bytes,
        session: Optional[ExchangeSession] = None
    ) -> Optional[SyncStats]:
        """
        sale file: append a chunk and process it once it parses as an orders document.

        A document that does not parse yet is left for further chunks.
        A processed file is removed.

        Returns:
            SyncStats if the file was processed, else None
        """
        self.receive_chunk(filename, content, session)

        key = str(validate_relative_path(filename))
        if ORDERS_FILE_MARKER not in PurePosixPath(key).name.lower():
            return None

        try:
            stats = self.receive_order_updates(self.files.read(key))
        except MalformedDocumentError as e:
            self.logger.warning("orders_file_incomplete", filename=key, error=e.message)
            return None

        self.files.remove(key)
        if session is not None:
            session.received_paths.discard(key)
        return stats

    # ===================
    # SYNC LOG
    # ===================

    def _record_stats(
        self,
        sync_type: str,
        direction: SyncDirection,
        stats: SyncStats,
        started_at: datetime
    ) -> None:
        status = SyncStatus.SUCCESS if stats.failed == 0 else SyncStatus.PARTIAL
        self._record(
            sync_type,
            direction,
            status,
            _summary(stats),
            items_processed=stats.created + stats.updated + stats.skipped,
            items_failed=stats.failed,
            started_at=started_at
        )

    def _record(
        self,
        sync_type: str,
        direction: SyncDirection,
        status: SyncStatus,
        message: str = "",
        items_processed: int = 0,
        items_failed: int = 0,
        started_at: Optional[datetime] = None
    ) -> None:
        if self.sync_log is None:
            return
        self.sync_log.record(
            sync_type,
            direction,
            status,
            message,
            items_processed=items_processed,
            items_failed=items_failed,
            started_at=started_at
        )


# Singleton instance
_exchange_service: Optional[ExchangeService] = None


def get_exchange_service() -> ExchangeService:
    """Get or create ExchangeService wired to the Supabase stores."""
    global _exchange_service
    if _exchange_service is None:
        _exchange_service = ExchangeService(
            catalog_store=get_catalog_store(),
            order_store=get_order_store(),
            sync_log=get_sync_log_service(),
        )
    return _exchange_service
