"""
Exchange session schemas and the session state machine table.
"""

from pydantic import Field
from enum import Enum
from datetime import datetime

from models.base import BaseSchema


class ExchangeKind(str, Enum):
    """Exchange types selected by the `type` query parameter."""
    CATALOG = "catalog"
    SALE = "sale"


class ExchangeMode(str, Enum):
    """Protocol steps selected by the `mode` query parameter."""
    CHECKAUTH = "checkauth"
    INIT = "init"
    FILE = "file"
    IMPORT = "import"
    QUERY = "query"
    SUCCESS = "success"


# Modes each exchange type understands
MODES_BY_KIND: dict[ExchangeKind, frozenset[ExchangeMode]] = {
    ExchangeKind.CATALOG: frozenset({
        ExchangeMode.CHECKAUTH,
        ExchangeMode.INIT,
        ExchangeMode.FILE,
        ExchangeMode.IMPORT,
    }),
    ExchangeKind.SALE: frozenset({
        ExchangeMode.CHECKAUTH,
        ExchangeMode.INIT,
        ExchangeMode.QUERY,
        ExchangeMode.SUCCESS,
        ExchangeMode.FILE,
    }),
}


class SessionState(str, Enum):
    """Exchange session states."""
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    INITIALIZED = "INITIALIZED"
    RECEIVING = "RECEIVING"
    COMMITTED = "COMMITTED"
    EXPIRED = "EXPIRED"


# Allowed transitions; re-init and further receive/commit cycles after a
# commit are legal because the ERP imports import.xml then offers.xml.
SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset({SessionState.AUTHENTICATED}),
    SessionState.AUTHENTICATED: frozenset({SessionState.INITIALIZED}),
    SessionState.INITIALIZED: frozenset({
        SessionState.INITIALIZED,
        SessionState.RECEIVING,
        SessionState.COMMITTED,
    }),
    SessionState.RECEIVING: frozenset({
        SessionState.INITIALIZED,
        SessionState.RECEIVING,
        SessionState.COMMITTED,
    }),
    SessionState.COMMITTED: frozenset({
        SessionState.INITIALIZED,
        SessionState.RECEIVING,
        SessionState.COMMITTED,
    }),
    SessionState.EXPIRED: frozenset(),
}


def is_valid_session_transition(current: SessionState, new: SessionState) -> bool:
    """
    Check if a session state transition is valid.

    Rules:
    - Any live state may expire
    - EXPIRED is terminal
    - Everything else follows SESSION_TRANSITIONS
    """
    if current == SessionState.EXPIRED:
        return False
    if new == SessionState.EXPIRED:
        return True
    return new in SESSION_TRANSITIONS[current]


class ExchangeSession(BaseSchema):
    """Authenticated context spanning one checkauth -> commit cycle."""
    session_id: str = Field(..., description="Opaque token sent back as a cookie")
    kind: ExchangeKind
    created_at: datetime
    expires_at: datetime
    state: SessionState = SessionState.AUTHENTICATED
    received_paths: set[str] = Field(
        default_factory=set,
        description="Relative paths written during this session"
    )
    exported_order_ids: list[str] = Field(
        default_factory=list,
        description="Local order IDs returned by the last query"
    )

    def is_expired(self, now: datetime) -> bool:
        return self.state == SessionState.EXPIRED or now >= self.expires_at


class ProtocolParameters(BaseSchema):
    """Answer to the init step."""
    zip: bool = False
    file_limit: int = Field(..., ge=1)

    def to_body(self) -> str:
        return f"zip={'yes' if self.zip else 'no'}\nfile_limit={self.file_limit}"
