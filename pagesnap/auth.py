"""API-key authentication for the job endpoints."""

from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Field, Session, SQLModel, select

from pagesnap.settings import get_settings

if TYPE_CHECKING:
    from pagesnap.store import Store

KEY_PREFIX = "psnp_"
KEY_LENGTH = len(KEY_PREFIX) + 32
ANONYMOUS_OWNER = "anonymous"


class APIKey(SQLModel, table=True):
    """API key for authentication."""

    __tablename__ = "api_keys"

    id: int | None = Field(default=None, primary_key=True)
    key_hash: str = Field(index=True, unique=True)
    key_prefix: str = Field(index=True)  # First 12 chars for display (psnp_XXXXXXX)
    name: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_used_at: datetime | None = None
    is_active: bool = Field(default=True)
    owner: str | None = None  # Jobs are owned by this id; defaults to key-<id>


@dataclass
class AuthContext:
    """Authentication context for the current request."""

    api_key_id: int
    api_key_name: str
    api_key_prefix: str
    owner_id: str


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def generate_api_key() -> str:
    """Generate a new random API key.

    Format: psnp_<32 random hex chars>
    """
    return f"{KEY_PREFIX}{secrets.token_hex(16)}"


def owner_for(api_key: APIKey) -> str:
    return api_key.owner or f"key-{api_key.id}"


def create_api_key(session: Session, name: str, owner: str | None = None) -> tuple[str, APIKey]:
    """Create a new API key and store its hash.

    Returns the plain-text key (shown once) and the stored record.
    """
    plain_key = generate_api_key()
    api_key = APIKey(
        key_hash=hash_api_key(plain_key),
        key_prefix=plain_key[:12],
        name=name,
        owner=owner,
    )
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    return plain_key, api_key


def verify_api_key(
    session: Session,
    api_key: str,
    update_threshold_seconds: int = 3600,
) -> Optional[APIKey]:
    """Return the active record for ``api_key`` or None.

    ``last_used_at`` is only rewritten when the previous value is older than
    ``update_threshold_seconds``.
    """
    if not api_key or not api_key.startswith(KEY_PREFIX):
        return None

    statement = select(APIKey).where(
        APIKey.key_hash == hash_api_key(api_key),
        APIKey.is_active == True,  # noqa: E712
    )
    result = session.exec(statement).first()

    if result:
        now = datetime.now(timezone.utc)
        # SQLite returns naive datetimes; they are stored as UTC.
        last_used = result.last_used_at
        if last_used is not None and last_used.tzinfo is None:
            last_used = last_used.replace(tzinfo=timezone.utc)
        if last_used is None or (now - last_used).total_seconds() > update_threshold_seconds:
            result.last_used_at = now
            session.add(result)
            session.commit()
            session.refresh(result)

    return result


def revoke_api_key(session: Session, key_id: int) -> bool:
    """Deactivate a key; False when no key has ``key_id``."""
    api_key = session.exec(select(APIKey).where(APIKey.id == key_id)).first()
    if not api_key:
        return False
    api_key.is_active = False
    session.add(api_key)
    session.commit()
    return True


_global_store: Optional["Store"] = None
_store_lock = threading.Lock()


def get_store() -> "Store":
    """Process-wide Store so every request shares one engine."""
    global _global_store

    if _global_store is not None:
        return _global_store

    with _store_lock:
        if _global_store is None:
            from pagesnap.store import Store

            _global_store = Store()

    return _global_store


def get_db_session() -> Iterator[Session]:
    with get_store().session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def get_auth_context(
    session: Session = Depends(get_db_session),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> AuthContext:
    """FastAPI dependency resolving ``X-API-Key`` to the owning identity.

    With ``REQUIRE_API_KEY=false`` every caller shares the anonymous owner.
    """
    if not get_settings().security.require_api_key:
        return AuthContext(
            api_key_id=0,
            api_key_name=ANONYMOUS_OWNER,
            api_key_prefix="none",
            owner_id=ANONYMOUS_OWNER,
        )

    if not x_api_key:
        raise _unauthorized("Missing API key. Provide X-API-Key header.")
    if not x_api_key.startswith(KEY_PREFIX) or len(x_api_key) != KEY_LENGTH:
        raise _unauthorized("Invalid API key format")

    record = verify_api_key(session, x_api_key)
    if not record:
        raise _unauthorized("Invalid or revoked API key")
    if record.id is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database error: API key missing ID",
        )

    return AuthContext(
        api_key_id=record.id,
        api_key_name=record.name,
        api_key_prefix=record.key_prefix,
        owner_id=owner_for(record),
    )
