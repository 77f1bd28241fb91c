import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import User
from schemas import Principal

logger = logging.getLogger(__name__)

# Columns refreshed on every sign-in; id and created_at never change
SYNCED_FIELDS = ("email", "display_name", "photo_url", "is_email_verified", "last_login")


class PersistenceError(Exception):
    """The users table could not be read or written"""


def _principal_values(principal: Principal) -> dict:
    now = datetime.utcnow()
    return {
        "id": principal.id,
        "email": principal.email,
        "display_name": principal.display_name,
        "photo_url": principal.avatar_url,
        "is_email_verified": principal.email_verified,
        "created_at": now,
        "last_login": now,
    }


def _upsert_statement(dialect: str, values: dict):
    """Single-statement insert-or-update for engines whose conflict target can be the id alone"""
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        return None
    stmt = dialect_insert(User).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[User.id],
        set_={field: stmt.excluded[field] for field in SYNCED_FIELDS},
    )


def _insert_or_refresh(db: Session, values: dict) -> None:
    """INSERT, falling back to an UPDATE keyed on id when the row exists.

    MySQL's ON DUPLICATE KEY UPDATE fires on the email key as well and would
    rewrite whichever row owns that email, so those engines come through here.
    """
    try:
        db.execute(insert(User).values(**values))
        return
    except IntegrityError:
        db.rollback()

    result = db.execute(
        update(User)
        .where(User.id == values["id"])
        .values({field: values[field] for field in SYNCED_FIELDS})
    )
    if result.rowcount == 0:
        db.rollback()
        raise PersistenceError(f"Could not sync user {values['id']}: insert conflicted with another user's row")


def upsert_user(db: Session, principal: Principal) -> None:
    """Create the user's row on first sign-in, refresh it afterwards"""
    values = _principal_values(principal)
    try:
        stmt = _upsert_statement(db.get_bind().dialect.name, values)
        if stmt is not None:
            db.execute(stmt)
        else:
            _insert_or_refresh(db, values)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not sync user {principal.id}: {e}") from e


def get_user(db: Session, user_id: str) -> Optional[User]:
    try:
        return db.get(User, user_id)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Could not load user {user_id}: {e}") from e


def update_display_name(db: Session, user_id: str, display_name: Optional[str]) -> bool:
    """Returns False when the user has no row yet"""
    try:
        user = db.get(User, user_id)
        if user is None:
            return False
        user.display_name = display_name
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not update user {user_id}: {e}") from e


def count_users(db: Session) -> int:
    try:
        return db.scalar(select(func.count()).select_from(User))
    except SQLAlchemyError as e:
        raise PersistenceError(f"Could not count users: {e}") from e
