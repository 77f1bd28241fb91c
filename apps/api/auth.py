import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from database import get_db
from identity import IdentityVerifier
from schemas import Principal
from users import PersistenceError, upsert_user

logger = logging.getLogger(__name__)

def get_verifier(request: Request) -> IdentityVerifier:
    """The verifier built at startup"""
    return request.app.state.verifier

def get_current_user(
    authorization: Optional[str] = Header(None),
    verifier: IdentityVerifier = Depends(get_verifier),
    db: Session = Depends(get_db),
) -> Principal:
    """Verify the bearer token and mirror the profile into the users table.

    Rejected tokens raise AuthError. A failed profile sync is logged and the
    request continues with the verified principal.
    """
    principal = verifier.verify_header(authorization)

    try:
        upsert_user(db, principal)
    except PersistenceError as e:
        logger.error("Database sync error: %s", e)

    return principal
