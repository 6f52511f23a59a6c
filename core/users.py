"""User lookup facade.

Conversation code should not query the `User` model directly. Instead, call
these helpers so the identity columns stay in one place.
"""

from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from models import User


def get_user_by_id(db: Session, *, account_id: int) -> Optional[User]:
    return db.query(User).filter(User.account_id == account_id).first()


def get_user_by_id_for_update(db: Session, *, account_id: int) -> Optional[User]:
    return db.query(User).filter(User.account_id == account_id).with_for_update().first()


def get_user_by_descope_id(db: Session, *, descope_user_id: str) -> Optional[User]:
    return db.query(User).filter(User.descope_user_id == descope_user_id).first()


def get_user_by_email(db: Session, *, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def get_users_by_ids(db: Session, *, account_ids: Iterable[int]) -> List[User]:
    ids = list(set(account_ids))
    if not ids:
        return []
    return db.query(User).filter(User.account_id.in_(ids)).all()


def find_missing_user_ids(db: Session, *, account_ids: Iterable[int]) -> List[int]:
    """Return the requested ids that do not resolve to a user, in request order."""
    requested = list(dict.fromkeys(account_ids))
    found = {u.account_id for u in get_users_by_ids(db, account_ids=requested)}
    return [uid for uid in requested if uid not in found]
