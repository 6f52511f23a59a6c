import logging

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from auth import validate_descope_jwt
from core.db import get_db
from core.errors import Unauthenticated
from core.users import get_user_by_descope_id, get_user_by_email
from models import User

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get('authorization') or request.headers.get('Authorization')
    if not auth_header or not auth_header.lower().startswith('bearer '):
        raise Unauthenticated("Authorization token missing.")
    token = auth_header.split(' ', 1)[1].strip()
    if not token:
        raise Unauthenticated("Authorization token missing.")
    return token


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Extracts and validates the Descope JWT from the Authorization header and
    returns the matching local user, creating it on first sight.
    """
    user_info = validate_descope_jwt(_bearer_token(request))

    user = get_user_by_descope_id(db, descope_user_id=user_info['userId'])
    if user:
        return user

    email = user_info['email']
    existing_user = get_user_by_email(db, email=email)
    if existing_user:
        existing_user.descope_user_id = user_info['userId']
        db.commit()
        db.refresh(existing_user)
        return existing_user

    user = User(
        descope_user_id=user_info['userId'],
        email=email,
        username=user_info.get('name') or email,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created local user {user.account_id} for Descope id {user_info['userId']}")
    return user
