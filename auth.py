import base64
import json
import logging
from typing import Optional

from descope.descope_client import DescopeClient

from core.config import DESCOPE_JWT_LEEWAY, DESCOPE_PROJECT_ID
from core.errors import Unauthenticated

logger = logging.getLogger(__name__)

_client: Optional[DescopeClient] = None


def get_descope_client() -> DescopeClient:
    """Create the Descope client on first use so imports work without credentials."""
    global _client
    if _client is None:
        if not DESCOPE_PROJECT_ID:
            logger.error("DESCOPE_PROJECT_ID is not configured")
            raise Unauthenticated("Authentication is not configured")
        _client = DescopeClient(project_id=DESCOPE_PROJECT_ID, jwt_validation_leeway=DESCOPE_JWT_LEEWAY)
        logger.info(f"Descope client initialized with JWT leeway: {DESCOPE_JWT_LEEWAY}s")
    return _client


def decode_jwt_payload(token: str) -> dict:
    """Decode JWT payload without verification for debugging purposes."""
    parts = token.split('.')
    if len(parts) != 3:
        return {}

    payload = parts[1]
    padding = len(payload) % 4
    if padding:
        payload += '=' * (4 - padding)

    try:
        return json.loads(base64.urlsafe_b64decode(payload).decode('utf-8'))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Failed to decode JWT payload: {e}")
        return {}


def validate_descope_jwt(token: str) -> dict:
    """
    Validate a Descope session JWT and return the identity claims we use.

    Args:
        token (str): Descope session JWT token

    Returns:
        dict: ``userId``, ``email`` and ``name`` of the session owner

    Raises:
        Unauthenticated: If token validation fails or the user id is missing
    """
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"JWT payload (decoded): {json.dumps(decode_jwt_payload(token), default=str)}")

    try:
        session = get_descope_client().validate_session(token)
    except Unauthenticated:
        raise
    except Exception as e:
        # The SDK raises AuthException and a handful of jwt errors; all mean the same here
        logger.warning(f"Descope JWT validation failed: {e}")
        raise Unauthenticated("Invalid or expired token")

    if not isinstance(session, dict):
        logger.error("Descope session validation failed: session is not a dictionary")
        raise Unauthenticated("Invalid session format")

    user_id = session.get('userId') or session.get('sub')
    if not user_id:
        logger.error("Descope JWT validation failed: missing userId in session")
        raise Unauthenticated("Invalid token: missing user ID")

    login_ids = session.get('loginIds') if isinstance(session.get('loginIds'), list) else []
    email = (login_ids[0] if login_ids else None) or session.get('email')
    if not email:
        email = f"user_{user_id}@descope.local"
        logger.warning(f"No email found for user {user_id}, using placeholder: {email}")

    return {
        'userId': user_id,
        'email': email,
        'name': session.get('name') or session.get('displayName'),
    }
