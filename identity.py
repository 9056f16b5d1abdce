import logging
from typing import Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import UnauthorizedError
from models import User
from services import UserService
from tokens import read_session_token

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Session-Token"


def token_from_headers(headers) -> Optional[str]:
    auth = headers.get("Authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    token = headers.get(TOKEN_HEADER)
    if token and token.strip():
        return token.strip()
    return None


class IdentityGate:
    """Resolves the user every request acts as."""

    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def user_for_token(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        user_id = read_session_token(token, self.settings.token_max_age_hours)
        if user_id is None:
            return None
        return UserService(self.session).get(user_id)

    def resolve(self, token: Optional[str]) -> User:
        if not self.settings.multi_tenant:
            return UserService(self.session).ensure_local_user()
        if not token:
            raise UnauthorizedError("Sign in required")
        user = self.user_for_token(token)
        if user is None:
            logger.info("identity_rejected: reason=invalid_token")
            raise UnauthorizedError("Invalid or expired session")
        return user
