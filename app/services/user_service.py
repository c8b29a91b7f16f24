from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..core.exceptions import StoreUnavailable
from ..core.security import UserRole
from ..models.user import User

logger = logging.getLogger(__name__)

class UserDirectory:
    """Read-only lookups against the user directory."""

    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: int) -> Optional[User]:
        try:
            return self.db.get(User, user_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(f"User directory lookup failed for {user_id}: {exc}")
            raise StoreUnavailable() from exc

    def get_active_doctor(self, user_id: int) -> Optional[User]:
        """Return the user only if it is an active doctor."""
        user = self.get_user(user_id)
        if not user or user.role != UserRole.DOCTOR or not user.is_active:
            return None
        return user

    def get_patient(self, user_id: int) -> Optional[User]:
        user = self.get_user(user_id)
        if not user or user.role != UserRole.PATIENT:
            return None
        return user
