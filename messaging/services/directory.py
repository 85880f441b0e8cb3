"""
Read-only access to the user directory.
"""
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from messaging.models.user import UserProfile, UserRole

STAFF_ROLES = (UserRole.ADMIN, UserRole.MODERATOR)


class UserDirectory:
    """Queries the user population for addressing and template rendering."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[UserProfile]:
        return self.db.get(UserProfile, user_id)

    def get_many(self, user_ids: Iterable[int]) -> Dict[int, UserProfile]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        users = self.db.query(UserProfile).filter(UserProfile.id.in_(ids)).all()
        return {user.id: user for user in users}

    def iter_ids(
        self,
        criterion: ColumnElement,
        exclude: Optional[int] = None,
        batch_size: int = 500,
    ) -> Iterator[int]:
        """
        Stream ids of non-blocked users matching ``criterion``.

        Rows are fetched ``batch_size`` at a time so large audiences are
        never loaded in one go.
        """
        query = (
            self.db.query(UserProfile.id)
            .filter(criterion, UserProfile.is_blocked.is_(False))
            .order_by(UserProfile.id)
        )
        if exclude is not None:
            query = query.filter(UserProfile.id != exclude)
        for (user_id,) in query.yield_per(batch_size):
            yield user_id

    def list_contacts(self, user_id: int, staff_only: bool = False) -> List[UserProfile]:
        """Users the caller may pick as a recipient, sorted by display name."""
        query = self.db.query(UserProfile).filter(
            UserProfile.id != user_id,
            UserProfile.is_blocked.is_(False),
        )
        if staff_only:
            query = query.filter(UserProfile.role.in_(STAFF_ROLES))
        return query.order_by(
            func.lower(func.coalesce(UserProfile.full_name, UserProfile.username)),
            UserProfile.username,
        ).all()
