"""
Queue accounts.

`is_admin` grants every queue operation on every event; organizers get the
same operations on their own events through `Event.organizer_id`.
Deactivated accounts keep their orders but can no longer authenticate.
"""

from sqlalchemy import Boolean, Column, Integer, String

from ticketqueue.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(100), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, admin={self.is_admin})>"
