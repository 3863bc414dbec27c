import enum

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class UserRole(str, enum.Enum):
    admin = "admin"
    dispatcher = "dispatcher"
    programmer = "programmer"
    user = "user"


class User(TimestampMixin, Base):
    """Operator account. Provisioned by the auth service, read-only here."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(50), unique=True)
    full_name: Mapped[str | None] = mapped_column(String(100), default=None)
    role: Mapped[UserRole] = mapped_column(default=UserRole.user)

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.role.value})>"
