from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studyloop.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    cards: Mapped[list["Card"]] = relationship(back_populates="user")  # type: ignore[name-defined] # noqa: F821
    courses: Mapped[list["Course"]] = relationship(back_populates="user")  # type: ignore[name-defined] # noqa: F821
