"""Course rows: the source material cards are generated from."""

import json

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studyloop.models.base import Base, TimestampMixin


class Course(Base, TimestampMixin):
    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    # JSON: {"lessons": [{"title": ..., "steps": [...]}], "concepts": {"0:1": [...]}}
    content: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    user: Mapped["User"] = relationship(back_populates="courses")  # type: ignore[name-defined] # noqa: F821

    @property
    def parsed_content(self) -> dict:
        try:
            data = json.loads(self.content or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}
