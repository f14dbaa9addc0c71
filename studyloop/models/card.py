"""Review card model carrying FSRS memory state for one user."""

import json
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studyloop.config import utcnow
from studyloop.models.base import Base, TimestampMixin
from studyloop.srs.states import CardState


class Card(Base, TimestampMixin):
    """One reviewable fact with its scheduling state."""

    __tablename__ = "cards"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", "lesson_index", "step_index", name="uq_card_position"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(ForeignKey("courses.id"), nullable=False)
    lesson_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    card_type: Mapped[str] = mapped_column(String(50), nullable=False, default="flashcard")
    front: Mapped[str] = mapped_column(Text, nullable=False, default="")
    back: Mapped[str] = mapped_column(Text, nullable=False, default="")
    concept_ids: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON array of concept ids

    stability: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    difficulty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    elapsed_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    scheduled_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lapses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[CardState] = mapped_column(
        Enum(CardState, values_callable=lambda e: [s.value for s in e], native_enum=False, length=20),
        nullable=False,
        default=CardState.NEW,
    )
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    last_review: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    user: Mapped["User"] = relationship(back_populates="cards")  # type: ignore[name-defined] # noqa: F821
    review_logs: Mapped[list["ReviewLog"]] = relationship(back_populates="card")  # type: ignore[name-defined] # noqa: F821

    @property
    def concepts(self) -> list[str]:
        """Concept ids this card tests, decoded from JSON."""
        if not self.concept_ids:
            return []
        try:
            ids = json.loads(self.concept_ids)
        except json.JSONDecodeError:
            return []
        return [str(c) for c in ids] if isinstance(ids, list) else []
