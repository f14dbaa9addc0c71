"""SQLAlchemy ORM models for the studyloop database."""

from studyloop.models.base import Base
from studyloop.models.card import Card
from studyloop.models.concept_mastery import ConceptMastery, KnowledgeGap
from studyloop.models.course import Course
from studyloop.models.review_log import ReviewLog
from studyloop.models.user import User
from studyloop.models.user_srs_settings import UserSrsSettings

__all__ = [
    "Base",
    "Card",
    "ConceptMastery",
    "Course",
    "KnowledgeGap",
    "ReviewLog",
    "User",
    "UserSrsSettings",
]
