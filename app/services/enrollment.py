"""
Idempotent course enrollment.

At most one enrollment exists per (user, course). Revoked enrollments are
deactivated, never deleted, and a later purchase reactivates them with
progress reset to 0.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.enrollment import Enrollment

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentResult:
    enrollment: Enrollment
    was_already_active: bool = False
    reactivated: bool = False

    @property
    def enrollment_id(self) -> int:
        return self.enrollment.id

    @property
    def outcome(self) -> str:
        if self.was_already_active:
            return "already_enrolled"
        if self.reactivated:
            return "reactivated"
        return "new"


def _find(db: Session, user_id: str, course_id: str):
    return db.query(Enrollment).filter(
        Enrollment.user_id == user_id,
        Enrollment.course_id == course_id,
    ).first()


def _reactivate(db: Session, enrollment: Enrollment) -> EnrollmentResult:
    enrollment.is_active = True
    enrollment.progress_percentage = 0
    enrollment.enrolled_at = datetime.now(timezone.utc)
    db.flush()
    logger.info("Reactivated enrollment %s for user %s in course %s",
                enrollment.id, enrollment.user_id, enrollment.course_id)
    return EnrollmentResult(enrollment=enrollment, reactivated=True)


def ensure_enrollment(db: Session, user_id: str, course_id: str) -> EnrollmentResult:
    """
    Make sure `user_id` has an active enrollment in `course_id`.

    Active enrollments are returned untouched. The insert runs in a savepoint
    so a concurrent insert of the same pair (unique constraint violation) is
    resolved by re-reading the winner's row instead of failing.
    """
    existing = _find(db, user_id, course_id)

    if existing is not None and existing.is_active:
        logger.info("User %s already enrolled in course %s", user_id, course_id)
        return EnrollmentResult(enrollment=existing, was_already_active=True)

    if existing is not None:
        return _reactivate(db, existing)

    enrollment = Enrollment(
        user_id=user_id,
        course_id=course_id,
        enrolled_at=datetime.now(timezone.utc),
        progress_percentage=0,
        is_active=True,
    )
    try:
        with db.begin_nested():
            db.add(enrollment)
            db.flush()
    except IntegrityError:
        logger.info("Concurrent enrollment detected for user %s in course %s", user_id, course_id)
        winner = _find(db, user_id, course_id)
        if winner is None:
            raise
        if winner.is_active:
            return EnrollmentResult(enrollment=winner, was_already_active=True)
        return _reactivate(db, winner)

    logger.info("Enrolled user %s in course %s (enrollment %s)", user_id, course_id, enrollment.id)
    return EnrollmentResult(enrollment=enrollment)

