import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from servio.models import Booking, BookingStatus, User
from servio.services.task_queue import register_task

logger = structlog.get_logger(__name__)


def average_rating(db: Session, professional_id: int) -> float:
    """Mean score over the professional's completed, rated bookings, one decimal."""
    avg = db.query(func.avg(Booking.rating_score)).filter(
        Booking.professional_id == professional_id,
        Booking.status == BookingStatus.COMPLETED.value,
        Booking.rating_score.isnot(None),
    ).scalar()
    if avg is None:
        return 0.0
    return round(float(avg), 1)


@register_task("recompute_professional_rating")
def recompute_professional_rating(db: Session, professional_id: int) -> float:
    professional = db.get(User, professional_id)
    if not professional:
        logger.warning("rating_recompute_unknown_professional", professional_id=professional_id)
        return 0.0

    rating = average_rating(db, professional_id)
    professional.rating = rating
    db.commit()
    logger.info("professional_rating_recomputed", professional_id=professional_id, rating=rating)
    return rating
