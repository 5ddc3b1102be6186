import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from homeservice.db_utils import transaction
from homeservice.errors import InvalidTransition, NotFound, Unauthorized
from homeservice.models.review import Review
from homeservice.models.service_request import ServiceRequest, ServiceStatus
from homeservice.models.user import ROLE_CLIENT, UserProfile
from homeservice.services import pricing

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = (
    ServiceStatus.COMPLETED.value,
    ServiceStatus.AWAITING_CONFIRMATION.value,
)


class RatingAggregator:
    def __init__(self, max_retries: int = 5):
        self.max_retries = max_retries

    def submit_review(
        self, db: Session, service_request_id: int, actor, rating: int, comment: str | None = None
    ) -> Review:
        """Record the client's review and fold it into the provider's reputation."""
        if not 0 <= rating <= 10:
            raise ValueError("rating must be between 0 and 10")
        try:
            with transaction(db):
                sr = db.get(ServiceRequest, service_request_id, populate_existing=True)
                if not sr:
                    raise NotFound(f"service request {service_request_id} not found")
                if actor.role != ROLE_CLIENT or sr.client_id != actor.user_id:
                    raise Unauthorized("only the requesting client can review this job")
                if sr.status not in REVIEWABLE_STATUSES or not sr.provider_id:
                    raise InvalidTransition(
                        f"request {sr.id} is {sr.status}; reviews need a finished job"
                    )
                if db.query(Review).filter(Review.service_request_id == sr.id).first():
                    raise InvalidTransition(f"request {sr.id} was already reviewed")
                review = Review(
                    service_request_id=sr.id,
                    client_id=sr.client_id,
                    provider_id=sr.provider_id,
                    rating=rating,
                    comment=comment,
                )
                db.add(review)
                db.flush()
                self._apply_rating(db, sr.provider_id, rating)
        except IntegrityError as e:
            raise InvalidTransition(f"request {service_request_id} was already reviewed") from e
        logger.info("review %s stored for provider %s: %s", review.id, review.provider_id, rating)
        return review

    def _apply_rating(self, db: Session, provider_id: str, rating: int) -> None:
        # Compare-and-set on total_ratings so concurrent reviews never lose an update.
        for _ in range(self.max_retries):
            provider = db.get(UserProfile, provider_id, populate_existing=True)
            if not provider:
                raise NotFound(f"provider {provider_id} not found")
            new_rating, new_total = pricing.updated_reputation(
                provider.rating, provider.total_ratings, rating
            )
            result = db.execute(
                update(UserProfile)
                .where(
                    UserProfile.id == provider_id,
                    UserProfile.total_ratings == provider.total_ratings,
                )
                .values(rating=new_rating, total_ratings=new_total)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            logger.info("reputation of %s changed concurrently, retrying", provider_id)
        raise InvalidTransition(f"could not update reputation of {provider_id}, retry later")
