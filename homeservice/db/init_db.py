import logging

from homeservice import models  # noqa: F401  registers the tables on Base.metadata
from homeservice.db_core import Base, SessionLocal, engine
from homeservice.services.catalog import seed_categories

logger = logging.getLogger(__name__)


def init_db(bind=None, session_factory=SessionLocal):
    bind = bind or engine
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind)
    db = session_factory()
    try:
        added = seed_categories(db)
    finally:
        db.close()
    logger.info("Database ready, %s categories seeded.", added)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
