import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from medquiz.models.base import Base
from medquiz.models import entities  # noqa: F401  (registers tables on Base.metadata)

logger = logging.getLogger(__name__)


async def initialize_database(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if engine.dialect.name == "postgresql":
            # Databases created before the partial index existed.
            await conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS uq_quiz_progress_active_attempt "
                    "ON quiz_progress (learner_id, course_id) WHERE is_completed = false"
                )
            )
    logger.info("Database schema ready (dialect=%s)", engine.dialect.name)
