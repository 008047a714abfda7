"""
Health check endpoint with database and last-run status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, RunSummary
from models.migration_run import MigrationRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Status of the most recent migration run
    """
    db_connected = False
    last_run = None

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")

    if db_connected:
        try:
            result = await db.execute(
                select(MigrationRun).order_by(MigrationRun.started_at.desc()).limit(1)
            )
            run = result.scalar_one_or_none()
            if run is not None:
                last_run = RunSummary.model_validate(run)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch last migration run: {str(e)}")

    return HealthCheckResponse(
        status=HealthCheckResponse.determine_status(
            db_connected, last_run.status if last_run else None
        ),
        database_connected=db_connected,
        last_run=last_run
    )
