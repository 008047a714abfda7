"""
Identity map statistics endpoint
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import MappingStatsResponse
from models.mapping import IdMapping
from migration.stages import STAGES
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Mappings"])


@router.get("/mappings/stats", response_model=MappingStatsResponse)
async def mapping_stats(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Mapping entries per entity type next to the rows stored per table.

    Sheets have more mappings than rows: every revision maps to its
    composite sheet.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    result = await db.execute(
        select(IdMapping.entity_type, func.count()).group_by(IdMapping.entity_type)
    )
    mappings = {row[0]: int(row[1]) for row in result.all()}

    rows = {}
    for stage in STAGES:
        count_result = await db.execute(select(func.count()).select_from(stage.table))
        rows[stage.table.name] = int(count_result.scalar() or 0)

    total = sum(mappings.values())
    logger.info(f"[{request_id}] Mapping stats: {total} mappings across {len(mappings)} entity types")

    return MappingStatsResponse(
        mappings=mappings,
        rows=rows,
        total_mappings=total,
        request_id=request_id
    )
