from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db_session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

@dataclass
class Page:
    limit: int
    offset: int

def get_page(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> Page:
    return Page(limit=limit, offset=offset)

Pagination = Annotated[Page, Depends(get_page)]
