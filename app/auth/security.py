import hmac
import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Security, HTTPException, Request, Header
from fastapi.security import APIKeyHeader
from sqlalchemy import select

from app.api.deps import DbSession
from app.db.models import Agency
from app.domain.signing import verify_signature
from app.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
ADMIN_KEY_HEADER = APIKeyHeader(name="X-Admin-Key", auto_error=False)

@dataclass
class Principal:
    """Caller identity: an agency, or an admin acting across agencies."""
    agency: Optional[Agency] = None
    is_admin: bool = False

    @property
    def agency_id(self) -> Optional[str]:
        return self.agency.id if self.agency else None

    def scope(self, requested_agency_id: Optional[str] = None) -> Optional[str]:
        """Agency filter to apply: admins choose (None = all), agencies only see their own."""
        if self.is_admin:
            return requested_agency_id
        return self.agency_id

def _is_admin_key(admin_key: Optional[str]) -> bool:
    expected = settings.ADMIN_API_KEY
    if not expected or not admin_key:
        return False
    return hmac.compare_digest(admin_key.encode(), expected.encode())

async def require_admin(admin_key: Optional[str] = Security(ADMIN_KEY_HEADER)) -> Principal:
    if not admin_key:
        raise HTTPException(status_code=403, detail="Missing Admin Key")
    if not _is_admin_key(admin_key):
        raise HTTPException(status_code=403, detail="Invalid Admin Key")
    return Principal(is_admin=True)

async def get_principal(
    session: DbSession,
    api_key: Optional[str] = Security(API_KEY_HEADER),
    admin_key: Optional[str] = Security(ADMIN_KEY_HEADER),
) -> Principal:
    if admin_key:
        if not _is_admin_key(admin_key):
            raise HTTPException(status_code=403, detail="Invalid Admin Key")
        return Principal(is_admin=True)

    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    stmt = select(Agency).where(Agency.api_key == api_key)
    agency = await session.scalar(stmt)

    if not agency:
        raise HTTPException(status_code=403, detail="Invalid API Key")

    return Principal(agency=agency)

class WorkerSignatureVerifier:
    """
    Verifies X-Worker-Signature, the hex HMAC-SHA256 of the raw request body
    keyed with WORKER_SHARED_SECRET. Without a configured secret, worker
    requests are accepted unsigned.
    """

    async def __call__(
        self,
        request: Request,
        x_worker_signature: Optional[str] = Header(None, alias="X-Worker-Signature"),
    ) -> None:
        secret = settings.WORKER_SHARED_SECRET
        if not secret:
            return

        if not x_worker_signature:
            raise HTTPException(status_code=401, detail="Missing Signature")

        body = await request.body()
        if not verify_signature(secret, body, x_worker_signature):
            logger.warning(f"Rejected worker request to {request.url.path}: bad signature")
            raise HTTPException(status_code=401, detail="Invalid Signature")

CurrentPrincipal = Annotated[Principal, Depends(get_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
