"""Integration health dashboard."""
from fastapi import APIRouter, Depends

from ledgersync.api.deps import STATUS_ROLES, CurrentUser, get_db, require_roles
from ledgersync.api.schemas import IntegrationHealthOut
from ledgersync.ledger.auth import LedgerAuth
from ledgersync.sync.health import get_integration_health

router = APIRouter()


@router.get("/integrations", response_model=IntegrationHealthOut)
def integration_health(
    user: CurrentUser = Depends(require_roles(*STATUS_ROLES)),
    engine=Depends(get_db),
):
    return IntegrationHealthOut.from_health(get_integration_health(engine, LedgerAuth(engine)))
