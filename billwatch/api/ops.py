"""Operational endpoints for the reconciliation sweep."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from billwatch.core.database import get_db
from billwatch.services.auth import verify_api_key
from billwatch.services.sweep import get_sweep, get_sweep_runner

router = APIRouter(prefix="/api/ops", tags=["ops"], dependencies=[Depends(verify_api_key)])


@router.get("/sweep")
def sweep_status() -> Dict[str, Any]:
    return {
        "runner": get_sweep_runner().get_status(),
        "passes": get_db().list_sweep_runs(),
    }


@router.post("/sweep")
def trigger_sweep(force: bool = Query(False)) -> Dict[str, Any]:
    """Run due passes now. ``force`` ignores intervals; leases still apply."""
    return {"results": get_sweep().run(force=force)}
