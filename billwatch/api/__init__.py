from billwatch.api.alerts import router as alerts_router
from billwatch.api.ops import router as ops_router
from billwatch.api.scope_proofs import approvals_router, router as scope_proofs_router

__all__ = ["alerts_router", "approvals_router", "ops_router", "scope_proofs_router"]
