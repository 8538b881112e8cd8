# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "AlertEngine":
        from billwatch.services.detection import AlertEngine
        return AlertEngine
    elif name == "ScopeProofService":
        from billwatch.services.scope_proofs import ScopeProofService
        return ScopeProofService
    elif name == "ReconciliationSweep":
        from billwatch.services.sweep import ReconciliationSweep
        return ReconciliationSweep
    elif name == "run_sweep":
        from billwatch.services.sweep import run_sweep
        return run_sweep
    raise AttributeError(f"module 'billwatch.services' has no attribute '{name}'")

__all__ = [
    "AlertEngine",
    "ScopeProofService",
    "ReconciliationSweep",
    "run_sweep",
]
