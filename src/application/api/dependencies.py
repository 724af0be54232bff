"""
FastAPI Dependency Injection Module - Educational Documentation
================================================================

WHAT LIVES HERE?
----------------
Providers for the objects route handlers need:

    CorrelatorDep   -> RequestCorrelator (submit a job, wait for its reply)
    RecordStoreDep  -> RecordStore (quotes and bookings by ID)
    SettingsDep     -> Settings

HOW IT WORKS:
-------------
The lifespan manager builds each singleton once at startup and stores it on
``app.state``. Providers read it back from ``request.app.state``. Tests swap
any of them with ``app.dependency_overrides[get_correlator] = lambda: fake``.

Example:
    @router.post("/quotes")
    async def create_quote(body: QuoteRequest, correlator: CorrelatorDep):
        outcome = await correlator.submit(JobKind.QUOTE, body.payload())
"""

from typing import Annotated

from fastapi import Depends, Request

from src.core.config.settings import Settings, get_settings
from src.core.interfaces.collaborators import RecordStore
from src.core.resilience.request_correlator import RequestCorrelator, get_request_correlator

# ============================================================================
# DEPENDENCY PROVIDERS
# ============================================================================


def get_correlator(request: Request) -> RequestCorrelator:
    """
    Retrieve the RequestCorrelator from application state.

    Falls back to the global correlator when the lifespan did not run
    (for example a bare TestClient without a ``with`` block).
    """
    correlator = getattr(request.app.state, "correlator", None)
    if correlator is None:
        correlator = get_request_correlator()
        request.app.state.correlator = correlator
    return correlator


def get_record_store(request: Request) -> RecordStore:
    """
    Retrieve the RecordStore from application state.

    Raises:
        RuntimeError: If the lifespan startup did not complete
    """
    store = getattr(request.app.state, "record_store", None)
    if store is None:
        raise RuntimeError(
            "Record store not initialized in app.state. "
            "This indicates the application lifespan startup didn't complete properly."
        )
    return store


# ============================================================================
# TYPE ALIASES
# ============================================================================

CorrelatorDep = Annotated[RequestCorrelator, Depends(get_correlator)]
RecordStoreDep = Annotated[RecordStore, Depends(get_record_store)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
