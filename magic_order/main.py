"""
FastAPI Main Application - message-to-order extraction service.

Flow:
1. User pastes a customer message (pre-scan highlights unknown words)
2. Analysis runs in the background through the completion phases
3. UI polls the run for progress, then reviews the draft order cards
4. Complete cards are saved as orders in the catalog store
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.background import BackgroundScheduler

from magic_order.aggregator import CardLockedError
from magic_order.analysis_session import AnalysisSession
from magic_order.catalog_store import SqliteCatalogStore
from magic_order.config import settings
from magic_order.error_handler import (
    DraftNotFoundError,
    ErrorClassifier,
    IncompleteDraftsError,
    StoreError,
)
from magic_order.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    DraftOrderCard,
    DraftPatch,
    DraftsResponse,
    ExtractedLineItem,
    RunStateResponse,
    SaveResponse,
    ScanRequest,
    ScanResponse,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================
# FASTAPI APP INITIALIZATION
# ============================================

app = FastAPI(
    title="Magic Order",
    description="Turns informal customer messages into draft orders",
    version="0.1.0"
)

# Enable CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_session: Optional[AnalysisSession] = None
_scheduler: Optional[BackgroundScheduler] = None


def get_session() -> AnalysisSession:
    """Process-wide session, created on first use"""
    global _session
    if _session is None:
        _session = AnalysisSession(
            store=SqliteCatalogStore(settings.catalog_db_path),
            tick_seconds=settings.progress_tick_seconds,
            retention_minutes=settings.run_retention_minutes,
        )
    return _session


# ============================================
# STARTUP / SHUTDOWN
# ============================================

def cleanup_finished_runs():
    """Drop finished runs past the retention window"""
    if _session is not None:
        _session.cleanup_finished_runs()


@app.on_event("startup")
async def startup_event():
    """Schedule cleanup of finished runs"""
    global _scheduler
    logger.info(f"Magic Order started, provider={settings.completion_provider}")

    _scheduler = BackgroundScheduler()
    _scheduler.add_job(cleanup_finished_runs, 'interval', minutes=5)
    _scheduler.start()
    logger.info(f"Run cleanup scheduled (runs kept {settings.run_retention_minutes} minutes)")


@app.on_event("shutdown")
async def shutdown_event():
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
    logger.info("Magic Order shutting down")


# ============================================
# HELPER FUNCTIONS
# ============================================

def _classified_error(status_code: int, error: Exception) -> JSONResponse:
    classification = ErrorClassifier.classify(error)
    return JSONResponse(status_code=status_code, content={"detail": classification.to_dict()})


def _run_response(session: AnalysisSession, run_id: str) -> RunStateResponse:
    state = session.get_run(run_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return RunStateResponse(
        run_id=state.run_id,
        status=state.status.value,
        stage=state.stage,
        progress=round(state.progress, 1),
        elapsed_seconds=round(state.elapsed_seconds(), 2),
        cancelled=state.cancelled,
        is_current=session.is_current(run_id),
        error=state.error.to_dict() if state.error else None,
        phase1_response=state.phase1_response,
        phase2_response=state.phase2_response,
        phase3_response=state.phase3_response,
    )


# ============================================
# API ENDPOINTS
# ============================================

@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "service": "Magic Order",
        "status": "running",
        "version": "0.1.0",
        "provider": settings.completion_provider,
        "mode": settings.analysis_mode,
    }


@app.post("/scan", response_model=ScanResponse)
def scan_message(request: ScanRequest, session: AnalysisSession = Depends(get_session)):
    """Highlight words that match no known client or product"""
    try:
        tokens, segments = session.scan(request.message)
    except StoreError as e:
        return _classified_error(502, e)
    return ScanResponse(unknown_tokens=tokens, segments=segments)


@app.post("/analyze", response_model=AnalyzeResponse)
def analyze_message(request: AnalyzeRequest, session: AnalysisSession = Depends(get_session)):
    """
    Start an analysis run and return its id.

    Poll GET /runs/{run_id} for progress. A previous run still in flight is
    cancelled and its late result discarded.
    """
    try:
        run_id = session.analyze(request.message)
    except StoreError as e:
        return _classified_error(502, e)
    state = session.get_run(run_id)
    return AnalyzeResponse(run_id=run_id, status=state.status.value if state else "idle")


@app.get("/runs/{run_id}", response_model=RunStateResponse)
def get_run(run_id: str, session: AnalysisSession = Depends(get_session)):
    return _run_response(session, run_id)


@app.post("/runs/{run_id}/cancel", response_model=RunStateResponse)
def cancel_run(run_id: str, session: AnalysisSession = Depends(get_session)):
    if session.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    session.cancel(run_id)
    return _run_response(session, run_id)


@app.get("/drafts", response_model=DraftsResponse)
def list_drafts(session: AnalysisSession = Depends(get_session)):
    return DraftsResponse(cards=session.cards(), can_save_all=session.can_save_all())


@app.patch("/drafts/{index}", response_model=DraftOrderCard)
def update_draft(index: int, patch: DraftPatch, session: AnalysisSession = Depends(get_session)):
    try:
        return session.update_card(index, patch)
    except DraftNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except CardLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/drafts/{index}", response_model=DraftsResponse)
def delete_draft(index: int, session: AnalysisSession = Depends(get_session)):
    try:
        session.delete_card(index)
    except DraftNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return DraftsResponse(cards=session.cards(), can_save_all=session.can_save_all())


@app.post("/drafts/{index}/items", response_model=DraftOrderCard)
def add_draft_item(index: int, item: ExtractedLineItem, session: AnalysisSession = Depends(get_session)):
    try:
        return session.add_item(index, item)
    except DraftNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except CardLockedError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/drafts/save-all", response_model=SaveResponse)
def save_all_drafts(session: AnalysisSession = Depends(get_session)):
    try:
        order_ids = session.save_all()
    except IncompleteDraftsError as e:
        return _classified_error(409, e)
    except StoreError as e:
        return _classified_error(502, e)
    return SaveResponse(
        status="success",
        saved_order_ids=order_ids,
        message=f"{len(order_ids)} orders saved",
    )


@app.post("/drafts/{index}/save", response_model=SaveResponse)
def save_draft(index: int, session: AnalysisSession = Depends(get_session)):
    try:
        order_id = session.save_card(index)
    except DraftNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except IncompleteDraftsError as e:
        return _classified_error(409, e)
    except StoreError as e:
        return _classified_error(502, e)
    return SaveResponse(status="success", saved_order_ids=[order_id], message="Order saved")


@app.delete("/drafts")
def discard_drafts(session: AnalysisSession = Depends(get_session)):
    """Discard the current analysis and its drafts"""
    session.discard()
    return {"status": "success", "message": "Drafts discarded"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("magic_order.main:app", host=settings.host, port=settings.port)
