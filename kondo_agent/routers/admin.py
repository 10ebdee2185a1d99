from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from kondo_agent.database import get_db
from kondo_agent.schemas.queue import QueueJobResponse, QueueStatsResponse
from kondo_agent.services.queue_service import get_queue_stats, list_jobs
from kondo_agent.services.state_machine import JobStatus

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(db: Session = Depends(get_db)):
    """Job counts per status."""
    return QueueStatsResponse(**get_queue_stats(db))


@router.get("/queue/jobs", response_model=list[QueueJobResponse])
def queue_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Jobs in FIFO order, optionally filtered by status."""
    job_status = None
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    return list_jobs(db, status=job_status, limit=limit)
