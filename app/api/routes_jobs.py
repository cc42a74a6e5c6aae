"""FastAPI routes for video jobs."""

from fastapi import APIRouter, Depends, HTTPException, Request

from app.models.schemas import CreateJobRequest, JobStatusResponse
from app.services.job_orchestrator import JobOrchestrator

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_orchestrator(request: Request) -> JobOrchestrator:
    """The process-wide orchestrator created at startup."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Job orchestrator is not running")
    return orchestrator


@router.post("", response_model=JobStatusResponse, status_code=202)
async def create_job(
    body: CreateJobRequest, orchestrator: JobOrchestrator = Depends(get_orchestrator)
) -> JobStatusResponse:
    """
    Start a narrated video job.

    The job runs in the background; poll GET /jobs/{job_id} for progress.
    """
    if not body.topic_labels():
        raise HTTPException(status_code=422, detail="At least one topic or preferred_topic_hint is required")
    job = orchestrator.submit(body)
    return JobStatusResponse.from_job(job)


@router.get("", response_model=list[JobStatusResponse])
async def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> list[JobStatusResponse]:
    """List retained jobs, newest first."""
    return [JobStatusResponse.from_job(job) for job in orchestrator.list_jobs()]


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobStatusResponse:
    """Get job status and progress."""
    job = orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return JobStatusResponse.from_job(job)


@router.delete("/{job_id}", response_model=JobStatusResponse)
async def cancel_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobStatusResponse:
    """Cancel a job. Its worker stops before the next stage."""
    job = orchestrator.cancel_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return JobStatusResponse.from_job(job)
