from fastapi import APIRouter, Depends
from pydantic import BaseModel

from studyguide.dependencies import get_orchestrator
from studyguide.errors import RequestValidationError
from studyguide.services.orchestrator import BatchOrchestrator

router = APIRouter(prefix="/api", tags=["processing"])


class ProcessExamRequest(BaseModel):
    exam_id: int | None = None


@router.post("/process-exam")
async def process_exam(
    body: ProcessExamRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Run the extraction pipeline over every slide of an exam.

    Always answers 200 with counts and per-slide diagnostics once processing
    has started, even if every slide failed; callers then poll
    ``GET /api/exams/{exam_id}/slides``.
    """
    if body.exam_id is None:
        raise RequestValidationError("Missing exam_id")
    report = await orchestrator.process_batch(body.exam_id)
    return report.to_dict()
