import os
from dataclasses import asdict

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from studyguide.dependencies import get_blob_store, get_repository
from studyguide.models import SlideStatus
from studyguide.services.repository import SlideRepository
from studyguide.services.storage import LocalBlobStore

router = APIRouter(prefix="/api", tags=["exams"])

ALLOWED_EXTENSIONS = (".pdf", ".pptx", ".png", ".jpg", ".jpeg", ".webp")


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class ExamCreate(BaseModel):
    name: str


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


async def _require_exam(repo: SlideRepository, exam_id: int) -> None:
    if await repo.get_exam(exam_id) is None:
        raise HTTPException(status_code=404, detail=f"Exam {exam_id} not found")


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@router.post("/exams")
async def create_exam(
    body: ExamCreate, repo: SlideRepository = Depends(get_repository)
) -> dict:
    exam = await repo.create_exam(body.name)
    return asdict(exam)


@router.post("/exams/{exam_id}/slides")
async def upload_slide(
    exam_id: int,
    file: UploadFile = File(...),
    repo: SlideRepository = Depends(get_repository),
    blobs: LocalBlobStore = Depends(get_blob_store),
) -> dict:
    """Store an uploaded slide file and register it as a pending slide."""
    await _require_exam(repo, exam_id)

    filename = file.filename or "upload"
    ext = os.path.splitext(filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {ext}. Use {', '.join(ALLOWED_EXTENSIONS)}",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    ref = await blobs.save(exam_id, filename, content)
    slide = await repo.add_slide(exam_id, ref, filename)
    return asdict(slide)


@router.get("/exams/{exam_id}/slides")
async def list_slides(
    exam_id: int, repo: SlideRepository = Depends(get_repository)
) -> dict:
    """Slide statuses for polling after ``/process-exam``."""
    await _require_exam(repo, exam_id)
    slides = await repo.get_slides_for_batch(exam_id)
    return {
        "exam_id": exam_id,
        "slides": [asdict(s) for s in slides],
        "processing": sum(1 for s in slides if s.status == SlideStatus.PROCESSING.value),
    }


@router.get("/exams/{exam_id}/study-guide")
async def get_study_guide(
    exam_id: int, repo: SlideRepository = Depends(get_repository)
) -> dict:
    """Every topic of the exam with its videos grouped by subpoint."""
    await _require_exam(repo, exam_id)
    topics = []
    for topic, videos in await repo.list_topics_for_exam(exam_id):
        by_subpoint: list[list[dict]] = [[] for _ in topic.subpoints]
        for video in videos:
            if 0 <= video.subpoint_index < len(by_subpoint):
                by_subpoint[video.subpoint_index].append(asdict(video))
        topics.append({
            "id": topic.id,
            "slide_id": topic.slide_id,
            "title": topic.title,
            "subpoints": [
                {"index": i, "text": text, "videos": by_subpoint[i]}
                for i, text in enumerate(topic.subpoints)
            ],
        })
    return {"exam_id": exam_id, "topics": topics}
