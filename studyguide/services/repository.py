import json
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Sequence

import aiosqlite

from studyguide.database import get_async_conn
from studyguide.errors import RepositoryError
from studyguide.models import Exam, Slide, SlideStatus, Topic, Video


def _slide_from_row(row: aiosqlite.Row) -> Slide:
    return Slide(
        id=row["id"],
        exam_id=row["exam_id"],
        file_ref=row["file_ref"],
        file_name=row["file_name"],
        status=row["status"],
        error=row["error"],
    )


def _topic_from_row(row: aiosqlite.Row) -> Topic:
    return Topic(
        id=row["id"],
        slide_id=row["slide_id"],
        title=row["title"],
        subpoints=json.loads(row["subpoints_json"] or "[]"),
    )


def _video_from_row(row: aiosqlite.Row) -> Video:
    return Video(
        id=row["id"],
        topic_id=row["topic_id"],
        youtube_id=row["youtube_id"],
        title=row["title"],
        description=row["description"],
        thumbnail_url=row["thumbnail_url"],
        duration_seconds=row["duration_seconds"],
        subpoint_index=row["subpoint_index"],
    )


class SlideRepository:
    """SQLite-backed store for exams, slides, topics and videos.

    Every call opens its own connection, so concurrent slide pipelines never
    share a cursor.  ``sqlite3.Error`` is re-raised as ``RepositoryError`` so
    the pipeline can treat persistence failures like any other stage failure.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            conn = await get_async_conn(self.db_path)
        except sqlite3.Error as exc:
            raise RepositoryError(f"Database unavailable: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise RepositoryError(f"Database error: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Exams & slides
    # ------------------------------------------------------------------
    async def create_exam(self, name: str) -> Exam:
        async with self._connect() as conn:
            cursor = await conn.execute("INSERT INTO exams (name) VALUES (?)", (name,))
            await conn.commit()
            row = await conn.execute("SELECT * FROM exams WHERE id = ?", (cursor.lastrowid,))
            exam = await row.fetchone()
            return Exam(id=exam["id"], name=exam["name"], created_at=exam["created_at"])

    async def get_exam(self, exam_id: int) -> Exam | None:
        async with self._connect() as conn:
            row = await conn.execute("SELECT * FROM exams WHERE id = ?", (exam_id,))
            exam = await row.fetchone()
            if exam is None:
                return None
            return Exam(id=exam["id"], name=exam["name"], created_at=exam["created_at"])

    async def add_slide(self, exam_id: int, file_ref: str, file_name: str) -> Slide:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "INSERT INTO slides (exam_id, file_ref, file_name, status) VALUES (?, ?, ?, ?)",
                (exam_id, file_ref, file_name, SlideStatus.PENDING.value),
            )
            await conn.commit()
            return Slide(id=cursor.lastrowid, exam_id=exam_id, file_ref=file_ref, file_name=file_name)

    async def get_slides_for_batch(self, exam_id: int) -> list[Slide]:
        """Return every slide of an exam in upload order."""
        async with self._connect() as conn:
            rows = await conn.execute(
                "SELECT * FROM slides WHERE exam_id = ? ORDER BY created_at, id",
                (exam_id,),
            )
            return [_slide_from_row(row) for row in await rows.fetchall()]

    async def update_slide_status(self, slide_id: int, status: str, error: str | None = None) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE slides SET status = ?, error = ? WHERE id = ?",
                (status, error, slide_id),
            )
            await conn.commit()

    # ------------------------------------------------------------------
    # Topics & videos
    # ------------------------------------------------------------------
    async def get_topic_for_slide(self, slide_id: int) -> Topic | None:
        async with self._connect() as conn:
            row = await conn.execute(
                "SELECT * FROM topics WHERE slide_id = ? ORDER BY id LIMIT 1", (slide_id,)
            )
            topic = await row.fetchone()
            return _topic_from_row(topic) if topic else None

    async def insert_topic(self, topic: Topic) -> Topic:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "INSERT INTO topics (slide_id, title, subpoints_json) VALUES (?, ?, ?)",
                (topic.slide_id, topic.title, json.dumps(topic.subpoints)),
            )
            await conn.commit()
            return Topic(
                id=cursor.lastrowid,
                slide_id=topic.slide_id,
                title=topic.title,
                subpoints=list(topic.subpoints),
            )

    async def insert_videos(self, videos: Sequence[Video]) -> list[Video]:
        inserted: list[Video] = []
        if not videos:
            return inserted
        async with self._connect() as conn:
            for video in videos:
                cursor = await conn.execute(
                    "INSERT INTO videos (topic_id, youtube_id, title, description, thumbnail_url, "
                    "duration_seconds, subpoint_index) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        video.topic_id,
                        video.youtube_id,
                        video.title,
                        video.description,
                        video.thumbnail_url,
                        video.duration_seconds,
                        video.subpoint_index,
                    ),
                )
                inserted.append(replace(video, id=cursor.lastrowid))
            await conn.commit()
        return inserted

    async def list_topics_for_exam(self, exam_id: int) -> list[tuple[Topic, list[Video]]]:
        """Topics of an exam in slide order, each with its videos."""
        async with self._connect() as conn:
            rows = await conn.execute(
                "SELECT t.* FROM topics t JOIN slides s ON s.id = t.slide_id "
                "WHERE s.exam_id = ? ORDER BY s.created_at, s.id, t.id",
                (exam_id,),
            )
            topics = [_topic_from_row(row) for row in await rows.fetchall()]
            result: list[tuple[Topic, list[Video]]] = []
            for topic in topics:
                vrows = await conn.execute(
                    "SELECT * FROM videos WHERE topic_id = ? ORDER BY subpoint_index, id",
                    (topic.id,),
                )
                result.append((topic, [_video_from_row(v) for v in await vrows.fetchall()]))
            return result
