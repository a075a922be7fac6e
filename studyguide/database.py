import aiosqlite

from studyguide.config import settings

CREATE_EXAMS = """
CREATE TABLE IF NOT EXISTS exams (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

CREATE_SLIDES = """
CREATE TABLE IF NOT EXISTS slides (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    exam_id INTEGER NOT NULL,
    file_ref TEXT NOT NULL,
    file_name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (exam_id) REFERENCES exams(id)
)
"""

CREATE_TOPICS = """
CREATE TABLE IF NOT EXISTS topics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slide_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    subpoints_json TEXT NOT NULL DEFAULT '[]',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (slide_id) REFERENCES slides(id)
)
"""

CREATE_VIDEOS = """
CREATE TABLE IF NOT EXISTS videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic_id INTEGER NOT NULL,
    youtube_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    thumbnail_url TEXT NOT NULL DEFAULT '',
    duration_seconds INTEGER,
    subpoint_index INTEGER NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (topic_id) REFERENCES topics(id)
)
"""

# No UNIQUE(slide_id) on topics: the existence check in the pipeline is the
# only guard, and a rare duplicate from concurrent runs is tolerated.
CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_slides_exam ON slides(exam_id)",
    "CREATE INDEX IF NOT EXISTS idx_topics_slide ON topics(slide_id)",
    "CREATE INDEX IF NOT EXISTS idx_videos_topic ON videos(topic_id)",
]

_DDL = [CREATE_EXAMS, CREATE_SLIDES, CREATE_TOPICS, CREATE_VIDEOS, *CREATE_INDEXES]


async def init_db(db_path: str | None = None) -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(db_path or settings.database_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


async def get_async_conn(db_path: str | None = None) -> aiosqlite.Connection:
    """Async connection for use in repository calls and route handlers."""
    conn = await aiosqlite.connect(db_path or settings.database_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn
