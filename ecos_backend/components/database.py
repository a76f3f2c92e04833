from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from datetime import datetime
from typing import Optional
import logging

from ecos_backend import config

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.utcnow()


class Scenario(Base):
    """Exam template: patient persona + grading rubric"""
    __tablename__ = "ecos_scenarios"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    patient_prompt = Column(Text, nullable=False)
    # {criterion_id: {"name": "...", "maxScore": 4}}, order matters
    evaluation_criteria = Column(JSON, nullable=False)
    knowledge_index = Column(String(255), nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Scenario(id={self.id}, title={self.title!r})>"


class ExamSession(Base):
    """One exam attempt of a student on a scenario"""
    __tablename__ = "ecos_sessions"

    id = Column(String(36), primary_key=True)
    scenario_id = Column(Integer, ForeignKey("ecos_scenarios.id", ondelete="RESTRICT"), nullable=False, index=True)
    student_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="in_progress")
    start_time = Column(DateTime, default=utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ExamSession(id={self.id}, status={self.status})>"


class Turn(Base):
    """One message of the conversation log (student or patient)"""
    __tablename__ = "ecos_messages"
    __table_args__ = (UniqueConstraint("session_id", "position", name="uq_ecos_messages_session_position"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("ecos_sessions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)  # "student" | "patient"
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Turn(session_id={self.session_id}, position={self.position}, role={self.role})>"


class CriterionScore(Base):
    """Normalized score for one rubric criterion; never updated in place"""
    __tablename__ = "ecos_evaluations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("ecos_sessions.id"), nullable=False, index=True)
    criterion_id = Column(String(50), nullable=False)
    score = Column(Integer, nullable=False)
    feedback = Column(Text, nullable=True)
    was_defaulted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Report(Base):
    """Narrative summary of a graded session (one per session)"""
    __tablename__ = "ecos_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("ecos_sessions.id"), nullable=False, unique=True)
    summary = Column(Text, nullable=False)
    strengths = Column(JSON, nullable=False, default=list)
    weaknesses = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    insufficient_content = Column(Boolean, nullable=False, default=False)
    aggregate_score = Column(Integer, nullable=False, default=0)  # percentage of max_score
    total_score = Column(Integer, nullable=False, default=0)
    max_score = Column(Integer, nullable=False, default=0)
    parse_strategy = Column(String(10), nullable=False, default="none")  # "json" | "text" | "none"
    created_at = Column(DateTime, default=utcnow, nullable=False)


class DailyCounter(Base):
    """Questions asked by a user on a given calendar day (service offset)"""
    __tablename__ = "daily_counters"

    user_id = Column(String(255), primary_key=True)
    day = Column(Date, primary_key=True)
    count = Column(Integer, nullable=False, default=0)


class Database:
    """Database connection manager"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or config.DATABASE_URL
        self.engine = None
        self.async_session = None
        self._initialized = False

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name if self.engine is not None else ""

    async def initialize(self):
        """Initialize database connection and create tables"""
        if self._initialized:
            return

        database_url = self.database_url
        # Convert postgresql:// to postgresql+asyncpg:// if needed
        if database_url.startswith("postgresql://"):
            database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

        engine_kwargs = {"echo": False, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=10, max_overflow=20)

        logger.info("Database: Connecting to database...")
        try:
            self.engine = create_async_engine(database_url, **engine_kwargs)

            if self.engine.dialect.name == "sqlite":
                # SQLite ignores foreign keys unless asked to enforce them
                @event.listens_for(self.engine.sync_engine, "connect")
                def _enable_sqlite_fk(dbapi_connection, _record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()

            self.async_session = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self._initialized = True
            logger.info("Database: Initialized successfully (dialect=%s)", self.engine.dialect.name)
        except Exception as e:
            logger.error(f"Database: Failed to initialize: {str(e)}", exc_info=True)
            raise

    def session(self) -> AsyncSession:
        if not self._initialized:
            raise RuntimeError("Database not initialized")
        return self.async_session()

    async def close(self):
        """Close database connection"""
        if self.engine:
            await self.engine.dispose()
            self._initialized = False
            logger.info("Database: Connection closed")
