"""
FastAPI application for the ECOS trainer.
Students talk to a simulated patient; completed sessions are graded by an LLM.
"""
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from ecos_backend import config

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

from ecos_backend.components.conversation_store import ConversationStore
from ecos_backend.components.database import CriterionScore, Database, ExamSession, Scenario, Turn
from ecos_backend.components.evaluation_queue import EvaluationQueue
from ecos_backend.components.llm import LLM
from ecos_backend.components.quota import QuotaTracker
from ecos_backend.components.scenarios import AdminPolicy, ScenarioCatalog, normalize_criteria
from ecos_backend.components.session_manager import COMPLETED, SessionManager
from ecos_backend.components.vector_search import VectorSearchClient
from ecos_backend.ecos_judge.judge import EvaluationEngine
from ecos_backend.ecos_judge.report import ReportGenerator, report_to_dict
from ecos_backend.errors import EcosError


# Request/Response models
class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1)
    scenario_id: int = Field(..., alias="scenarioId")


class StudentTurnRequest(BaseModel):
    text: str = Field(..., min_length=1)


class ScenarioRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1)
    description: str
    patient_prompt: str = Field(..., alias="patientPrompt", min_length=1)
    # {"communication": {"name": "Communication", "maxScore": 4}} or {"communication": 4}
    evaluation_criteria: Optional[Any] = Field(None, alias="evaluationCriteria")
    knowledge_index: Optional[str] = Field(None, alias="knowledgeIndex")


class ScenarioUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    description: Optional[str] = None
    patient_prompt: Optional[str] = Field(None, alias="patientPrompt")
    evaluation_criteria: Optional[Any] = Field(None, alias="evaluationCriteria")
    knowledge_index: Optional[str] = Field(None, alias="knowledgeIndex")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def scenario_to_dict(scenario: Scenario) -> Dict[str, Any]:
    return {
        "id": scenario.id,
        "title": scenario.title,
        "description": scenario.description,
        "patientPrompt": scenario.patient_prompt,
        "evaluationCriteria": normalize_criteria(scenario.evaluation_criteria),
        "knowledgeIndex": scenario.knowledge_index,
        "createdBy": scenario.created_by,
        "createdAt": _iso(scenario.created_at),
        "updatedAt": _iso(scenario.updated_at),
    }


def session_to_dict(exam: ExamSession) -> Dict[str, Any]:
    return {
        "id": exam.id,
        "scenarioId": exam.scenario_id,
        "studentId": exam.student_id,
        "status": exam.status,
        "startTime": _iso(exam.start_time),
        "endTime": _iso(exam.end_time),
    }


def turn_to_dict(turn: Turn) -> Dict[str, Any]:
    return {
        "position": turn.position,
        "role": turn.role,
        "content": turn.content,
        "timestamp": _iso(turn.timestamp),
    }


def score_to_dict(score: CriterionScore) -> Dict[str, Any]:
    return {
        "criterionId": score.criterion_id,
        "score": score.score,
        "feedback": score.feedback,
        "wasDefaulted": score.was_defaulted,
    }


def create_app(
    database: Optional[Database] = None,
    llm: Optional[LLM] = None,
    vector_search: Optional[VectorSearchClient] = None,
    admin_policy: Optional[AdminPolicy] = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Build the application with its components.
    start_workers=False grades sessions on demand (GET report / POST evaluate) instead of in background.
    """
    app = FastAPI(
        title="ECOS Trainer",
        description="Simulated patient exams with LLM grading",
        version="0.1.0"
    )

    # CORS middleware for frontend communication
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    database = database or Database()
    llm = llm or LLM()
    vector_search = vector_search or VectorSearchClient()
    admin_policy = admin_policy or AdminPolicy()

    conversation = ConversationStore(database)
    quota = QuotaTracker(database)
    catalog = ScenarioCatalog(database)
    reports = ReportGenerator(database)
    engine = EvaluationEngine(database, llm, conversation=conversation, reports=reports)
    evaluation_queue = EvaluationQueue(engine)
    session_manager = SessionManager(
        database,
        llm,
        quota,
        conversation=conversation,
        vector_search=vector_search,
        evaluation_queue=evaluation_queue,
    )

    app.state.database = database
    app.state.quota = quota
    app.state.catalog = catalog
    app.state.reports = reports
    app.state.evaluation_queue = evaluation_queue
    app.state.session_manager = session_manager

    @app.on_event("startup")
    async def startup():
        """Initialize services on startup"""
        logger.info("Starting services...")
        try:
            await database.initialize()
            if start_workers:
                await evaluation_queue.start()
            logger.info(f"ECOS backend initialized (llm_provider={llm.provider}, retrieval={vector_search.enabled})")
        except Exception as e:
            logger.error(f"Error initializing services: {str(e)}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown():
        """Cleanup on shutdown"""
        await evaluation_queue.stop()
        await database.close()

    @app.exception_handler(EcosError)
    async def ecos_error_handler(request, exc: EcosError):
        content = {"detail": exc.detail, "error_code": exc.error_code}
        content.update(exc.extra)
        return JSONResponse(status_code=exc.status_code, content=content)

    async def _report_payload(session_id: str, report) -> Dict[str, Any]:
        payload = report_to_dict(report)
        payload["scores"] = [score_to_dict(s) for s in await reports.get_scores(session_id)]
        return payload

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "database": "connected" if database._initialized else "disconnected",
            "llm_provider": llm.provider,
            "evaluation_workers": evaluation_queue.running,
            "retrieval": vector_search.enabled,
        }

    # ======== Sessions ========

    @app.post("/sessions")
    async def start_session(request: StartSessionRequest):
        session_id = await session_manager.start_session(request.scenario_id, request.student_id)
        return {"sessionId": session_id}

    @app.post("/sessions/{session_id}/turns")
    async def post_turn(session_id: str, request: StudentTurnRequest):
        reply = await session_manager.post_student_turn(session_id, request.text)
        return {"reply": reply}

    @app.post("/sessions/{session_id}/complete")
    async def complete_session(session_id: str):
        await session_manager.complete_session(session_id)
        return {}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        data = await session_manager.get_session(session_id)
        scenario = data["scenario"]
        payload = session_to_dict(data["session"])
        payload["scenario"] = {"id": scenario.id, "title": scenario.title, "description": scenario.description}
        payload["turns"] = [turn_to_dict(t) for t in data["turns"]]
        return payload

    @app.get("/students/{student_id}/sessions")
    async def list_student_sessions(student_id: str):
        sessions = await session_manager.list_student_sessions(student_id)
        return {"sessions": [session_to_dict(s) for s in sessions]}

    @app.get("/sessions/{session_id}/report")
    async def get_report(session_id: str):
        """
        Report of a graded session.
        404 while it is not available; a completed session without a report and
        without a pending job is graded on demand.
        """
        exam = await session_manager.get_exam(session_id)
        report = await reports.get_report(session_id)
        if report is None:
            job = evaluation_queue.get_job(session_id)
            in_flight = evaluation_queue.running and job is not None and job.active
            if exam.status != COMPLETED or in_flight:
                raise HTTPException(status_code=404, detail=f"Report for session {session_id} is not available yet")
            logger.info(f"Report for session {session_id} missing, evaluating on demand")
            report = (await evaluation_queue.evaluate_now(session_id)).report
        return {"report": await _report_payload(session_id, report)}

    @app.post("/sessions/{session_id}/evaluate")
    async def evaluate_session(session_id: str):
        """Manual (re-)evaluation of a completed session"""
        result = await evaluation_queue.evaluate_now(session_id)
        return {"report": await _report_payload(session_id, result.report)}

    @app.get("/sessions/{session_id}/evaluation")
    async def get_evaluation(session_id: str):
        await session_manager.get_exam(session_id)
        job = evaluation_queue.get_job(session_id)
        return {
            "job": job.to_dict() if job else None,
            "scores": [score_to_dict(s) for s in await reports.get_scores(session_id)],
        }

    # ======== Quota ========

    @app.get("/quota")
    async def get_quota(user_id: str = Query(..., alias="userId", min_length=1)):
        status = await quota.get_status(user_id, datetime.utcnow())
        return status.to_dict()

    # ======== Scenarios ========

    @app.get("/scenarios")
    async def list_scenarios():
        return {"scenarios": [scenario_to_dict(s) for s in await catalog.list_scenarios()]}

    @app.get("/scenarios/{scenario_id}")
    async def get_scenario(scenario_id: int):
        return scenario_to_dict(await catalog.get_scenario(scenario_id))

    @app.post("/scenarios")
    async def create_scenario(request: ScenarioRequest, x_user_email: Optional[str] = Header(None)):
        email = admin_policy.require_admin(x_user_email)
        try:
            scenario = await catalog.create_scenario(
                title=request.title,
                description=request.description,
                patient_prompt=request.patient_prompt,
                created_by=email,
                evaluation_criteria=request.evaluation_criteria,
                knowledge_index=request.knowledge_index,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return scenario_to_dict(scenario)

    @app.put("/scenarios/{scenario_id}")
    async def update_scenario(scenario_id: int, request: ScenarioUpdateRequest, x_user_email: Optional[str] = Header(None)):
        admin_policy.require_admin(x_user_email)
        try:
            scenario = await catalog.update_scenario(scenario_id, **request.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return scenario_to_dict(scenario)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
