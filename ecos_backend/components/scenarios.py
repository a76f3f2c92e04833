from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import select

from ecos_backend import config
from ecos_backend.errors import ForbiddenError, NotFoundError
from .database import Database, Scenario

logger = logging.getLogger(__name__)

DEFAULT_MAX_SCORE = 4

# Used when the instructor does not provide a rubric
DEFAULT_CRITERIA: Dict[str, Dict[str, Any]] = {
    "communication": {"name": "Communication", "maxScore": 4},
    "anamnese": {"name": "Anamnèse", "maxScore": 4},
    "examen": {"name": "Examen clinique", "maxScore": 4},
    "raisonnement": {"name": "Raisonnement clinique", "maxScore": 4},
    "prise_en_charge": {"name": "Prise en charge", "maxScore": 4},
}


@dataclass(frozen=True)
class Criterion:
    """
    One rubric line:
    - id: key used in scores / persisted rows ("communication")
    - name: label shown to the grader ("Communication")
    - max_score: point cap (4 in the default rubric)
    """
    id: str
    name: str
    max_score: int = DEFAULT_MAX_SCORE


def normalize_criteria(raw: Any) -> Dict[str, Dict[str, Any]]:
    """
    Accepts the shapes instructors actually send:
    {"communication": {"name": ..., "maxScore": 4}}, {"communication": 4},
    ["communication", "anamnese"]; returns the canonical ordered mapping.
    """
    if not raw:
        return {key: dict(value) for key, value in DEFAULT_CRITERIA.items()}

    criteria: Dict[str, Dict[str, Any]] = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            if isinstance(value, dict):
                name = str(value.get("name") or key)
                max_score = value.get("maxScore", value.get("max_score", DEFAULT_MAX_SCORE))
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                name, max_score = str(key), value
            else:
                name, max_score = str(value or key), DEFAULT_MAX_SCORE
            criteria[str(key)] = {"name": name, "maxScore": int(max_score)}
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            criteria[str(item)] = {"name": str(item), "maxScore": DEFAULT_MAX_SCORE}
    else:
        raise ValueError("evaluation criteria must be a mapping or a list")
    return criteria


def rubric_for(scenario: Scenario) -> List[Criterion]:
    criteria = normalize_criteria(scenario.evaluation_criteria)
    return [
        Criterion(id=key, name=value["name"], max_score=value["maxScore"])
        for key, value in criteria.items()
    ]


class AdminPolicy:
    """Allow-list of instructor identities passed explicitly to the request context"""

    def __init__(self, admin_emails: Optional[Iterable[str]] = None):
        emails = config.ADMIN_EMAILS if admin_emails is None else admin_emails
        self.admin_emails = frozenset(e.lower().strip() for e in emails if e and e.strip())

    def is_admin(self, email: Optional[str]) -> bool:
        if not email or not isinstance(email, str):
            return False
        return email.lower().strip() in self.admin_emails

    def require_admin(self, email: Optional[str]) -> str:
        if not self.is_admin(email):
            raise ForbiddenError("Instructor access required")
        return email.lower().strip()


class ScenarioCatalog:
    """Instructor-side management of exam scenarios"""

    def __init__(self, database: Database):
        self.database = database

    async def get_scenario(self, scenario_id: int) -> Scenario:
        async with self.database.session() as session:
            scenario = await session.get(Scenario, scenario_id)
        if scenario is None:
            raise NotFoundError("scenario", scenario_id)
        return scenario

    async def list_scenarios(self) -> List[Scenario]:
        async with self.database.session() as session:
            result = await session.execute(select(Scenario).order_by(Scenario.id))
            return list(result.scalars().all())

    async def create_scenario(
        self,
        title: str,
        description: str,
        patient_prompt: str,
        created_by: str,
        evaluation_criteria: Any = None,
        knowledge_index: Optional[str] = None,
    ) -> Scenario:
        scenario = Scenario(
            title=title,
            description=description,
            patient_prompt=patient_prompt,
            evaluation_criteria=normalize_criteria(evaluation_criteria),
            knowledge_index=knowledge_index,
            created_by=created_by,
        )
        async with self.database.session() as session:
            session.add(scenario)
            await session.commit()
            await session.refresh(scenario)
        logger.info("ScenarioCatalog: Created scenario %s (%s) by %s", scenario.id, title, created_by)
        return scenario

    async def update_scenario(self, scenario_id: int, **changes: Any) -> Scenario:
        """Explicit edit; only known fields are applied, None values are ignored"""
        editable = {"title", "description", "patient_prompt", "evaluation_criteria", "knowledge_index"}
        async with self.database.session() as session:
            scenario = await session.get(Scenario, scenario_id)
            if scenario is None:
                raise NotFoundError("scenario", scenario_id)
            for field, value in changes.items():
                if field not in editable or value is None:
                    continue
                if field == "evaluation_criteria":
                    value = normalize_criteria(value)
                setattr(scenario, field, value)
            await session.commit()
            await session.refresh(scenario)
        logger.info("ScenarioCatalog: Updated scenario %s", scenario_id)
        return scenario
