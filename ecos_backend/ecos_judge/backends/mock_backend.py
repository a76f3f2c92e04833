import json
import logging
from typing import Dict, List

from ecos_backend.ecos_judge.parser import extract_json_object

logger = logging.getLogger(__name__)

SCHEMA_MARKER = "Utilise exactement ce format"

PATIENT_LINES = [
    "Bonjour docteur. J'ai mal depuis hier soir et ça ne passe pas.",
    "C'est surtout le matin, ça m'inquiète un peu.",
    "Non, je n'ai rien pris de particulier.",
]


class MockBackend:
    """
    Offline backend for debugging and tests: deterministic answers.
    - grading prompt (grader system message) -> JSON with score 3 for every criterion
    - anything else -> a short patient line
    """
    def __init__(self, model_name: str = "mock"):
        self.model_name = model_name
        logger.info("MockBackend initialized")

    def _criteria_ids(self, prompt: str) -> List[str]:
        pos = prompt.find(SCHEMA_MARKER)
        schema = extract_json_object(prompt[pos:]) if pos != -1 else None
        scores = (schema or {}).get("scores")
        return list(scores) if isinstance(scores, dict) else []

    def generate(self, messages: List[Dict[str, str]]) -> str:
        system = messages[0]["content"] if messages and messages[0].get("role") == "system" else ""
        if "évaluateur" not in system:
            student_turns = sum(1 for m in messages if m.get("role") == "user")
            return PATIENT_LINES[(student_turns - 1) % len(PATIENT_LINES)]

        criteria = self._criteria_ids(messages[-1].get("content", ""))
        # a JSON string, so parse_evaluation takes the structured path
        return json.dumps(
            {
                "scores": {criterion: 3 for criterion in criteria},
                "comments": {criterion: "Évaluation hors ligne." for criterion in criteria},
                "strengths": ["Présentation claire au patient."],
                "weaknesses": ["Anamnèse incomplète."],
                "recommendations": ["Structurer l'interrogatoire par systèmes."],
            },
            ensure_ascii=False,
        )
