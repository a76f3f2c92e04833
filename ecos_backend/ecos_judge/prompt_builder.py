import json
from typing import Dict, List

from ecos_backend.components.scenarios import Criterion

GRADER_SYSTEM_PROMPT = (
    "Tu es un évaluateur médical expert. Évalue de manière constructive et pédagogique."
)

ROLE_LABELS = {"student": "ÉTUDIANT", "patient": "PATIENT"}


def format_transcript(turns: List[Dict[str, str]]) -> str:
    """
    Numbered transcript, oldest first:
    [1] ÉTUDIANT: ...
    [2] PATIENT: ...
    """
    return "\n\n".join(
        f"[{index}] {ROLE_LABELS.get(turn['role'], turn['role'].upper())}: {turn['text']}"
        for index, turn in enumerate(turns, start=1)
    )


def build_evaluate_prompt(
    title: str,
    description: str,
    rubric: List[Criterion],
    turns: List[Dict[str, str]],
) -> str:
    """
    Grading prompt for one completed session.

    turns: [{"role": "student"|"patient", "text": "..."}] in conversation order
    rubric: criteria of the scenario; ids are the keys expected in "scores"
    """
    criteria = {c.id: {"name": c.name, "maxScore": c.max_score} for c in rubric}

    # answer skeleton the grader is asked to fill
    expected_json_schema = {
        "scores": {c.id: 0 for c in rubric},
        "comments": {c.id: "" for c in rubric},
        "strengths": [],
        "weaknesses": [],
        "recommendations": [],
    }

    max_points = max((c.max_score for c in rubric), default=4)

    return f"""Tu es un évaluateur expert pour les ECOS (Examens Cliniques Objectifs Structurés).

Scénario: {title}
Description: {description}

Critères d'évaluation:
{json.dumps(criteria, ensure_ascii=False, indent=2)}

Évalue la performance de l'étudiant basée sur cette interaction complète:

{format_transcript(turns)}

Fournir une évaluation détaillée incluant:
1. Score pour chaque critère (0-{max_points} points)
2. Commentaires spécifiques pour chaque critère
3. Points forts observés
4. Points à améliorer
5. Recommandations pour l'apprentissage futur

Retourne le résultat en format JSON structuré avec les champs: scores, comments, strengths, weaknesses, recommendations.
Utilise exactement ce format (clés des critères inchangées):
{json.dumps(expected_json_schema, ensure_ascii=False, indent=2)}
"""


def build_evaluate_messages(
    title: str,
    description: str,
    rubric: List[Criterion],
    turns: List[Dict[str, str]],
) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": GRADER_SYSTEM_PROMPT},
        {"role": "user", "content": build_evaluate_prompt(title, description, rubric, turns)},
    ]
