"""
Prompt building for the simulated patient.
Builds the fixed system preamble from the scenario and turns the stored
conversation into chat messages (oldest first).
"""
import re
from typing import Dict, List, Optional

# Regex patterns for text processing
ROLE_PREFIX_RE = re.compile(r"^\s*(Patient|Patiente|Étudiant|Etudiant|Student|Médecin|Docteur)\s*[:\-–]\s*", re.IGNORECASE)
WS_RE = re.compile(r"[ \t]+")

FALLBACK_REPLY = "Je ne peux pas répondre à cette question maintenant."

BEHAVIOUR_RULES = """INSTRUCTIONS COMPORTEMENTALES OBLIGATOIRES:
- Tu incarnes CE patient précis dans ce scénario médical spécifique
- Reste STRICTEMENT cohérent avec la pathologie décrite: {description}
- Ne jamais inventer d'autres symptômes ou pathologies
- Réponds uniquement en lien avec le cas médical présenté
- Si l'étudiant pose des questions non liées au cas, rappelle-lui poliment le motif de consultation
- Utilise un langage de patient (pas de termes médicaux techniques)
- Sois réaliste dans tes émotions et préoccupations de patient/parent"""


def build_system_prompt(
    title: str,
    description: str,
    patient_prompt: str,
    passages: Optional[List[str]] = None,
) -> str:
    """Fixed system preamble for one scenario, optionally enriched with reference passages"""
    description = description or "Pas de description disponible"
    parts = [
        f"CONTEXTE DU SCÉNARIO: {title}",
        f"Description: {description}",
        "",
        "RÔLE ET INSTRUCTIONS SPÉCIFIQUES (À RESPECTER ABSOLUMENT):",
        patient_prompt.strip(),
        "",
        BEHAVIOUR_RULES.format(description=description),
        "",
        f'RAPPEL CRITIQUE: Ce scénario concerne spécifiquement "{description}". '
        "Tu ne dois JAMAIS mentionner d'autres symptômes ou pathologies.",
    ]
    if passages:
        parts += ["", "Contexte médical disponible:", "\n\n".join(passages)]
    return "\n".join(parts)


def make_messages(
    system_prompt: str,
    conversation: List[Dict[str, str]],
    student_text: str,
) -> List[Dict[str, str]]:
    """
    Chat messages for the model:
    system preamble, then every stored turn (student -> user, patient -> assistant),
    then the new student message.
    """
    messages = [{"role": "system", "content": system_prompt}]
    for turn in conversation:
        role = "user" if turn["role"] == "student" else "assistant"
        messages.append({"role": role, "content": turn["text"]})
    messages.append({"role": "user", "content": student_text})
    return messages


def clean_reply(raw: str) -> str:
    """Drop a leading role label the model sometimes adds and squeeze spaces"""
    if not raw:
        return ""
    text = ROLE_PREFIX_RE.sub("", raw.strip())
    lines = [WS_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line).strip()
