"""Per-assistant system prompt assembly.

Each assistant type maps to a pure function ``(documents, query) -> str``.
The dispatch table is checked at import time so a new ``AssistantType``
cannot ship without a prompt.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from html import escape

from kine_rag.errors import UnknownAssistantType
from kine_rag.models.rag import AssistantType, ScoredDocument

DOCUMENT_CONTENT_CHARS = 1000

BIBLIO_NO_STUDIES_MESSAGE = (
    "Aucune étude pertinente n'a été trouvée dans le corpus documentaire pour "
    "répondre à cette question. Je ne peux pas formuler de recommandation fondée "
    "sur les preuves sans source vérifiable. Reformulez la question ou ajoutez "
    "des études au corpus."
)

EVIDENCE_RANK = {"A": 4, "B": 3, "C": 2, "D": 1}
_EVIDENCE_GRADE = re.compile(r"\b([A-D])\b")

PromptBuilder = Callable[[Sequence[ScoredDocument], str], str]

# --- Shared framing ---

PROFESSIONAL_FRAMING = """\
ATTENTION : Tu parles à un KINÉSITHÉRAPEUTE PROFESSIONNEL, PAS à un patient !

L'utilisateur est un kinésithérapeute diplômé qui traite des patients. \
Réponds de thérapeute à thérapeute, avec le vocabulaire technique approprié.

RÈGLES :
- Toujours s'adresser au kinésithérapeute, jamais au patient
- Utiliser "vos patients", "dans votre pratique", "je vous recommande"
- Ne jamais inventer de source : ne citer que les documents fournis
- Si les documents ne couvrent pas la question, le dire explicitement"""


def parse_assistant_type(value: str | AssistantType) -> AssistantType:
    """Validate an assistant type at the boundary."""
    try:
        return AssistantType(value)
    except ValueError:
        raise UnknownAssistantType(
            f"Unknown assistant type {value!r}",
            details={"allowed": [t.value for t in AssistantType]},
        ) from None


def _truncate(content: str, limit: int = DOCUMENT_CONTENT_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit].rstrip() + "..."


def _format_documents(documents: Sequence[ScoredDocument], *, with_scores: bool) -> str:
    if not documents:
        return "<documents />"
    parts = ["<documents>"]
    for i, doc in enumerate(documents, start=1):
        category = escape(doc.category or "")
        attrs = f'id="{i}" title="{escape(doc.title)}" category="{category}"'
        if with_scores:
            attrs += f' score="{doc.final_score:.2f}"'
        parts.append(f"<document {attrs}>\n{_truncate(doc.content)}\n</document>")
    parts.append("</documents>")
    return "\n".join(parts)


def _flat_prompt(
    role: str, documents: Sequence[ScoredDocument], *, with_scores: bool
) -> str:
    sections = [PROFESSIONAL_FRAMING, role]
    if documents:
        sections.append(
            "DOCUMENTS DE RÉFÉRENCE PROFESSIONNELS :\n"
            + _format_documents(documents, with_scores=with_scores)
        )
    else:
        sections.append(
            "Aucun document de référence n'a été trouvé pour cette question. "
            "Réponds à partir de connaissances professionnelles générales et "
            "signale l'absence de source."
        )
    return "\n\n".join(sections)


# --- Variants ---

BASIQUE_ROLE = """\
RÔLE : Assistant généraliste pour kinésithérapeutes.
Donne des réponses claires et pratiques. Le score de chaque document indique \
sa pertinence estimée ; appuie-toi d'abord sur les mieux notés."""

CLINIQUE_ROLE = """\
RÔLE : Assistant clinique pour kinésithérapeutes.
Aide au raisonnement diagnostique, au choix des techniques et à la \
progression des protocoles. Structure la réponse : hypothèses cliniques, \
bilan à réaliser, techniques proposées, critères de progression, signaux \
d'alerte nécessitant une réorientation médicale."""

ADMINISTRATIVE_ROLE = """\
RÔLE : Assistant administratif pour kinésithérapeutes libéraux.
Réponds sur la réglementation, la nomenclature, la cotation des actes, la \
facturation et les obligations déontologiques. Précise quand une règle peut \
varier selon la situation ou a pu évoluer, et renvoie vers l'organisme \
compétent en cas de doute."""

BIBLIO_ROLE = """\
RÔLE : Assistant bibliographique en pratique fondée sur les preuves.
Réponds UNIQUEMENT à partir des études fournies ci-dessous, classées par \
niveau de preuve décroissant (A > B > C > D)."""

BIBLIO_FORMAT = """\
FORMAT DE RÉPONSE OBLIGATOIRE :
## Recommandations
Recommandations pratiques, chacune suivie de sa citation [n].
## Analyse des preuves
Synthèse des résultats, en distinguant le niveau de preuve de chaque étude.
## Bibliographie
Une entrée par étude : [n] Auteurs (Année). Titre. Niveau de preuve X.
## Qualité et limites
Biais, populations étudiées, limites de transposition à la pratique.

RÈGLES DE CITATION :
- Chaque affirmation doit citer une étude fournie sous la forme [n]
- N'invente jamais d'étude, d'auteur, d'année ou de résultat
- Si les études ne répondent pas à la question, dis-le explicitement"""


def evidence_rank(level: object) -> int:
    """Rank an evidence level: A=4 ... D=1, anything unmapped 0."""
    if not isinstance(level, str):
        return 0
    match = _EVIDENCE_GRADE.search(level.upper())
    return EVIDENCE_RANK[match.group(1)] if match else 0


def _study_key(doc: ScoredDocument) -> str:
    meta = doc.metadata
    return meta.get("source_file") or meta.get("original_title") or doc.title


def group_studies(documents: Sequence[ScoredDocument]) -> list[list[ScoredDocument]]:
    """Collapse chunks of the same source into one study, best evidence first."""
    groups: dict[str, list[ScoredDocument]] = {}
    for doc in documents:
        groups.setdefault(_study_key(doc), []).append(doc)
    for chunks in groups.values():
        chunks.sort(key=lambda d: d.metadata.get("chunk_index", 0))

    def order(chunks: list[ScoredDocument]) -> tuple[int, float]:
        level = max(evidence_rank(c.metadata.get("evidence_level")) for c in chunks)
        return level, max(c.final_score for c in chunks)

    return sorted(groups.values(), key=order, reverse=True)


def _render_study(number: int, chunks: list[ScoredDocument]) -> str:
    first = chunks[0]
    meta = first.metadata
    title = meta.get("original_title") or first.title
    authors = meta.get("authors") or "Auteurs non précisés"
    if isinstance(authors, list):
        authors = ", ".join(str(a) for a in authors)
    year = meta.get("year") or meta.get("date") or "s.d."
    level = meta.get("evidence_level") or "non gradé"
    excerpts = "\n[...]\n".join(_truncate(c.content) for c in chunks)
    return (
        f'<study id="{number}" title="{escape(str(title))}" '
        f'authors="{escape(str(authors))}" '
        f'year="{escape(str(year))}" evidence_level="{escape(str(level))}">\n'
        f"{excerpts}\n</study>"
    )


def build_basique_prompt(documents: Sequence[ScoredDocument], query: str) -> str:
    return _flat_prompt(BASIQUE_ROLE, documents, with_scores=True)


def build_clinique_prompt(documents: Sequence[ScoredDocument], query: str) -> str:
    return _flat_prompt(CLINIQUE_ROLE, documents, with_scores=False)


def build_administrative_prompt(documents: Sequence[ScoredDocument], query: str) -> str:
    return _flat_prompt(ADMINISTRATIVE_ROLE, documents, with_scores=False)


def build_biblio_prompt(documents: Sequence[ScoredDocument], query: str) -> str:
    """Evidence-based prompt; the fixed refusal when there is nothing to cite."""
    if not documents:
        return BIBLIO_NO_STUDIES_MESSAGE
    studies = group_studies(documents)
    rendered = "\n".join(
        _render_study(i, chunks) for i, chunks in enumerate(studies, start=1)
    )
    return "\n\n".join(
        [
            PROFESSIONAL_FRAMING,
            BIBLIO_ROLE,
            f"ÉTUDES DISPONIBLES ({len(studies)}) :\n"
            f"<studies>\n{rendered}\n</studies>",
            BIBLIO_FORMAT,
        ]
    )


PROMPT_BUILDERS: dict[AssistantType, PromptBuilder] = {
    AssistantType.BASIQUE: build_basique_prompt,
    AssistantType.BIBLIO: build_biblio_prompt,
    AssistantType.CLINIQUE: build_clinique_prompt,
    AssistantType.ADMINISTRATIVE: build_administrative_prompt,
}

_missing = set(AssistantType) - PROMPT_BUILDERS.keys()
if _missing:
    raise RuntimeError(f"No prompt builder for assistant types: {sorted(_missing)}")


def build_prompt(
    assistant_type: str | AssistantType,
    documents: Sequence[ScoredDocument],
    query: str = "",
) -> str:
    """System prompt for ``assistant_type`` over the selected ``documents``.

    Raises ``UnknownAssistantType`` for values outside the four variants.
    """
    return PROMPT_BUILDERS[parse_assistant_type(assistant_type)](documents, query)
