"""
CaseCompass - Evidence Search
Concept-aware search across a user's evidence.

A plain-language query ("he keeps turning up at my work") is expanded into
legal concepts and search terms, then matched three ways:

    vector      chunk embeddings close to the query (similarity score)
    fulltext    chunks containing any expanded term (fixed 0.7)
    analysis    stored legal analyses mentioning a term (from confidence)

Results are de-duplicated per file and excerpt, best first, each with a
contextual excerpt, highlighted terms and a link back to the chunk.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AIServiceError
from app.models.models import EvidenceAnalysis, EvidenceFile
from app.services.ai_client import AIClient
from app.services.retrieval import keyword_chunks, scored_vector_chunks

logger = logging.getLogger(__name__)

FULLTEXT_SCORE = 0.7
ANALYSIS_SCORE_CAP = 0.9
FUZZY_THRESHOLD = 0.8
AI_EXPANSION_MIN_CHARS = 10
EXCERPT_CHARS = 300
EXCERPT_LEAD = 100
DEDUPE_PREFIX = 100

# Legal concept -> words and phrases victims use for it
CONCEPT_TERMS: dict[str, list[str]] = {
    "stalking": [
        "harassment", "following", "surveillance", "watching", "tracking", "monitoring",
        "shows up", "appears at", "waiting for", "lurking", "spying", "unexpected visits",
        "following me", "watching me", "keeps appearing", "won't leave me alone",
    ],
    "violence": [
        "assault", "physical harm", "hitting", "pushing", "aggression", "abuse", "slapping",
        "punching", "kicking", "choking", "strangling", "grabbing", "shaking", "throwing",
        "restraining", "cornering", "physical force", "injuries", "bruises",
    ],
    "threats": [
        "intimidation", "threatening", "menacing", "scaring", "frightening", "will hurt",
        "warned me", "threatened to", "said he would", "made threats", "swore he would",
    ],
    "emotional_abuse": [
        "manipulation", "gaslighting", "humiliation", "degradation", "psychological",
        "makes me feel", "calling me names", "put down", "worthless", "crazy", "stupid",
        "useless", "makes me doubt", "losing my mind",
    ],
    "control": [
        "coercion", "controlling", "dominating", "won't let me", "doesn't allow", "forbids",
        "prevents me", "stops me", "forces me", "has to approve", "permission",
        "decides for me", "tells me what", "monitors my", "checks my",
    ],
    "financial_abuse": [
        "money", "finances", "economic abuse", "bank account", "bank card", "controls money",
        "won't give money", "takes my pay", "hides money", "allowance", "credit card",
        "financially dependent", "no access to money",
    ],
    "isolation": [
        "isolating", "separating", "cutting off", "keeping away", "preventing contact",
        "won't let me see", "jealous of", "friends", "family", "alone", "lonely", "cut off",
    ],
    "communication_harassment": [
        "messages", "texts", "emails", "calls", "social media", "won't stop calling",
        "keeps texting", "constant messages", "blowing up my phone", "multiple calls",
        "non-stop", "repeatedly", "every day", "every hour",
    ],
    "child_safety": [
        "children present", "in front of the kids", "kids saw", "children witnessed",
        "scared the kids", "using the children", "custody", "parenting", "school pickup",
        "daycare", "contact with the children",
    ],
    "sexual_abuse": [
        "sexual assault", "forced sex", "unwanted touching", "sexual coercion",
        "wouldn't take no", "intimate images", "sharing photos", "sexual threats",
    ],
    "substance_abuse": [
        "drinking", "alcohol", "drugs", "drunk", "intoxicated", "addiction", "pills",
        "under the influence",
    ],
    "property_damage": [
        "broke my", "destroyed", "damaged", "smashed", "ruined", "vandalised", "keyed",
        "slashed tyres", "broken window", "holes in the wall",
    ],
    "escalation_patterns": [
        "getting worse", "more frequent", "escalating", "increasing", "intensifying",
        "never did before", "started doing", "more aggressive", "more violent",
        "more controlling", "worse than before",
    ],
    "frequency_patterns": [
        "always", "constantly", "continuously", "repeatedly", "every day", "daily",
        "multiple times", "all the time", "keeps doing", "won't stop", "again and again",
        "over and over", "never stops",
    ],
}

# Behaviour descriptions that signal a concept even when none of its words appear
BEHAVIOUR_PATTERNS: dict[str, list[re.Pattern]] = {
    "stalking": [
        re.compile(r"shows? up (at|to) (my )?work", re.I),
        re.compile(r"waiting (for me )?at (my )?car", re.I),
        re.compile(r"follows? me (to|from|around)", re.I),
        re.compile(r"always seems? to be there", re.I),
        re.compile(r"appears? everywhere i go", re.I),
        re.compile(r"keeps? (showing|turning) up", re.I),
    ],
    "control": [
        re.compile(r"won'?t let me (go|see|talk|leave)", re.I),
        re.compile(r"has to know where i am", re.I),
        re.compile(r"checks? my phone", re.I),
        re.compile(r"controls? (my|the) money", re.I),
        re.compile(r"decides? what i (wear|do|say)", re.I),
        re.compile(r"makes? me ask permission", re.I),
    ],
    "threats": [
        re.compile(r"said he would (hurt|kill|harm)", re.I),
        re.compile(r"threatened to (leave|take|hurt)", re.I),
        re.compile(r"warned me (about|that)", re.I),
        re.compile(r"if i (leave|tell|call)", re.I),
    ],
    "escalation_patterns": [
        re.compile(r"getting (worse|more|angrier)", re.I),
        re.compile(r"(more|increasingly) (violent|aggressive|controlling)", re.I),
        re.compile(r"never did this before", re.I),
        re.compile(r"escalat(ing|ed)", re.I),
    ],
    "emotional_abuse": [
        re.compile(r"makes? me feel (like|so|really) (crazy|stupid|worthless)", re.I),
        re.compile(r"tells? me i'?m (nothing|worthless|crazy|stupid)", re.I),
        re.compile(r"says? (nobody|no one) will (believe|want) me", re.I),
        re.compile(r"makes? me doubt myself", re.I),
    ],
}

# Concepts that pull in frequency or escalation vocabulary
FREQUENCY_CONCEPTS = ("control", "stalking", "communication_harassment")
ESCALATION_CONCEPTS = ("violence", "threats", "emotional_abuse")

EXPANSION_SYSTEM_PROMPT = """You are an expert in NSW domestic violence and family law.
Turn an evidence search query into legal concepts and the words a victim's
evidence would actually use (surveillance, isolation, financial control,
gaslighting, escalation, threats involving children).

Return ONLY JSON:
{"concepts": ["..."], "synonyms": ["..."], "behavioral_indicators": ["..."], "risk_factors": ["..."]}"""


@dataclass
class QueryExpansion:
    terms: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)

    def add_terms(self, terms) -> None:
        for term in terms:
            if isinstance(term, str):
                term = term.strip().lower()
                if term and term not in self.terms:
                    self.terms.append(term)

    def add_concept(self, concept: str) -> None:
        if concept not in self.concepts:
            self.concepts.append(concept)


# =============================================================================
# Query Expansion
# =============================================================================

def _contains(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text, re.I) is not None


def is_fuzzy_match(word: str, term: str, threshold: float = FUZZY_THRESHOLD) -> bool:
    """Typo-tolerant comparison for words of three or more letters."""
    if len(word) < 3 or len(term) < 3:
        return False
    return SequenceMatcher(None, word.lower(), term.lower()).ratio() >= threshold


def expand_search_query(query: str) -> QueryExpansion:
    """Rule-based expansion: behaviour patterns, concept words and near-miss spellings."""
    expansion = QueryExpansion()
    expansion.add_terms([query])
    lowered = query.lower()

    for concept, patterns in BEHAVIOUR_PATTERNS.items():
        if any(p.search(query) for p in patterns):
            expansion.add_concept(concept)
            expansion.add_terms(CONCEPT_TERMS[concept])

    words = [w for w in re.findall(r"[a-z']+", lowered) if len(w) > 3]
    for concept, terms in CONCEPT_TERMS.items():
        name = concept.replace("_", " ")
        matched = _contains(lowered, name) or any(_contains(lowered, t) for t in terms)
        if not matched:
            matched = any(
                is_fuzzy_match(word, name) or any(is_fuzzy_match(word, t) for t in terms)
                for word in words
            )
        if matched:
            expansion.add_concept(concept)
            expansion.add_terms(terms)

    return expansion


def add_contextual_terms(expansion: QueryExpansion) -> None:
    """Controlling behaviour brings in frequency words; abuse brings in escalation words."""
    concepts = set(expansion.concepts)
    if concepts.intersection(FREQUENCY_CONCEPTS):
        expansion.add_terms(CONCEPT_TERMS["frequency_patterns"])
    if concepts.intersection(ESCALATION_CONCEPTS):
        expansion.add_terms(CONCEPT_TERMS["escalation_patterns"])


async def ai_expand(ai: Optional[AIClient], query: str, expansion: QueryExpansion) -> bool:
    """Merge AI-suggested concepts and terms. Returns False when the AI was skipped or failed."""
    if ai is None or not ai.is_available or len(query) <= AI_EXPANSION_MIN_CHARS:
        return False
    try:
        data = await ai.chat_json(
            [
                {"role": "system", "content": EXPANSION_SYSTEM_PROMPT},
                {"role": "user", "content": f'Evidence search query: "{query}"'},
            ],
            task="search_expansion",
            max_tokens=600,
        )
    except AIServiceError as e:
        logger.info("AI query expansion failed, using rule-based expansion: %s", e.message)
        return False

    for key in ("synonyms", "behavioral_indicators", "risk_factors"):
        if isinstance(data.get(key), list):
            expansion.add_terms(data[key])
    if isinstance(data.get("concepts"), list):
        for concept in data["concepts"]:
            if isinstance(concept, str) and concept.strip():
                expansion.add_concept(concept.strip().lower().replace(" ", "_"))
    return True


# =============================================================================
# Formatting
# =============================================================================

def contextual_excerpt(text: str, terms: list[str], max_length: int = EXCERPT_CHARS) -> str:
    """Window of text around the first term hit, with ellipses where it was cut."""
    lowered = text.lower()
    hits = [i for i in (lowered.find(t.lower()) for t in terms if t) if i >= 0]
    if not hits:
        return text[:max_length] + ("..." if len(text) > max_length else "")

    first = min(hits)
    start = max(0, first - EXCERPT_LEAD)
    end = min(len(text), first + max_length - EXCERPT_LEAD)
    excerpt = text[start:end]
    if start > 0:
        excerpt = "..." + excerpt
    if end < len(text):
        excerpt = excerpt + "..."
    return excerpt


def highlight_terms(text: str, terms: list[str]) -> str:
    """Wrap whole-word term hits in <mark> tags; terms shorter than three letters are ignored."""
    usable = sorted({t for t in terms if len(t) >= 3}, key=len, reverse=True)
    if not usable:
        return text
    pattern = re.compile(r"\b(" + "|".join(re.escape(t) for t in usable) + r")\b", re.I)
    return pattern.sub(r"<mark>\1</mark>", text)


def matched_concepts(text: str, concepts: list[str]) -> list[str]:
    """Concepts whose own vocabulary (or name) appears in the text."""
    return [
        concept for concept in concepts
        if any(_contains(text, t) for t in [concept.replace("_", " "), *CONCEPT_TERMS.get(concept, [])])
    ]


def fulltext_terms(terms: list[str]) -> list[str]:
    cleaned = []
    for term in terms:
        term = re.sub(r"[^\w\s']", "", term).strip()
        if len(term) > 2 and term not in cleaned:
            cleaned.append(term)
    return cleaned


def navigation_url(file_id: str, chunk_id: Optional[str], query: str) -> str:
    params = {"fileId": file_id}
    if chunk_id:
        params["chunkId"] = chunk_id
    params["highlight"] = query
    return f"/evidence?{urlencode(params)}"


def dedupe_hits(hits: list[dict]) -> list[dict]:
    """One hit per file and excerpt prefix, keeping the higher score; best first."""
    best: dict[tuple[str, str], dict] = {}
    for hit in hits:
        key = (hit["file_id"], hit["text"][:DEDUPE_PREFIX])
        if key not in best or hit["score"] > best[key]["score"]:
            best[key] = hit
    return sorted(best.values(), key=lambda h: h["score"], reverse=True)


# =============================================================================
# Search
# =============================================================================

async def _analysis_hits(db: AsyncSession, user_id: str, terms: list[str], limit: int) -> list[dict]:
    if not terms:
        return []
    rows = (await db.execute(
        select(EvidenceAnalysis)
        .join(EvidenceFile, EvidenceFile.id == EvidenceAnalysis.file_id)
        .where(
            EvidenceAnalysis.user_id == user_id,
            or_(*(EvidenceAnalysis.content.ilike(f"%{term}%") for term in terms)),
        )
        .order_by(EvidenceAnalysis.created_at.desc())
        .limit(limit)
    )).scalars().all()
    return [
        {
            "file_id": a.file_id,
            "chunk_id": None,
            "seq": 0,
            "text": a.content or "Analysis insights available",
            "score": min(ANALYSIS_SCORE_CAP, (a.confidence_score or 0.5) + 0.1),
            "legal_significance": (a.content or "")[:EXCERPT_CHARS],
        }
        for a in rows
    ]


async def search_evidence(
    db: AsyncSession,
    ai: Optional[AIClient],
    user_id: str,
    query: str,
    include_analysis: bool = True,
    max_results: int = 20,
    min_relevance: float = 0.3,
) -> dict:
    """Expand the query, search three ways and return formatted, ranked results."""
    started = time.perf_counter()
    steps = [f'Analyzing search query: "{query}"']

    expansion = expand_search_query(query)
    await ai_expand(ai, query, expansion)
    add_contextual_terms(expansion)
    steps.append(
        f"Expanded to {len(expansion.terms)} search terms and identified {len(expansion.concepts)} legal concepts"
    )

    hits: list[dict] = []
    vector = await scored_vector_chunks(db, ai, user_id, query, min_relevance, max_results)
    if vector:
        steps.append("Performing semantic vector search using AI embeddings")
    hits.extend(
        {"file_id": c.file_id, "chunk_id": c.id, "seq": c.seq, "text": c.text, "score": round(score, 4)}
        for score, c in vector
    )

    steps.append("Performing full-text search across evidence content")
    terms = fulltext_terms(expansion.terms)
    for chunk in await keyword_chunks(db, user_id, terms, limit=max_results):
        hits.append({"file_id": chunk.file_id, "chunk_id": chunk.id, "seq": chunk.seq, "text": chunk.text, "score": FULLTEXT_SCORE})

    if include_analysis:
        steps.append("Searching stored evidence analyses for pattern matches")
        hits.extend(await _analysis_hits(db, user_id, terms, max_results))

    ranked = dedupe_hits(hits)
    total_found = len(ranked)
    ranked = ranked[:max_results]
    steps.append(f"Found {total_found} relevant evidence pieces across multiple search methods")

    files = {}
    if ranked:
        files = {f.id: f for f in (await db.execute(
            select(EvidenceFile).where(EvidenceFile.id.in_(list({h["file_id"] for h in ranked})))
        )).scalars().all()}

    results = []
    for hit in ranked:
        file = files.get(hit["file_id"])
        excerpt = contextual_excerpt(hit["text"], expansion.terms)
        results.append({
            "evidence_id": hit["file_id"],
            "file_name": file.name if file else "File",
            "excerpt": excerpt,
            "highlighted_text": highlight_terms(excerpt, expansion.terms),
            "relevance_score": hit["score"],
            "concepts_matched": matched_concepts(hit["text"], expansion.concepts),
            "legal_significance": hit.get("legal_significance"),
            "category": (file and (file.category or file.auto_category)) or "evidence",
            "created_at": file.created_at.isoformat() if file and file.created_at else None,
            "chunk_id": hit["chunk_id"],
            "chunk_sequence": hit["seq"],
            "navigation_url": navigation_url(hit["file_id"], hit["chunk_id"], query),
        })
    steps.append("Processed results with contextual highlighting and legal significance analysis")

    elapsed = round((time.perf_counter() - started) * 1000)
    logger.info("Evidence search %r for %s: %d results in %dms", query, user_id, total_found, elapsed)
    return {
        "query": query,
        "steps": steps,
        "results": results,
        "total_found": total_found,
        "search_time_ms": elapsed,
    }
