"""
CaseCompass - Evidence Search Tests
Query expansion, excerpts and highlighting, and the search endpoint.
"""

import pytest

from conftest import create_session
from app.services.evidence_search import (
    QueryExpansion,
    add_contextual_terms,
    contextual_excerpt,
    dedupe_hits,
    expand_search_query,
    highlight_terms,
    is_fuzzy_match,
    matched_concepts,
    navigation_url,
)


async def _paste(client, headers, text, name="Messages from Dan"):
    response = await client.post("/api/evidence/text", json={"name": name, "text": text}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["file_id"]


async def _search(client, headers, **body):
    response = await client.post("/api/evidence/search", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


# =============================================================================
# Query Expansion
# =============================================================================

class TestExpandSearchQuery:

    def test_behaviour_description_maps_to_concept(self):
        expansion = expand_search_query("he checks my phone every night")
        assert "control" in expansion.concepts
        assert "controlling" in expansion.terms

    def test_concept_words(self):
        expansion = expand_search_query("he took my bank card")
        assert "financial_abuse" in expansion.concepts
        assert "economic abuse" in expansion.terms

    def test_misspelt_concept(self):
        assert "stalking" in expand_search_query("stalkng").concepts

    def test_query_itself_is_a_term(self):
        assert expand_search_query("Lunch at noon").terms[0] == "lunch at noon"

    def test_unrelated_query(self):
        assert expand_search_query("lunch at noon").concepts == []


def test_threats_bring_in_escalation_terms():
    expansion = QueryExpansion(concepts=["threats"])
    add_contextual_terms(expansion)
    assert "getting worse" in expansion.terms
    assert "always" not in expansion.terms


def test_fuzzy_match():
    assert is_fuzzy_match("harrassment", "harassment")
    assert not is_fuzzy_match("ab", "ab")
    assert not is_fuzzy_match("lunch", "punching")


# =============================================================================
# Formatting
# =============================================================================

class TestContextualExcerpt:

    def test_window_around_first_hit(self):
        text = "x" * 200 + " phone " + "y" * 400
        excerpt = contextual_excerpt(text, ["phone"])
        assert excerpt.startswith("...")
        assert excerpt.endswith("...")
        assert "phone" in excerpt
        assert len(excerpt) == 306

    def test_no_hit_takes_the_start(self):
        assert contextual_excerpt("short text", ["phone"]) == "short text"
        assert contextual_excerpt("z" * 400, ["phone"]) == "z" * 300 + "..."


class TestHighlightTerms:

    def test_whole_words_only(self):
        text = highlight_terms("He checked my phone and my phonebook", ["phone", "my"])
        assert text == "He checked my <mark>phone</mark> and my phonebook"

    def test_longest_term_wins(self):
        assert highlight_terms("Bank card taken", ["bank", "bank card"]) == "<mark>Bank card</mark> taken"


def test_matched_concepts_use_concept_vocabulary():
    assert matched_concepts("He took my bank card", ["financial_abuse", "stalking"]) == ["financial_abuse"]


def test_navigation_url():
    assert navigation_url("f1", "c1", "bank card") == "/evidence?fileId=f1&chunkId=c1&highlight=bank+card"
    assert navigation_url("f1", None, "x") == "/evidence?fileId=f1&highlight=x"


def test_dedupe_keeps_best_score():
    hits = [
        {"file_id": "f1", "text": "same text", "score": 0.7},
        {"file_id": "f1", "text": "same text", "score": 0.82},
        {"file_id": "f2", "text": "same text", "score": 0.75},
    ]
    assert [(h["file_id"], h["score"]) for h in dedupe_hits(hits)] == [("f1", 0.82), ("f2", 0.75)]


# =============================================================================
# Endpoint
# =============================================================================

class TestSearchEndpoint:

    @pytest.mark.anyio
    async def test_finds_evidence_by_concept(self, client, auth_headers, fake_ai, sample_evidence_text):
        file_id = await _paste(client, auth_headers, sample_evidence_text)

        data = await _search(client, auth_headers, query="he took my bank card")
        assert data["query"] == "he took my bank card"
        assert data["total_found"] == 1
        assert "Performing full-text search across evidence content" in data["steps"]
        assert data["search_time_ms"] >= 0

        result = data["results"][0]
        assert result["evidence_id"] == file_id
        assert result["file_name"] == "Messages from Dan.txt"
        assert result["relevance_score"] == 0.7
        # The query itself is the longest matching term
        assert "<mark>He took my bank card</mark>" in result["highlighted_text"]
        assert "financial_abuse" in result["concepts_matched"]
        assert result["category"] == "evidence"
        assert result["chunk_sequence"] == 0
        assert result["navigation_url"].startswith(f"/evidence?fileId={file_id}&chunkId={result['chunk_id']}")

        expansion_calls = [c for c in fake_ai.calls if c.get("task") == "search_expansion"]
        assert len(expansion_calls) == 1

    @pytest.mark.anyio
    async def test_vector_match_outranks_keyword_match(self, client, auth_headers, fake_ai, sample_evidence_text):
        file_id = await _paste(client, auth_headers, sample_evidence_text)
        response = await client.post(f"/api/evidence/{file_id}/memory", headers=auth_headers)
        assert response.status_code == 200

        data = await _search(client, auth_headers, query="phone", min_relevance=0.5)
        assert "Performing semantic vector search using AI embeddings" in data["steps"]
        assert data["total_found"] == 1
        assert data["results"][0]["relevance_score"] > 0.7
        # Short queries skip AI expansion
        assert not [c for c in fake_ai.calls if c.get("task") == "search_expansion"]

    @pytest.mark.anyio
    async def test_stored_analyses_are_searched(self, client, auth_headers, sample_evidence_text):
        file_id = await _paste(client, auth_headers, sample_evidence_text)
        response = await client.post(
            f"/api/evidence/{file_id}/analyze",
            json={"analysis_types": ["legal_relevance"], "generate_connections": False},
            headers=auth_headers,
        )
        assert response.status_code == 200

        data = await _search(client, auth_headers, query="monitoring")
        assert data["total_found"] == 1
        result = data["results"][0]
        assert result["chunk_id"] is None
        assert result["relevance_score"] == 0.9
        assert result["legal_significance"] == "The evidence shows monitoring and financial control."
        assert result["navigation_url"] == f"/evidence?fileId={file_id}&highlight=monitoring"

        without = await _search(client, auth_headers, query="monitoring", include_analysis=False)
        assert without["total_found"] == 0

    @pytest.mark.anyio
    async def test_other_users_evidence_is_not_searched(self, client, auth_headers, sample_evidence_text):
        await _paste(client, auth_headers, sample_evidence_text)
        other = await create_session(client)
        data = await _search(client, other["headers"], query="he took my bank card")
        assert data["total_found"] == 0
        assert data["results"] == []

    @pytest.mark.anyio
    async def test_blank_query(self, client, auth_headers):
        response = await client.post("/api/evidence/search", json={"query": "   "}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Query is required"

    @pytest.mark.anyio
    async def test_requires_auth(self, client):
        response = await client.post("/api/evidence/search", json={"query": "phone"})
        assert response.status_code == 401
