"""
CaseCompass - Legal Knowledge Base API Tests
"""

import asyncio

import pytest

from conftest import create_session


async def _add(client, headers, section):
    response = await client.post("/api/legal/sections", json=section, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestSections:

    @pytest.mark.anyio
    async def test_add_global_section(self, client, auth_headers, sample_legal_section):
        section = await _add(client, auth_headers, {**sample_legal_section, "legal_concepts": ["Coercive Control", " "]})
        assert section["scope"] == "global"
        assert section["jurisdiction"] == "NSW"
        assert section["legal_concepts"] == ["coercive control"]

    @pytest.mark.anyio
    async def test_personal_sections_are_private(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, sample_legal_section)
        await _add(client, auth_headers, {
            "title": "My solicitor's note on ADVO conditions",
            "content": "Conditions can prohibit approaching the protected person.",
            "scope": "personal",
        })

        mine = (await client.get("/api/legal/sections", headers=auth_headers)).json()
        assert mine["total"] == 2
        personal = (await client.get("/api/legal/sections", params={"scope": "personal"}, headers=auth_headers)).json()
        assert [s["scope"] for s in personal["sections"]] == ["personal"]

        other = await create_session(client, email="another.user@example.com")
        theirs = (await client.get("/api/legal/sections", headers=other["headers"])).json()
        assert [s["scope"] for s in theirs["sections"]] == ["global"]

    @pytest.mark.anyio
    async def test_jurisdiction_filter(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, sample_legal_section)
        await _add(client, auth_headers, {**sample_legal_section, "jurisdiction": "Cth", "title": "Family Law Act s 4AB"})
        result = (await client.get("/api/legal/sections", params={"jurisdiction": "Cth"}, headers=auth_headers)).json()
        assert [s["title"] for s in result["sections"]] == ["Family Law Act s 4AB"]

    @pytest.mark.anyio
    async def test_requires_auth(self, client, sample_legal_section):
        response = await client.post("/api/legal/sections", json=sample_legal_section)
        assert response.status_code == 401


class TestSearch:

    @pytest.mark.anyio
    async def test_keyword_search(self, client, auth_headers, sample_legal_section):
        section = await _add(client, auth_headers, sample_legal_section)
        response = await client.post(
            "/api/legal/search", json={"query": "monitoring", "search_type": "keyword"}, headers=auth_headers
        )
        assert response.status_code == 200
        result = response.json()
        assert result["cached"] is False
        assert result["total_results"] == 1
        hit = result["results"][0]
        assert hit["id"] == section["id"]
        assert hit["relevance_score"] == 1.0
        assert hit["citation_reference"] == "s 54D Crimes Act 1900 (NSW)"
        assert hit["content"].endswith("...")

    @pytest.mark.anyio
    async def test_semantic_search_matches_concepts(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, {**sample_legal_section, "content": "Text without the keyword."})
        result = (await client.post(
            "/api/legal/search", json={"query": "coercive", "search_type": "semantic"}, headers=auth_headers
        )).json()
        assert result["total_results"] == 1
        assert result["search_type"] == "semantic"

    @pytest.mark.anyio
    async def test_repeat_search_is_cached(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, sample_legal_section)
        body = {"query": "financial control"}
        first = (await client.post("/api/legal/search", json=body, headers=auth_headers)).json()
        second = (await client.post("/api/legal/search", json=body, headers=auth_headers)).json()
        assert first["cached"] is False
        assert second["cached"] is True
        assert second["results"] == first["results"]

    @pytest.mark.anyio
    async def test_new_global_section_invalidates_cache(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, sample_legal_section)
        body = {"query": "stalking", "search_type": "keyword"}
        assert (await client.post("/api/legal/search", json=body, headers=auth_headers)).json()["total_results"] == 0

        await _add(client, auth_headers, {
            "title": "Stalking or intimidation with intent to cause fear",
            "content": "A person who stalks or intimidates another person with the intention of causing fear commits an offence.",
            "act_title": "Crimes (Domestic and Personal Violence) Act 2007 (NSW)",
            "section_number": "13",
        })
        result = (await client.post("/api/legal/search", json=body, headers=auth_headers)).json()
        assert result["cached"] is False
        assert result["total_results"] == 1

    @pytest.mark.anyio
    async def test_personal_sections_are_not_searched(self, client, auth_headers):
        await _add(client, auth_headers, {"title": "Private note", "content": "stalking notes", "scope": "personal"})
        result = (await client.post(
            "/api/legal/search", json={"query": "stalking"}, headers=auth_headers
        )).json()
        assert result["total_results"] == 0

    @pytest.mark.anyio
    async def test_concurrent_identical_searches(self, client, auth_headers, sample_legal_section):
        await _add(client, auth_headers, sample_legal_section)
        body = {"query": "coercive control monitoring", "search_type": "hybrid"}
        first, second = await asyncio.gather(
            client.post("/api/legal/search", json=body, headers=auth_headers),
            client.post("/api/legal/search", json=body, headers=auth_headers),
        )
        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["results"] == second.json()["results"]

        again = (await client.post("/api/legal/search", json=body, headers=auth_headers)).json()
        assert again["cached"] is True
        assert again["results"] == first.json()["results"]
