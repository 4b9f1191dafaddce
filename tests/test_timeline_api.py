"""
CaseCompass - Timeline API Tests
"""

import pytest


@pytest.fixture
async def extracted(client, auth_headers, sample_evidence_text):
    """A pasted file with its timeline extracted."""
    response = await client.post(
        "/api/evidence/text",
        json={"name": "diary", "text": sample_evidence_text},
        headers=auth_headers,
    )
    file_id = response.json()["file_id"]
    response = await client.post(f"/api/timeline/extract/{file_id}", headers=auth_headers)
    assert response.status_code == 200, response.text
    return {"file_id": file_id, "result": response.json()}


class TestExtraction:

    @pytest.mark.anyio
    async def test_extract(self, extracted):
        result = extracted["result"]
        assert result["extracted"] == 2
        assert result["inserted"] == 2
        assert [e["date"] for e in result["events"]] == ["2024-03-01", "2024-05-20"]

    @pytest.mark.anyio
    async def test_extracted_events_are_unverified_and_sourced(self, client, auth_headers, extracted):
        events = (await client.get("/api/timeline", headers=auth_headers)).json()["events"]
        assert len(events) == 2
        assert all(e["verified"] is False for e in events)
        assert all(e["file_id"] == extracted["file_id"] for e in events)
        assert all(e["chunk_id"] for e in events)
        assert events[0]["event_time"] == "21:15"

    @pytest.mark.anyio
    async def test_invalid_dates_are_skipped(self, client, auth_headers, fake_ai, sample_evidence_text):
        fake_ai.timeline_events = [
            {"date": "sometime in spring", "title": "Unclear", "category": "incident"},
            {"date": "2024-07-04", "title": "Threat at school pickup", "category": "threat", "confidence": 3},
        ]
        response = await client.post(
            "/api/evidence/text", json={"name": "notes", "text": sample_evidence_text}, headers=auth_headers
        )
        result = (await client.post(
            f"/api/timeline/extract/{response.json()['file_id']}", headers=auth_headers
        )).json()
        assert result["extracted"] == 2
        assert result["inserted"] == 1
        # Unknown categories fall back to other; confidence is clamped
        assert result["events"][0]["category"] == "other"
        assert result["events"][0]["confidence"] == 1.0

    @pytest.mark.anyio
    async def test_extract_unknown_file(self, client, auth_headers):
        response = await client.post("/api/timeline/extract/missing", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.anyio
    async def test_extract_updates_case_memory(self, client, auth_headers, extracted):
        memory = (await client.get("/api/case/memory", headers=auth_headers)).json()
        assert [e["date"] for e in memory["timeline_summary"]] == ["2024-03-01", "2024-05-20"]


class TestEvents:

    @pytest.mark.anyio
    async def test_filters(self, client, auth_headers, extracted):
        response = await client.get(
            "/api/timeline", params={"category": "financial"}, headers=auth_headers
        )
        assert [e["title"] for e in response.json()["events"]] == ["Bank card taken"]

        response = await client.get(
            "/api/timeline", params={"start_date": "2024-04-01", "end_date": "2024-12-31"}, headers=auth_headers
        )
        assert response.json()["total"] == 1

    @pytest.mark.anyio
    async def test_manual_event(self, client, auth_headers):
        response = await client.post(
            "/api/timeline",
            json={"event_date": "2024-02-14", "title": "Followed me to work", "category": "stalking"},
            headers=auth_headers,
        )
        assert response.status_code == 201
        event = response.json()
        assert event["verified"] is True
        assert event["confidence"] == 1.0
        assert event["category"] == "other"
        assert event["file_id"] is None

    @pytest.mark.anyio
    async def test_update_and_verify(self, client, auth_headers, extracted):
        events = (await client.get("/api/timeline", headers=auth_headers)).json()["events"]
        event_id = events[0]["id"]

        response = await client.patch(
            f"/api/timeline/{event_id}",
            json={"title": "Phone taken and read", "category": "incident"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["title"] == "Phone taken and read"

        response = await client.post(f"/api/timeline/{event_id}/verify", headers=auth_headers)
        assert response.json()["verified"] is True

        response = await client.get("/api/timeline", params={"verified": True}, headers=auth_headers)
        assert response.json()["total"] == 1

    @pytest.mark.anyio
    async def test_delete(self, client, auth_headers, extracted):
        events = (await client.get("/api/timeline", headers=auth_headers)).json()["events"]
        response = await client.delete(f"/api/timeline/{events[0]['id']}", headers=auth_headers)
        assert response.status_code == 204
        assert (await client.get("/api/timeline", headers=auth_headers)).json()["total"] == 1

    @pytest.mark.anyio
    async def test_unknown_event(self, client, auth_headers):
        response = await client.post("/api/timeline/missing/verify", headers=auth_headers)
        assert response.status_code == 404


class TestGaps:

    @pytest.mark.anyio
    async def test_gaps(self, client, auth_headers, extracted):
        response = await client.get("/api/timeline/gaps", headers=auth_headers)
        assert response.status_code == 200
        gaps = response.json()["gaps"]
        assert len(gaps) == 1
        assert gaps[0]["days"] == 80
        assert gaps[0]["severity"] == "medium"

    @pytest.mark.anyio
    async def test_gap_threshold_param(self, client, auth_headers, extracted):
        response = await client.get("/api/timeline/gaps", params={"gap_days": 90}, headers=auth_headers)
        assert response.json()["gaps"] == []

    @pytest.mark.anyio
    async def test_missing_categories_follow_goal(self, client, auth_headers, extracted):
        await client.put(
            "/api/case/memory/goal", json={"primary_goal": "Get custody of my daughter"}, headers=auth_headers
        )
        result = (await client.get("/api/timeline/gaps", headers=auth_headers)).json()
        assert result["missing_categories"] == ["child_welfare", "communication", "medical", "incident"]
