"""
CaseCompass - Assistant API Tests
Chat with citations, conversation history and failure handling.
"""

import pytest


@pytest.fixture
async def case_file(client, auth_headers, sample_evidence_text, sample_legal_section):
    """One pasted statement and one shared legal section."""
    response = await client.post("/api/legal/sections", json=sample_legal_section, headers=auth_headers)
    assert response.status_code == 201
    response = await client.post(
        "/api/evidence/text", json={"name": "statement", "text": sample_evidence_text}, headers=auth_headers
    )
    assert response.status_code == 201
    return response.json()["file_id"]


class TestChat:

    @pytest.mark.anyio
    async def test_prompt_returns_cited_answer(self, client, auth_headers, fake_ai, case_file):
        response = await client.post(
            "/api/assistant/chat", json={"prompt": "He keeps checking my phone, is that abuse?"}, headers=auth_headers
        )
        assert response.status_code == 200
        data = response.json()
        assert data["generatedText"] == fake_ai.chat_reply

        citations = data["citations"]
        assert [c["index"] for c in citations] == list(range(1, len(citations) + 1))
        evidence = [c for c in citations if c["type"] == "user_file"]
        legal = [c for c in citations if c["type"] == "legal_resource"]
        assert evidence[0]["file_id"] == case_file
        assert evidence[0]["file_name"] == "statement.txt"
        assert legal[0]["file_name"] == "NSW Legal Resource: Abusive behaviour towards intimate partners"
        assert "(Reference: s 54D Crimes Act 1900 (NSW))" in legal[0]["excerpt"]

    @pytest.mark.anyio
    async def test_system_prompt_carries_case_context(self, client, auth_headers, fake_ai, case_file):
        await client.put("/api/case/memory/goal", json={"primary_goal": "Apply for an ADVO"}, headers=auth_headers)
        await client.post("/api/assistant/chat", json={"prompt": "What should I do next?"}, headers=auth_headers)

        sent = fake_ai.calls[-1]["messages"]
        system_text = "\n".join(m["content"] for m in sent if m["role"] == "system")
        assert "Sarah" in system_text
        assert "Apply for an ADVO" in system_text
        assert "[CITATION 1]" in system_text
        assert sent[-1] == {"role": "user", "content": "What should I do next?"}

    @pytest.mark.anyio
    async def test_messages_are_forwarded(self, client, auth_headers, fake_ai):
        conversation = [
            {"role": "user", "content": "He took my car keys"},
            {"role": "assistant", "content": "That sounds frightening."},
            {"role": "user", "content": "Does that count as coercive control?"},
        ]
        response = await client.post("/api/assistant/chat", json={"messages": conversation}, headers=auth_headers)
        assert response.status_code == 200
        assert fake_ai.calls[-1]["messages"][-3:] == conversation

    @pytest.mark.anyio
    async def test_requires_prompt_or_messages(self, client, auth_headers):
        response = await client.post("/api/assistant/chat", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.anyio
    async def test_model_failure(self, client, auth_headers, fake_ai):
        fake_ai.fail_chat = True
        response = await client.post("/api/assistant/chat", json={"prompt": "Hello"}, headers=auth_headers)
        assert response.status_code == 502
        assert response.json()["code"] == "AI_SERVICE_ERROR"

        history = (await client.get("/api/assistant/messages", headers=auth_headers)).json()
        assert history["total"] == 0

    @pytest.mark.anyio
    async def test_rate_limit(self, client, auth_headers, settings):
        for _ in range(settings.assistant_rate_limit):
            response = await client.post("/api/assistant/chat", json={"prompt": "Hi"}, headers=auth_headers)
            assert response.status_code == 200
        response = await client.post("/api/assistant/chat", json={"prompt": "Hi"}, headers=auth_headers)
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"


class TestHistory:

    @pytest.mark.anyio
    async def test_exchange_is_saved_in_order(self, client, auth_headers, fake_ai):
        await client.post("/api/assistant/chat", json={"prompt": "First question"}, headers=auth_headers)
        await client.post("/api/assistant/chat", json={"prompt": "Second question"}, headers=auth_headers)

        history = (await client.get("/api/assistant/messages", headers=auth_headers)).json()
        assert history["total"] == 4
        assert [m["role"] for m in history["messages"]] == ["user", "assistant", "user", "assistant"]
        assert history["messages"][2]["content"] == "Second question"

        page = (await client.get("/api/assistant/messages", params={"limit": 2}, headers=auth_headers)).json()
        assert [m["content"] for m in page["messages"]] == ["Second question", fake_ai.chat_reply]

        older = (await client.get(
            "/api/assistant/messages", params={"limit": 2, "offset": 2}, headers=auth_headers
        )).json()
        assert older["messages"][0]["content"] == "First question"

    @pytest.mark.anyio
    async def test_chat_updates_thread_summary(self, client, auth_headers):
        await client.post("/api/assistant/chat", json={"prompt": "Can I get an ADVO?"}, headers=auth_headers)
        memory = (await client.get("/api/case/memory", headers=auth_headers)).json()
        assert "Can I get an ADVO?" in memory["thread_summary"]

    @pytest.mark.anyio
    async def test_clear(self, client, auth_headers):
        await client.post("/api/assistant/chat", json={"prompt": "Hello"}, headers=auth_headers)
        response = await client.delete("/api/assistant/messages", headers=auth_headers)
        assert response.status_code == 204
        assert (await client.get("/api/assistant/messages", headers=auth_headers)).json()["total"] == 0


class TestConversationSummary:

    @pytest.mark.anyio
    async def test_nothing_to_summarize(self, client, auth_headers):
        response = await client.post("/api/assistant/summary", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "No conversation to summarize"

    @pytest.mark.anyio
    async def test_summarize_given_text(self, client, auth_headers, fake_ai):
        text = "User: Is checking my phone abuse?\nAssistant: It can be part of coercive control."
        response = await client.post(
            "/api/assistant/summary",
            json={"conversation_text": text, "current_goal": "Apply for an ADVO"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["summary"] == fake_ai.conversation_summary["summary"]
        assert data["conversation_tone"] == "anxious"
        assert data["legal_stage"] == 2
        assert data["next_actions"] == ["Keep a dated diary"]
        assert data["conversation_length"] == len(text)
        assert data["analyzed_at"]

        prompt = fake_ai.calls[-1]["messages"][-1]["content"]
        assert "CURRENT USER GOAL: Apply for an ADVO" in prompt
        assert "Is checking my phone abuse?" in prompt

        stored = (await client.get("/api/assistant/summary", headers=auth_headers)).json()
        assert {k: v for k, v in stored.items() if k != "analyzed_at"} == {
            k: v for k, v in data.items() if k != "analyzed_at"
        }

    @pytest.mark.anyio
    async def test_summarize_stored_messages_with_case_goal(self, client, auth_headers, fake_ai):
        await client.put("/api/case/memory/goal", json={"primary_goal": "Keep the children safe"}, headers=auth_headers)
        await client.post("/api/assistant/chat", json={"prompt": "He keeps checking my phone"}, headers=auth_headers)

        response = await client.post("/api/assistant/summary", headers=auth_headers)
        assert response.status_code == 200

        prompt = fake_ai.calls[-1]["messages"][-1]["content"]
        assert "User: He keeps checking my phone" in prompt
        assert f"Assistant: {fake_ai.chat_reply}" in prompt
        assert prompt.index("User: He keeps") < prompt.index("Assistant: ")
        assert "CURRENT USER GOAL: Keep the children safe" in prompt

    @pytest.mark.anyio
    async def test_unreadable_reply_uses_fallback(self, client, auth_headers, fake_ai):
        fake_ai.conversation_summary = None
        response = await client.post(
            "/api/assistant/summary", json={"conversation_text": "User: hello"}, headers=auth_headers
        )
        assert response.status_code == 200
        data = response.json()
        assert data["summary"] == "Conversation analyzed - detailed summary generation failed"
        assert data["conversation_tone"] == "neutral"
        assert data["legal_stage"] == 1

    @pytest.mark.anyio
    async def test_resummarizing_replaces_the_summary(self, client, auth_headers, fake_ai):
        await client.post("/api/assistant/summary", json={"conversation_text": "User: first"}, headers=auth_headers)
        fake_ai.conversation_summary = {**fake_ai.conversation_summary, "summary": "Second pass"}
        await client.post("/api/assistant/summary", json={"conversation_text": "User: second"}, headers=auth_headers)

        stored = (await client.get("/api/assistant/summary", headers=auth_headers)).json()
        assert stored["summary"] == "Second pass"
        assert stored["conversation_length"] == len("User: second")

    @pytest.mark.anyio
    async def test_no_summary_yet(self, client, auth_headers):
        response = await client.get("/api/assistant/summary", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.anyio
    async def test_clearing_messages_drops_the_summary(self, client, auth_headers):
        await client.post("/api/assistant/chat", json={"prompt": "Hello"}, headers=auth_headers)
        assert (await client.post("/api/assistant/summary", headers=auth_headers)).status_code == 200

        await client.delete("/api/assistant/messages", headers=auth_headers)
        response = await client.get("/api/assistant/summary", headers=auth_headers)
        assert response.status_code == 404
