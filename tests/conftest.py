"""
CaseCompass - Shared Test Fixtures
Provides reusable fixtures for authentication, database, and a fake AI provider.
"""

import json
import os
import re
import tempfile
from typing import AsyncGenerator, Optional

import pytest
from httpx import AsyncClient, ASGITransport

# Configure test environment BEFORE importing app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_casecompass.db"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["AUTO_ORCHESTRATE"] = "false"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="casecompass-uploads-")
os.environ["LOG_LEVEL"] = "WARNING"

from app.main import app
from app.core.config import get_settings
from app.core.rate_limit import limiter
from app.core.security import get_rate_limiter
from app.services.ai_client import get_ai_client, set_ai_client


# =============================================================================
# Fake AI Provider
# =============================================================================

_SECTION_ID = re.compile(r"\[section_id: ([0-9a-f-]+)\]")

DEFAULT_MILESTONES = [
    {
        "title": "Document pattern of control",
        "description": "Gather messages and notes that show controlling behaviour over time.",
        "success_criteria": ["Five dated incidents recorded", "Messages exported"],
        "estimated_days": 14,
        "priority": "urgent",
        "category": "evidence",
    },
    {
        "title": "Prepare ADVO application",
        "description": "Complete the application with the help of a DV support service.",
        "success_criteria": ["Application drafted", "Support worker contacted"],
        "estimated_days": 7,
        "priority": "high",
        "category": "legal",
    },
]


class FakeAIClient:
    """
    Stands in for AIClient without network I/O.

    Replies are picked by task (and tool name), and every call is recorded
    in `calls` so tests can assert on prompts.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.chat_reply = "Thank you for sharing this. The messages show monitoring [CITATION 1]."
        self.timeline_events = [
            {
                "date": "2024-03-01",
                "time": "21:15",
                "title": "Phone checked without consent",
                "description": "He demanded my phone and read my messages",
                "category": "incident",
                "confidence": 0.9,
            },
            {
                "date": "2024-05-20",
                "title": "Bank card taken",
                "description": "He took my bank card and changed the password",
                "category": "financial",
                "confidence": 0.8,
            },
        ]
        self.milestones = [dict(m) for m in DEFAULT_MILESTONES]
        self.progress = {
            "completion_percentage": 100,
            "criteria_met": ["Five dated incidents recorded"],
            "is_complete": True,
            "whats_needed": [],
            "next_action": "Start the ADVO application",
        }
        self.fail_chat = False
        # Replaces the generated legal connections when set
        self.connections = None
        # Reply for continuous case analysis; None makes the reply unparseable
        self.case_analysis = {
            "immediate_insights": ["Monitoring and financial control appear together"],
            "case_impact": "The messages corroborate the diary entries",
            "new_patterns": [
                {
                    "type": "monitoring",
                    "description": "Repeated phone checks",
                    "strength": 0.8,
                    "evidence_files": ["messages.txt"],
                    "legal_significance": "Abusive behaviour under s 54D",
                }
            ],
            "evidence_relationships": [],
            "strength_assessment": {
                "overall_change": 0.2,
                "new_strengths": ["Dated incidents"],
                "new_weaknesses": [],
                "evidence_gaps": ["No police report"],
            },
            "opposing_arguments": ["The phone checks were consensual"],
            "next_steps": ["Request police records"],
            "legal_elements": {"section_54d_elements": {"relationship": "established"}},
        }
        self.conversation_summary = {
            "summary": "Sarah asked about coercive control and how to document it.",
            "detected_topics": ["coercive control", "evidence"],
            "achievements": ["Uploaded first messages"],
            "next_actions": ["Keep a dated diary"],
            "conversation_tone": "anxious",
            "legal_stage": 2,
            "key_insights": ["Monitoring is a recurring theme"],
            "unresolved": ["Whether to apply for an ADVO"],
        }
        self.search_expansion = {"concepts": ["coercive_control"], "synonyms": ["read my messages"]}

    @property
    def is_available(self) -> bool:
        return True

    async def chat(self, messages, *, task="conversation", max_tokens=None, temperature=None, json_mode=False) -> str:
        self.calls.append({"method": "chat", "task": task, "messages": messages})
        if self.fail_chat:
            from app.core.errors import AIServiceError
            raise AIServiceError("All models failed")
        if task == "legal_analysis" and json_mode:
            return json.dumps({
                "content": "The evidence shows monitoring and financial control.",
                "legal_concepts": ["coercive control", "financial abuse"],
                "confidence_score": 0.8,
                "relevant_citations": ["s 54D Crimes Act 1900 (NSW)"],
            })
        return self.chat_reply

    async def chat_json(self, messages, *, task="legal_analysis", max_tokens=None) -> dict:
        self.calls.append({"method": "chat_json", "task": task, "messages": messages})
        prompt = messages[-1]["content"]
        if task == "categorization":
            return {"category": "correspondence", "tags": ["Messages", "control"], "description": "Text messages."}
        if task == "timeline_extraction":
            return {"events": list(self.timeline_events)}
        if task == "evidence_processing":
            return {
                "file_summary": "Messages showing monitoring and financial control",
                "section_summaries": [{"title": "Messages", "content": "Phone checks", "page_range": "1"}],
            }
        if task in ("case_analysis", "conversation_summary", "search_expansion"):
            reply = getattr(self, task)
            if reply is None:
                from app.services.ai_client import AIResponseParseError
                raise AIResponseParseError("AI returned invalid JSON")
            return reply
        if self.connections is not None:
            return {"connections": self.connections}
        section_ids = _SECTION_ID.findall(prompt)
        return {
            "connections": [
                {
                    "section_id": section_ids[0] if section_ids else "unknown",
                    "connection_type": "supports",
                    "relevance_score": 0.9,
                    "explanation": "Monitoring a partner's phone is controlling behaviour.",
                }
            ]
        }

    async def call_tool(self, messages, *, tool_name, description, parameters, task="planning", max_tokens=None) -> dict:
        self.calls.append({"method": "call_tool", "tool": tool_name, "messages": messages})
        if tool_name == "create_milestone_plan":
            return {"milestones": [dict(m) for m in self.milestones]}
        return dict(self.progress)

    async def embed(self, text: str) -> list[float]:
        # Deterministic vector: counts of a few marker words
        lowered = text.lower()
        return [float(lowered.count(w)) + 0.01 for w in ("phone", "bank", "threat", "child")]

    async def vision_ocr(self, image_bytes: bytes, mime_type: str) -> str:
        return "Photo of a handwritten note: I know where you are."

    async def health(self) -> dict:
        return {"service": "openai", "ok": True, "status": "ok", "code": 200}


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings():
    """Get test settings."""
    return get_settings()


@pytest.fixture
async def setup_test_database():
    """Create database tables before each test and drop them after."""
    from app.core.database import get_engine, Base
    from app.models import models  # noqa: F401  register tables

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def fake_ai():
    """Install a FakeAIClient for routes and background work alike."""
    fake = FakeAIClient()
    app.dependency_overrides[get_ai_client] = lambda: fake
    set_ai_client(fake)
    yield fake
    app.dependency_overrides.pop(get_ai_client, None)
    set_ai_client(None)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Rate limit windows must not leak between tests."""
    get_rate_limiter().reset()
    limiter.reset()
    yield


@pytest.fixture
async def client(setup_test_database, fake_ai) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def create_session(client: AsyncClient, email: Optional[str] = None, display_name: Optional[str] = None) -> dict:
    """Create a user through the API and return bearer headers plus the user id."""
    body = {}
    if email:
        body["email"] = email
    if display_name:
        body["display_name"] = display_name
    response = await client.post("/api/auth/session", json=body)
    assert response.status_code == 201, response.text
    data = response.json()
    return {"headers": {"Authorization": f"Bearer {data['token']}"}, "user_id": data["user_id"]}


@pytest.fixture
async def auth_session(client) -> dict:
    return await create_session(client, email="sarah.jones@example.com", display_name="Sarah Jones")


@pytest.fixture
def auth_headers(auth_session) -> dict:
    """Bearer headers for a fresh test user."""
    return auth_session["headers"]


@pytest.fixture
async def db_session(setup_test_database):
    """A database session outside any request."""
    from app.core.database import get_db_session
    async with get_db_session() as session:
        yield session


# =============================================================================
# Test Data Fixtures
# =============================================================================

@pytest.fixture
def sample_evidence_text() -> str:
    return (
        "1 March 2024. He demanded my phone again and read all my messages with Mary Smith. "
        "He said if I talk to my sister he will take the car keys.\n\n"
        "20 May 2024. He took my bank card and changed the password so I cannot buy groceries."
    )


@pytest.fixture
def sample_legal_section() -> dict:
    return {
        "act_title": "Crimes Act 1900 (NSW)",
        "section_number": "54D",
        "title": "Abusive behaviour towards intimate partners",
        "content": (
            "An adult who engages in a course of conduct against another person that consists of "
            "abusive behaviour, including monitoring, isolation and financial control, commits an offence."
        ),
        "citation_format": "s 54D Crimes Act 1900 (NSW)",
        "legal_concepts": ["coercive control", "domestic violence", "monitoring"],
    }


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_db():
    """Remove the SQLite test database after the run."""
    yield
    for db_file in ["test_casecompass.db", "test_casecompass.db-shm", "test_casecompass.db-wal"]:
        if os.path.exists(db_file):
            try:
                os.remove(db_file)
            except PermissionError:
                pass
