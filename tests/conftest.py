import json

import httpx
import pytest
from httpx import ASGITransport

AGENTS = [
    {
        "id": "ai-confirm",
        "name": "Confirmation Agent",
        "type": "ai",
        "role": "Appointment confirmations",
        "vapi_assistant_id": "asst-1",
        "fallback_staff_id": "maria",
        "backup_staff_ids": ["john"],
        "max_retries": 3,
        "retry_delay_minutes": 60,
    },
    {
        "id": "ai-unconfigured",
        "name": "Draft Agent",
        "type": "ai",
    },
    {"id": "maria", "name": "Maria", "type": "staff", "role": "Front desk"},
    {"id": "john", "name": "John", "type": "staff", "role": "Billing"},
]


@pytest.fixture
def agents_file(tmp_path):
    path = tmp_path / "agents.json"
    path.write_text(json.dumps(AGENTS))
    return str(path)


@pytest.fixture
def mock_env(monkeypatch, agents_file):
    monkeypatch.setenv("VAPI_API_KEY", "test-vapi-key")
    monkeypatch.setenv("VAPI_PHONE_NUMBER_ID", "test-phone-id")
    monkeypatch.setenv("VAPI_BASE_URL", "https://api.vapi.ai")
    monkeypatch.setenv("WEBHOOK_BASE_URL", "")
    monkeypatch.setenv("AGENTS_FILE", agents_file)
    monkeypatch.setenv("RECONCILE_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("RECONCILE_DELAY_SECONDS", "0")


@pytest.fixture
async def client(mock_env):
    from app.main import app, lifespan

    async with lifespan(app):
        async with httpx.AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as c:
            yield c
