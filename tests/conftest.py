import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Sequence
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from nutriplan.core.errors import (
    GatewayRequestError,
    ImageSynthesisFailure,
    UpstreamEmptyResponse,
    UpstreamMalformedResponse,
)
from nutriplan.core.events import EventBus
from nutriplan.core.schemas import ChatMessage, NutritionSummary, UserProfile, WellnessPlan
from nutriplan.core.workspace import Workspace, get_workspace
from nutriplan.db.models import Record
from nutriplan.db.session import SessionLocal, configure_database, create_tables
from nutriplan.db.store import MemoryRecordStore, SqlRecordStore
from nutriplan.services.gateway import parse_llm_json


class FakeScenario(str, Enum):
    OK = "OK"
    MALFORMED_JSON = "MALFORMED_JSON"
    EMPTY = "EMPTY"
    TIMEOUT = "TIMEOUT"


class FakeGateway:
    def __init__(self, scenario: FakeScenario, fixture_dir: Path) -> None:
        self.scenario = scenario
        self.fixture_dir = fixture_dir
        self.image_calls: list[tuple[str, str]] = []
        self.failing_images: set[str] = set()
        self.image_gate: Optional[asyncio.Event] = None
        self.nutrition = NutritionSummary(calories=640, protein=42, carbs=58, fats=21)
        self.chat_fragments = ["Hydrate ", "before ", "training."]

    def _load_json(self, name: str) -> dict:
        raw = (self.fixture_dir / f"{name}.json").read_text(encoding="utf-8")
        return json.loads(raw)

    def _check_scenario(self) -> None:
        if self.scenario == FakeScenario.TIMEOUT:
            raise GatewayRequestError(provider="gemini", model="fake", message="simulated timeout")
        if self.scenario == FakeScenario.EMPTY:
            raise UpstreamEmptyResponse("AI Analysis Empty")
        if self.scenario == FakeScenario.MALFORMED_JSON:
            parse_llm_json('{"dailyCalories": 2000,')
            raise UpstreamMalformedResponse("unreachable")

    def plan(self) -> WellnessPlan:
        return WellnessPlan.model_validate(self._load_json("OK_PLAN"))

    async def synthesize_plan(self, profile: UserProfile) -> WellnessPlan:
        self._check_scenario()
        return self.plan()

    async def synthesize_welcome_text(self, name: str, email: str, clinical_id: str) -> str:
        self._check_scenario()
        return f"Welcome {name}. Your Clinical ID is {clinical_id}."

    async def synthesize_image(self, subject_type: str, name: str, context_text: str) -> str:
        self.image_calls.append((subject_type, name))
        if self.image_gate is not None:
            await self.image_gate.wait()
        if name in self.failing_images:
            raise ImageSynthesisFailure(f"No image payload returned for {subject_type} '{name}'")
        return f"data:image/png;base64,{subject_type}-{len(self.image_calls)}"

    async def estimate_nutrition(self, food_names: Sequence[str]) -> NutritionSummary:
        self._check_scenario()
        return self.nutrition

    async def stream_chat_reply(self, history: Sequence[ChatMessage], message: str) -> AsyncIterator[str]:
        for fragment in self.chat_fragments:
            yield fragment
        if self.scenario == FakeScenario.TIMEOUT:
            raise GatewayRequestError(provider="gemini", model="fake", message="stream dropped")


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "gateway"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "nutriplan_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from nutriplan.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def fake_gateway_factory(fixture_dir: Path) -> Callable[[FakeScenario], FakeGateway]:
    def _factory(scenario: FakeScenario) -> FakeGateway:
        return FakeGateway(scenario=scenario, fixture_dir=fixture_dir)

    return _factory


@pytest.fixture
def fake_gateway(fake_gateway_factory) -> FakeGateway:
    return fake_gateway_factory(FakeScenario.OK)


@pytest.fixture
def sample_plan(fake_gateway: FakeGateway) -> WellnessPlan:
    return fake_gateway.plan()


@pytest.fixture
def memory_workspace(fake_gateway: FakeGateway) -> Workspace:
    return Workspace(
        store=MemoryRecordStore(),
        gateway=fake_gateway,
        events=EventBus(),
        enrichment_delay_seconds=0,
    )


@pytest.fixture
def sql_store(test_db_path: Path) -> SqlRecordStore:
    db = SessionLocal()
    try:
        db.query(Record).delete()
        db.commit()
    finally:
        db.close()
    return SqlRecordStore()


@pytest.fixture
def workspace(sql_store: SqlRecordStore, fake_gateway: FakeGateway) -> Workspace:
    return Workspace(store=sql_store, gateway=fake_gateway, events=EventBus(), enrichment_delay_seconds=0)


@pytest.fixture
def client(app, workspace: Workspace):
    app.dependency_overrides = {get_workspace: lambda: workspace}
    with TestClient(app) as test_client:
        yield test_client
    workspace.shutdown()
    app.dependency_overrides = {}


@pytest.fixture
def profile_payload() -> dict:
    return {
        "age": 42,
        "gender": "female",
        "weight": 68.5,
        "height": 170,
        "activityLevel": "moderately active",
        "conditions": "Mild hypertension",
        "allergies": "Peanuts",
        "dietType": "Non-Vegetarian",
        "persona": "Working Professional",
        "goal": "Maintenance",
    }


@pytest.fixture
def register_user(client: TestClient) -> Callable[..., dict]:
    def _register(email: Optional[str] = None, password: str = "Tardis12", name: str = "Dr Who") -> dict:
        email = email or f"user_{uuid4().hex[:10]}@example.com"
        response = client.post(
            "/auth/register",
            json={"name": name, "email": email, "password": password, "confirmPassword": password},
        )
        assert response.status_code == 201
        return {**response.json(), "email": email, "password": password}

    return _register


@pytest.fixture
def auth_headers(register_user) -> dict[str, str]:
    body = register_user()
    return {"Authorization": f"Bearer {body['accessToken']}"}
