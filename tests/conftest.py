import pytest
import pytest_asyncio

from backend.src.core.config import ChatConfig
from backend.src.db.session import build_engine, build_session_factory
from backend.src.init_db import init_models
from backend.src.models.user import FamilyMember, User
from backend.src.services.chat.container import build_chat_services
from backend.src.services.chat.token_budget import TokenBudgetAllocator
from backend.src.services.llm.base import ChatProvider, Completion
from backend.src.services.llm.retry import RetryPolicy

OWNER_ID = 1
OTHER_ID = 2
OWNER_SUBJECT_ID = 10
OTHER_SUBJECT_ID = 20


class FakeProvider(ChatProvider):
    """
    Scripted backend. Each call pops the next outcome: a string is an answer,
    an exception is raised as the attempt failure. An empty script answers
    with a fixed string.
    """
    name = "fake"
    default_model = "fake-model"

    def __init__(self, script=None, retries=3, base_delay=0.25, max_delay=1.0):
        self.delays = []

        async def record_sleep(delay):
            self.delays.append(delay)

        super().__init__(
            "test-key",
            retry_policy=RetryPolicy(retries=retries, base_delay=base_delay, max_delay=max_delay),
            sleep=record_sleep,
        )
        self.script = list(script or [])
        self.calls = []

    async def _complete(self, messages, options):
        self.calls.append(messages)
        outcome = self.script.pop(0) if self.script else "Your last labs look normal."
        if isinstance(outcome, BaseException):
            raise outcome
        return Completion(content=outcome, model="fake-model", prompt_tokens=12, completion_tokens=8, total_tokens=20)


class StatusError(Exception):
    """Stand-in for an SDK error carrying an HTTP status."""

    def __init__(self, status_code, message="provider said no"):
        super().__init__(message)
        self.status_code = status_code


@pytest.fixture
def chat_config():
    return ChatConfig(provider="fake", api_key="test-key", rate_limit_per_minute=100, rate_limit_per_hour=1000)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = build_session_factory(engine)
    async with factory() as db:
        async with db.begin():
            db.add_all([
                User(id=OWNER_ID, email="owner@example.com", full_name="Account Owner"),
                User(id=OTHER_ID, email="other@example.com", full_name="Someone Else"),
            ])
        async with db.begin():
            db.add_all([
                FamilyMember(id=OWNER_SUBJECT_ID, user_id=OWNER_ID, full_name="Jane Owner",
                             hospital_code="HSP01", patient_id="P-1001"),
                FamilyMember(id=OTHER_SUBJECT_ID, user_id=OTHER_ID, full_name="John Other"),
            ])
    return factory


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(chat_config, session_factory, provider):
    return build_chat_services(
        chat_config,
        session_factory,
        provider=provider,
        allocator=TokenBudgetAllocator.from_config(chat_config),
    )


@pytest.fixture
def orchestrator(services):
    return services.orchestrator
