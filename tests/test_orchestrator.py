import asyncio
from dataclasses import replace

import pytest

from backend.src.core.errors import (
    AuthorizationError,
    BudgetExceeded,
    ConflictError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
)
from backend.src.services.chat.container import build_chat_services
from backend.src.services.chat.orchestrator import UNAVAILABLE_MESSAGE
from backend.src.services.chat.prompts import MEDICAL_DISCLAIMER
from backend.src.services.chat.token_budget import TokenBudgetAllocator

from conftest import OTHER_ID, OTHER_SUBJECT_ID, OWNER_ID, OWNER_SUBJECT_ID, FakeProvider, StatusError


async def start(orchestrator, context_type="lab_report", context_id="LR-7", data=None):
    result = await orchestrator.start_or_resume(OWNER_ID, OWNER_SUBJECT_ID, context_type, context_id, data)
    return result.session


# --- sessions ---

async def test_start_folds_hospital_identifiers_into_context(orchestrator):
    result = await orchestrator.start_or_resume(OWNER_ID, OWNER_SUBJECT_ID, "lab_report", "LR-7", {"test": "Lipid panel"})
    assert result.is_new
    assert result.page.items == []
    assert result.session.context_data == {"test": "Lipid panel", "hospital_code": "HSP01", "patient_id": "P-1001"}


async def test_start_resumes_with_history(orchestrator):
    session = await start(orchestrator)
    await orchestrator.send_message(session.id, OWNER_ID, "What is LDL?")
    again = await orchestrator.start_or_resume(OWNER_ID, OWNER_SUBJECT_ID, "lab_report", "LR-7")
    assert again.is_new is False
    assert again.session.id == session.id
    assert len(again.page.items) == 2


async def test_start_for_someone_elses_family_member(orchestrator):
    with pytest.raises(AuthorizationError):
        await orchestrator.start_or_resume(OWNER_ID, OTHER_SUBJECT_ID, "general")
    with pytest.raises(NotFoundError):
        await orchestrator.start_or_resume(OWNER_ID, 999, "general")


async def test_start_rejects_unknown_context_type(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.start_or_resume(OWNER_ID, OWNER_SUBJECT_ID, "radiology")


# --- turns ---

async def test_send_message_success(orchestrator, provider):
    session = await start(orchestrator)
    result = await orchestrator.send_message(session.id, OWNER_ID, "  What is LDL?  ")

    assert result.error is None
    assert result.user_message.content == "What is LDL?"
    assert result.assistant_message.content.startswith("Your last labs look normal.")
    # first answer of the chat carries the disclaimer
    assert result.assistant_message.content.endswith(MEDICAL_DISCLAIMER)
    assert result.assistant_message.meta["provider"] == "fake"
    assert result.token_usage["total"] <= result.token_usage["budget"]

    prompt = provider.calls[0]
    assert prompt[0]["role"] == "system"
    assert "PATIENT CONTEXT:" in prompt[0]["content"]
    assert "Lab Report ID: LR-7" in prompt[0]["content"]
    assert "Patient: Jane Owner" in prompt[0]["content"]
    assert prompt[-1] == {"role": "user", "content": "What is LDL?"}

    stored = await orchestrator.store.get_session(session.id)
    assert stored.message_count == 2


async def test_later_answers_skip_disclaimer_unless_asked_for_advice(orchestrator, provider):
    session = await start(orchestrator)
    await orchestrator.send_message(session.id, OWNER_ID, "What is LDL?")
    plain = await orchestrator.send_message(session.id, OWNER_ID, "And HDL?")
    advice = await orchestrator.send_message(session.id, OWNER_ID, "Should I stop eating eggs?")

    assert MEDICAL_DISCLAIMER not in plain.assistant_message.content
    assert advice.assistant_message.content.endswith(MEDICAL_DISCLAIMER)
    # history from earlier turns reaches the provider
    assert {"role": "user", "content": "What is LDL?"} in provider.calls[1]


async def test_provider_failure_is_recorded_not_raised(orchestrator, provider):
    provider.script = [StatusError(503)] * 4
    session = await start(orchestrator)
    result = await orchestrator.send_message(session.id, OWNER_ID, "What is LDL?")

    assert result.error == {"code": "PROVIDER_UNAVAILABLE", "message": UNAVAILABLE_MESSAGE, "retryable": True}
    assert result.assistant_message.content == ""
    assert result.assistant_message.error_code == "PROVIDER_UNAVAILABLE"
    assert result.assistant_message.meta["attempts"] == 4
    assert result.user_message.content == "What is LDL?"


async def test_retry_replaces_failed_answer(orchestrator, provider):
    provider.script = [StatusError(401, "bad key")]
    session = await start(orchestrator)
    failed = await orchestrator.send_message(session.id, OWNER_ID, "What is LDL?")
    assert failed.error["code"] == "PROVIDER_AUTH_FAILED"

    provider.script = ["LDL is low-density lipoprotein."]
    retried = await orchestrator.retry_last_message(session.id, OWNER_ID)

    assert retried.error is None
    assert retried.user_message.id == failed.user_message.id
    assert retried.assistant_message.content.startswith("LDL is low-density lipoprotein.")

    page = await orchestrator.list_messages(session.id, OWNER_ID)
    assert [m.id for m in page.items] == [failed.user_message.id, retried.assistant_message.id]
    assert (await orchestrator.store.get_session(session.id)).message_count == 2
    # the retried question is sent once, not duplicated as history
    assert [m["content"] for m in provider.calls[-1] if m["role"] == "user"] == ["What is LDL?"]


async def test_retry_after_success_is_a_conflict(orchestrator):
    session = await start(orchestrator)
    with pytest.raises(ConflictError, match="No message to retry"):
        await orchestrator.retry_last_message(session.id, OWNER_ID)
    await orchestrator.send_message(session.id, OWNER_ID, "What is LDL?")
    with pytest.raises(ConflictError, match="did not fail"):
        await orchestrator.retry_last_message(session.id, OWNER_ID)


async def test_other_user_cannot_touch_session(orchestrator):
    session = await start(orchestrator)
    with pytest.raises(AuthorizationError):
        await orchestrator.send_message(session.id, OTHER_ID, "hi")
    with pytest.raises(AuthorizationError):
        await orchestrator.list_messages(session.id, OTHER_ID)
    with pytest.raises(AuthorizationError):
        await orchestrator.delete_session(session.id, OTHER_ID)
    with pytest.raises(NotFoundError):
        await orchestrator.send_message("missing", OWNER_ID, "hi")


async def test_archived_session_rejects_messages(orchestrator):
    session = await start(orchestrator)
    await orchestrator.archive_session(session.id, OWNER_ID)
    with pytest.raises(ConflictError):
        await orchestrator.send_message(session.id, OWNER_ID, "hi")


@pytest.mark.parametrize("text", ["", "   ", "x" * 2001])
async def test_message_length_validation(orchestrator, text):
    session = await start(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.send_message(session.id, OWNER_ID, text)


async def test_message_over_token_budget(chat_config, session_factory, provider):
    config = replace(chat_config, max_context_tokens=600, reserve_for_response=500)
    services = build_chat_services(config, session_factory, provider=provider)
    session = await start(services.orchestrator)
    with pytest.raises(BudgetExceeded):
        await services.orchestrator.send_message(session.id, OWNER_ID, "word " * 400)
    assert provider.calls == []


async def test_rate_limit_per_minute(chat_config, session_factory, provider):
    config = replace(chat_config, rate_limit_per_minute=2)
    orchestrator = build_chat_services(config, session_factory, provider=provider).orchestrator
    session = await start(orchestrator)
    await orchestrator.send_message(session.id, OWNER_ID, "one")
    await orchestrator.send_message(session.id, OWNER_ID, "two")
    with pytest.raises(RateLimitExceeded):
        await orchestrator.send_message(session.id, OWNER_ID, "three")


async def test_concurrent_sends_on_one_session_are_serialised(orchestrator):
    session = await start(orchestrator)
    results = await asyncio.gather(*[
        orchestrator.send_message(session.id, OWNER_ID, f"question {i}") for i in range(3)
    ])
    page = await orchestrator.list_messages(session.id, OWNER_ID)
    roles = [m.role for m in page.items]
    assert roles == ["user", "assistant"] * 3
    assert (await orchestrator.store.get_session(session.id)).message_count == 6
    assert len({r.assistant_message.id for r in results}) == 3
    assert len(orchestrator.locks) == 0


async def test_rename_and_delete(orchestrator):
    session = await start(orchestrator)
    renamed = await orchestrator.rename_session(session.id, OWNER_ID, "  Cholesterol questions ")
    assert renamed.title == "Cholesterol questions"
    with pytest.raises(ValidationError):
        await orchestrator.rename_session(session.id, OWNER_ID, "x" * 201)

    assert await orchestrator.delete_session(session.id, OWNER_ID) is True
    assert await orchestrator.delete_session(session.id, OWNER_ID) is False


async def test_list_messages_limit_bounds(orchestrator):
    session = await start(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.list_messages(session.id, OWNER_ID, limit=101)


async def test_allocator_is_pluggable(chat_config, session_factory):
    provider = FakeProvider()
    services = build_chat_services(
        chat_config, session_factory, provider=provider,
        allocator=TokenBudgetAllocator(max_context_tokens=3000, reserve_for_response=1000),
    )
    session = await start(services.orchestrator)
    result = await services.orchestrator.send_message(session.id, OWNER_ID, "hello")
    assert result.token_usage["budget"] == 2000


class GatedProvider(FakeProvider):
    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def _complete(self, messages, options):
        self.entered.set()
        await self.gate.wait()
        return await super()._complete(messages, options)


async def wait_for_messages(orchestrator, session_id, count):
    for _ in range(100):
        page = await orchestrator.list_messages(session_id, OWNER_ID)
        if page.total >= count:
            return page
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} messages")


async def test_cancelled_caller_does_not_abort_turn(orchestrator):
    provider = GatedProvider()
    orchestrator.provider = provider
    session = await start(orchestrator)

    caller = asyncio.create_task(orchestrator.send_message(session.id, OWNER_ID, "What is LDL?"))
    await provider.entered.wait()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    provider.gate.set()
    page = await wait_for_messages(orchestrator, session.id, 2)
    assert [m.role for m in page.items] == ["user", "assistant"]


async def test_orphaned_turn_failure_is_logged(orchestrator, caplog):
    session = await start(orchestrator)
    entered = asyncio.Event()
    gate = asyncio.Event()

    async def broken_turn(*args, **kwargs):
        entered.set()
        await gate.wait()
        raise RuntimeError("disk on fire")

    orchestrator._run_turn = broken_turn
    caller = asyncio.create_task(orchestrator.send_message(session.id, OWNER_ID, "hi"))
    await entered.wait()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    with caplog.at_level("ERROR"):
        gate.set()
        for _ in range(50):
            if "Chat turn failed" in caplog.text:
                break
            await asyncio.sleep(0.01)
    assert "disk on fire" in caplog.text
