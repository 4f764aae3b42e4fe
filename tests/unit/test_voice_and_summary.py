"""Unit tests for the voice input and summary nodes."""

import pytest
from conftest import FakeChat, FakeSpeech, at

from flowgenius.agent.nodes import summary, voice
from flowgenius.agent.state import CLEAR, Stage, UserAction, assistant_message, user_message
from flowgenius.errors import ServiceError, VoiceTranscriptionError
from flowgenius.integrations.services import ChatResult, Services, TranscriptionResult


@pytest.fixture()
def voice_session(session) -> dict:
    session["voice_audio_pending"] = {"file_path": "/tmp/memo.wav", "language": "en"}
    return session


@pytest.mark.asyncio
async def test_voice_success_injects_user_message(voice_session) -> None:
    speech = FakeSpeech(TranscriptionResult(success=True, text="  My idea is a meal planner  ", language="en", duration=3.2))
    services = Services(chat=FakeChat(), speech=speech)

    update = await voice.run(voice_session, services)

    assert update["messages"][0]["role"] == "user"
    assert update["messages"][0]["content"] == "My idea is a meal planner"
    assert update["voice_audio_pending"] == CLEAR
    assert update["voice_transcription"]["status"] == "completed"
    assert update["voice_transcription"]["duration"] == 3.2
    assert update["last_user_action"] == UserAction.CHAT
    assert speech.calls[0][0] == "/tmp/memo.wav"
    assert speech.calls[0][1].language == "en"


@pytest.mark.asyncio
async def test_voice_failure_raises(voice_session) -> None:
    speech = FakeSpeech(TranscriptionResult(success=False, error="TIMEOUT: transcription exceeded 60s"))

    with pytest.raises(VoiceTranscriptionError, match="TIMEOUT"):
        await voice.run(voice_session, Services(chat=FakeChat(), speech=speech))


@pytest.mark.asyncio
async def test_voice_empty_transcript_raises(voice_session) -> None:
    speech = FakeSpeech(TranscriptionResult(success=True, text="   "))

    with pytest.raises(VoiceTranscriptionError):
        await voice.run(voice_session, Services(chat=FakeChat(), speech=speech))


@pytest.mark.asyncio
async def test_voice_without_audio_marks_failed(session) -> None:
    update = await voice.run(session, Services(chat=FakeChat()))

    assert update["voice_transcription"]["status"] == "failed"
    assert "messages" not in update


@pytest.mark.asyncio
async def test_voice_without_speech_service_raises(voice_session) -> None:
    with pytest.raises(VoiceTranscriptionError):
        await voice.run(voice_session, Services(chat=FakeChat()))


def test_voice_fallback_clears_pending_audio() -> None:
    assert voice.FALLBACK_UPDATE["voice_audio_pending"] == CLEAR
    assert voice.FALLBACK_UPDATE["messages"][0]["role"] == "assistant"


@pytest.mark.asyncio
async def test_summary_builds_transcript(session) -> None:
    session["messages"] = [
        user_message("A meal planner for students", Stage.BRAINSTORM, at(0)),
        assistant_message("Who is it for?", Stage.BRAINSTORM, at(1)),
    ]
    chat = FakeChat("# MealMate\n\n## Project Description\nPlans cheap meals.")

    update = await summary.run(session, Services(chat=chat))

    assert update["current_stage"] == Stage.SUMMARY
    assert update["last_user_action"] == UserAction.CHAT
    assert update["messages"][0]["content"].startswith("# MealMate")
    assert update["messages"][0]["stage_at_creation"] == Stage.SUMMARY
    request = chat.calls[0]["user_message"]
    assert "user: A meal planner for students\n\nassistant: Who is it for?" in request
    assert "Additional instructions" in chat.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_summary_without_messages(session) -> None:
    chat = FakeChat()

    update = await summary.run(session, Services(chat=chat))

    assert update["messages"][0]["content"].startswith("No conversation to summarize yet")
    assert update["current_stage"] == Stage.SUMMARY
    assert chat.calls == []


@pytest.mark.asyncio
async def test_summary_service_failure_raises(session) -> None:
    session["messages"] = [user_message("idea", Stage.BRAINSTORM, at(0))]
    chat = FakeChat(ChatResult(success=False, error="RATE_LIMIT: slow down"))

    with pytest.raises(ServiceError, match="RATE_LIMIT"):
        await summary.run(session, Services(chat=chat))


@pytest.mark.asyncio
async def test_summary_noop_while_processing(session) -> None:
    session["is_processing"] = True
    assert await summary.run(session, Services(chat=FakeChat())) == {}
