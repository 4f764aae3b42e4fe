"""Voice input node: transcribes pending audio into a user message."""

from __future__ import annotations

import structlog

from flowgenius.agent.state import (
    CLEAR,
    SessionState,
    SessionUpdate,
    Stage,
    UserAction,
    user_message,
    utcnow,
    validate_state,
)
from flowgenius.errors import VoiceTranscriptionError
from flowgenius.integrations.services import Services, TranscriptionOptions

log = structlog.get_logger(__name__)

# Applied by the FALLBACK recovery plan when transcription fails.
FALLBACK_UPDATE: SessionUpdate = {
    "voice_audio_pending": CLEAR,
    "voice_transcription": {"status": "failed", "error": "Voice transcription failed"},
    "last_user_action": UserAction.CHAT,
    "is_processing": False,
    "messages": [
        {
            "role": "assistant",
            "content": "I couldn't process that voice message. Please type your message instead.",
        }
    ],
}


async def run(state: SessionState, services: Services) -> SessionUpdate:
    """Transcribe ``voice_audio_pending`` and inject the text as a user message.

    Raises:
        VoiceTranscriptionError: Speech service missing, failed, or returned no text.
    """
    if state.get("is_processing"):
        log.warning("voice_skipped_already_processing", session_id=state.get("session_id"))
        return {}
    validate_state(state)

    audio = state.get("voice_audio_pending")
    if not audio or not audio.get("file_path"):
        return {
            "voice_audio_pending": CLEAR,
            "voice_transcription": {"status": "failed", "error": "No voice audio to transcribe"},
            "is_processing": False,
        }
    if services.speech is None:
        raise VoiceTranscriptionError("INVALID_REQUEST: no speech-to-text service configured")

    started_at = utcnow()
    log.info("voice_transcribing", path=audio["file_path"])
    result = await services.speech.transcribe(
        audio["file_path"], TranscriptionOptions(language=audio.get("language"))
    )
    if not result.success:
        raise VoiceTranscriptionError(result.error or "transcription failed")

    text = (result.text or "").strip()
    if not text:
        raise VoiceTranscriptionError("INVALID_REQUEST: transcription produced no text")

    stage = Stage(state.get("current_stage") or Stage.BRAINSTORM)
    return {
        "messages": [user_message(text, stage)],
        "voice_audio_pending": CLEAR,
        "voice_transcription": {
            "status": "completed",
            "text": text,
            "language": result.language,
            "duration": result.duration,
            "error": None,
            "started_at": started_at,
            "completed_at": utcnow(),
        },
        "last_user_action": UserAction.CHAT,
        "is_processing": False,
        "error": CLEAR,
    }
