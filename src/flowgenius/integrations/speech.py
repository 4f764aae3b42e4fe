"""OpenAI Whisper speech-to-text adapter."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import openai
import structlog

from flowgenius.config.settings import settings
from flowgenius.errors import ErrorCode, coded
from flowgenius.integrations.openai_chat import build_client, classify_openai_error
from flowgenius.integrations.services import TranscriptionOptions, TranscriptionResult

log = structlog.get_logger(__name__)


class WhisperSpeechService:
    def __init__(
        self, client: Any | None = None, model: str | None = None, timeout: float | None = None
    ) -> None:
        self._client = client if client is not None else build_client()
        self._model = model or settings.whisper_model
        self._timeout = timeout or settings.speech_timeout_seconds

    async def transcribe(
        self, audio_ref: str, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        """Transcribe the audio file at ``audio_ref``."""
        options = options or TranscriptionOptions()
        path = Path(audio_ref)
        if not path.is_file():
            return TranscriptionResult(
                success=False, error=coded(ErrorCode.INVALID_REQUEST, f"audio file not found: {audio_ref}")
            )
        if self._client is None:
            return TranscriptionResult(
                success=False, error=coded(ErrorCode.UNAUTHORIZED, "OPENAI_API_KEY is not set")
            )

        kwargs: dict[str, Any] = {
            "model": self._model,
            "response_format": "verbose_json",
            "temperature": 0,
        }
        if options.language:
            kwargs["language"] = options.language
        if options.prompt:
            kwargs["prompt"] = options.prompt

        try:
            with path.open("rb") as audio:
                response = await asyncio.wait_for(
                    self._client.audio.transcriptions.create(file=audio, **kwargs),
                    timeout=self._timeout,
                )
        except asyncio.TimeoutError:
            log.warning("transcription_timeout", path=str(path), timeout=self._timeout)
            return TranscriptionResult(
                success=False, error=coded(ErrorCode.TIMEOUT, f"transcription exceeded {self._timeout}s")
            )
        except openai.OpenAIError as exc:
            error = classify_openai_error(exc)
            log.warning("transcription_failed", path=str(path), error=error)
            return TranscriptionResult(success=False, error=error)

        text = (getattr(response, "text", "") or "").strip()
        log.info("transcription_completed", path=str(path), chars=len(text))
        return TranscriptionResult(
            success=True,
            text=text,
            language=getattr(response, "language", None),
            duration=getattr(response, "duration", None),
        )
