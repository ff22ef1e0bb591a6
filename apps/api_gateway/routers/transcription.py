"""
Транскрипция аудио через upstream STT (Whisper).

Один запрос = один upstream-вызов, без стрима.
Ошибка провайдера уходит клиенту в {"error": ...} как есть.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, File, UploadFile

from apps.api_gateway.deps import settings_dep, transcription_session_dep
from assistant_relay.common.config import Settings
from assistant_relay.common.errors import ValidationError
from assistant_relay.relay.session import RelaySession

router = APIRouter()


@router.post("/whisper")
async def whisper(
    audio: UploadFile | None = File(default=None),
    session: RelaySession = Depends(transcription_session_dep),
    settings: Settings = Depends(settings_dep),
) -> dict[str, str]:
    try:
        if audio is None:
            raise ValidationError("Audio file required")
        data = await audio.read()
        if not data:
            raise ValidationError("Audio file required")
        if len(data) > settings.max_audio_bytes:
            raise ValidationError("Audio file too large", {"max_bytes": settings.max_audio_bytes})

        text = await asyncio.to_thread(
            session.transcribe,
            data,
            audio.content_type,
            filename=audio.filename,
        )
    finally:
        session.close()
    return {"text": text}
