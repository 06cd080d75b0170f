"""
CallCoach Transcriber
Deepgram prerecorded transcription of one audio segment per request.
transcribe(audio_bytes, context_hint) -> text
"""

import asyncio
import logging
from typing import Optional

from deepgram import DeepgramClient, PrerecordedOptions

from .config import settings
from .exceptions import TranscriptionError

logger = logging.getLogger(__name__)


class DeepgramTranscriber:
    """Blocking SDK call run in the default executor, bounded by a timeout"""

    def __init__(
        self,
        api_key: str,
        model: str = "nova-2",
        language: str = "pt-BR",
        timeout_seconds: float = 10.0,
        client: Optional[DeepgramClient] = None,
    ):
        self.model = model
        self.language = language
        self.timeout_seconds = timeout_seconds
        self.client = client or DeepgramClient(api_key)

    def _transcribe(self, audio: bytes) -> str:
        options = PrerecordedOptions(
            model=self.model,
            language=self.language,
            smart_format=True,
            punctuate=True,
        )
        response = self.client.listen.rest.v("1").transcribe_file({"buffer": audio}, options)
        channels = response.results.channels
        if not channels or not channels[0].alternatives:
            return ""
        return channels[0].alternatives[0].transcript or ""

    async def transcribe(self, audio: bytes, context_hint: str = "") -> str:
        # Deepgram prerecorded has no free-text prompt; the hint only feeds logs
        if not audio:
            return ""

        loop = asyncio.get_running_loop()
        try:
            text = await asyncio.wait_for(
                loop.run_in_executor(None, self._transcribe, audio),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionError(f"Deepgram timed out after {self.timeout_seconds}s") from e
        except Exception as e:
            raise TranscriptionError(f"Deepgram request failed: {e}") from e

        logger.debug(f"Transcribed {len(audio)} bytes (hint={context_hint[-40:]!r}): {text[:60]!r}")
        return text.strip()


def create_transcriber() -> DeepgramTranscriber:
    return DeepgramTranscriber(
        api_key=settings.deepgram_api_key,
        model=settings.transcription_model,
        language=settings.transcription_language,
        timeout_seconds=settings.transcription_timeout_seconds,
    )
