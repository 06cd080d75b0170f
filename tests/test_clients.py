import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from anthropic import APIConnectionError

from callcoach.ai_client import AnthropicCompletion
from callcoach.exceptions import CompletionError, TranscriptionError
from callcoach.transcriber import DeepgramTranscriber


def anthropic_reply(*texts):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=t) for t in texts])


def deepgram_reply(transcript):
    alternatives = [SimpleNamespace(transcript=transcript)] if transcript is not None else []
    return SimpleNamespace(results=SimpleNamespace(channels=[SimpleNamespace(alternatives=alternatives)]))


class TestAnthropicCompletion:
    @pytest.mark.asyncio
    async def test_joins_text_blocks_and_appends_schema(self):
        client = MagicMock()
        client.messages.create.return_value = anthropic_reply('{"a":', ' 1}')
        completion = AnthropicCompletion("key", "claude-test", client=client)

        raw = await completion.complete("Você é um coach.", "Transcrição...", '{"a": number}')

        assert raw == '{"a": 1}'
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"].startswith("Você é um coach.")
        assert '{"a": number}' in kwargs["system"]
        assert kwargs["messages"] == [{"role": "user", "content": "Transcrição..."}]

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = MagicMock()
        client.messages.create.side_effect = lambda **kwargs: time.sleep(0.3)
        completion = AnthropicCompletion("key", "claude-test", timeout_seconds=0.05, client=client)

        with pytest.raises(CompletionError, match="timed out"):
            await completion.complete("s", "u")

    @pytest.mark.asyncio
    async def test_api_error(self):
        client = MagicMock()
        client.messages.create.side_effect = APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )
        completion = AnthropicCompletion("key", "claude-test", client=client)

        with pytest.raises(CompletionError, match="request failed"):
            await completion.complete("s", "u")


class TestDeepgramTranscriber:
    @pytest.mark.asyncio
    async def test_returns_stripped_transcript(self):
        client = MagicMock()
        client.listen.rest.v.return_value.transcribe_file.return_value = deepgram_reply(" Quanto custa? ")
        transcriber = DeepgramTranscriber("key", client=client)

        assert await transcriber.transcribe(b"webm-bytes", "contexto") == "Quanto custa?"
        source, options = client.listen.rest.v.return_value.transcribe_file.call_args.args
        assert source == {"buffer": b"webm-bytes"}
        assert options.language == "pt-BR"

    @pytest.mark.asyncio
    async def test_no_alternatives(self):
        client = MagicMock()
        client.listen.rest.v.return_value.transcribe_file.return_value = deepgram_reply(None)
        assert await DeepgramTranscriber("key", client=client).transcribe(b"x") == ""

    @pytest.mark.asyncio
    async def test_empty_audio_skips_request(self):
        client = MagicMock()
        assert await DeepgramTranscriber("key", client=client).transcribe(b"") == ""
        client.listen.rest.v.assert_not_called()

    @pytest.mark.asyncio
    async def test_sdk_failure(self):
        client = MagicMock()
        client.listen.rest.v.return_value.transcribe_file.side_effect = RuntimeError("400 bad audio")
        with pytest.raises(TranscriptionError, match="bad audio"):
            await DeepgramTranscriber("key", client=client).transcribe(b"x")
