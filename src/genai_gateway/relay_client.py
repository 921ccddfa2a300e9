"""
Client for the relay's HTTP contract.

This is what application code (or a browser-side port of it) calls instead
of the upstream API. It never sees a credential except through
`get_live_key()`, and it only depends on the relay's normalized response
shape, not on upstream's schema.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .audio import decode_base64
from .config import DEFAULT_TEXT_MODEL, DEFAULT_TTS_MODEL

lib_logger = logging.getLogger("genai_gateway")


class RelayError(Exception):
    """The relay reported a failure, or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_suggested: bool = False,
        attempts: Optional[int] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.retry_suggested = retry_suggested
        self.attempts = attempts
        super().__init__(message)


class RelayClient:
    """
    Async client for `POST /api/proxy`.

    Args:
        base_url: Where the relay lives. Swapping it is how callers are
            redirected (e.g. to a regional relay) without touching any
            global networking state.
        endpoint: Path of the relay handler.
        http_client: Optional shared httpx.AsyncClient; one is created and
            owned by this client otherwise.
    """

    def __init__(
        self,
        base_url: str,
        endpoint: str = "/api/proxy",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 90.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http_client.post(self.url, json=payload)
        except httpx.TransportError as e:
            lib_logger.error(f"[Bridge Failure]: {e}")
            raise RelayError(
                f"Relay unreachable: {e.__class__.__name__}", retry_suggested=True
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            message = data.get("error") if isinstance(data, dict) else None
            message = message or "Server bridge failed to respond."
            lib_logger.error(f"[Bridge Failure]: HTTP {response.status_code} {message}")
            raise RelayError(
                message,
                status_code=response.status_code,
                retry_suggested=bool(data.get("retrySuggested", False))
                if isinstance(data, dict)
                else False,
                attempts=data.get("attempts") if isinstance(data, dict) else None,
            )
        return data

    async def generate(
        self,
        contents: Any,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Raw generateContent call; returns the normalized relay body."""
        payload = {"operation": "generateContent", "contents": contents, "config": config or {}}
        if model:
            payload["model"] = model
        return await self._post(payload)

    async def count_tokens(self, contents: Any, model: Optional[str] = None) -> int:
        payload = {"operation": "countTokens", "contents": contents}
        if model:
            payload["model"] = model
        data = await self._post(payload)
        return int(data.get("totalTokens") or 0)

    async def get_live_key(self) -> Dict[str, str]:
        """Lease one credential for a direct live session: {apiKey, keyName}."""
        return await self._post({"operation": "getLiveKey"})

    async def generate_text(
        self,
        prompt: str,
        model: str = DEFAULT_TEXT_MODEL,
        system_instruction: Optional[str] = None,
    ) -> str:
        config = {"systemInstruction": system_instruction} if system_instruction else {}
        data = await self.generate([{"parts": [{"text": prompt}]}], model=model, config=config)
        return data.get("text") or ""

    async def generate_json(
        self,
        prompt: str,
        schema: Dict[str, Any],
        model: str = DEFAULT_TEXT_MODEL,
        system_instruction: Optional[str] = None,
    ) -> Any:
        """Structured output. Returns {} when upstream produced no parsable JSON."""
        config: Dict[str, Any] = {
            "responseMimeType": "application/json",
            "responseSchema": schema,
        }
        if system_instruction:
            config["systemInstruction"] = system_instruction
        data = await self.generate([{"parts": [{"text": prompt}]}], model=model, config=config)
        parsed = data.get("json")
        return parsed if parsed is not None else {}

    async def generate_speech(
        self,
        text: str,
        voice: str = "Kore",
        model: str = DEFAULT_TTS_MODEL,
    ) -> Optional[bytes]:
        """Text to speech. Returns raw PCM16 (24 kHz mono) or None."""
        config = {
            "responseModalities": ["AUDIO"],
            "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}},
        }
        data = await self.generate(
            [{"parts": [{"text": f"Say clearly: {text}"}]}], model=model, config=config
        )
        audio = data.get("audio")
        if not audio or not audio.get("data"):
            return None
        return decode_base64(audio["data"])

    async def respond_to_audio(
        self,
        parts: List[Dict[str, Any]],
        model: str = DEFAULT_TEXT_MODEL,
        system_instruction: Optional[str] = None,
    ) -> str:
        """Send pre-built parts (e.g. inline WAV plus instructions); return the text reply."""
        config = {"systemInstruction": system_instruction} if system_instruction else {}
        data = await self.generate([{"role": "user", "parts": parts}], model=model, config=config)
        return data.get("text") or ""
