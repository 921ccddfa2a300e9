"""
Adapter for the Gemini REST API.

Turns a caller's RequestEnvelope (SDK-style `contents` and `config`) into a
REST request body, performs the call with one credential, and normalizes the
response into the relay's stable shape so callers never parse upstream's
candidate structure themselves.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .config import DEFAULT_UPSTREAM_BASE_URL
from .credential_pool import Credential
from .error_handler import PermanentRequestError

lib_logger = logging.getLogger("genai_gateway")

# Relay operation name -> REST method suffix
UPSTREAM_OPERATIONS = {
    "generateContent": "generateContent",
    "countTokens": "countTokens",
}

# Model ids are a single path segment, e.g. "gemini-2.5-flash-preview-tts"
MODEL_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

# Config keys that live at the top level of the REST body
TOP_LEVEL_CONFIG_KEYS = ("safetySettings", "tools", "toolConfig", "cachedContent")


class RequestEnvelope(BaseModel):
    """
    One logical caller request.

    `action`, `content` and `configuration` are accepted as aliases of
    `operation`, `contents` and `config` for existing clients. Only the
    fields needed for routing and response shaping are inspected.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    operation: str = Field(
        default="generateContent",
        validation_alias=AliasChoices("operation", "action"),
    )
    model: Optional[str] = None
    contents: Any = Field(
        default=None, validation_alias=AliasChoices("contents", "content")
    )
    config: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("config", "configuration")
    )

    @property
    def expects_json(self) -> bool:
        return self.config.get("responseMimeType") == "application/json"

    @property
    def expects_audio(self) -> bool:
        modalities = self.config.get("responseModalities") or []
        return any(str(m).upper() == "AUDIO" for m in modalities)


def _is_part(value: Dict[str, Any]) -> bool:
    return any(
        key in value
        for key in ("text", "inlineData", "fileData", "functionCall", "functionResponse")
    )


def _as_part(value: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(value, str):
        return {"text": value}
    return value


def normalize_contents(contents: Any) -> List[Dict[str, Any]]:
    """
    Accepts the shapes the SDK accepts and returns REST `contents`:
    a string, a single part or content dict, a list of parts, or a list
    of content dicts.
    """
    if contents is None or contents == "" or contents == []:
        raise PermanentRequestError("'contents' is required.", status_code=400)

    if isinstance(contents, str):
        return [{"role": "user", "parts": [{"text": contents}]}]

    if isinstance(contents, dict):
        if "parts" in contents:
            return [{"role": "user", **contents}]
        if _is_part(contents):
            return [{"role": "user", "parts": [contents]}]
        raise PermanentRequestError("Unrecognized 'contents' object.", status_code=400)

    if isinstance(contents, list):
        if all(isinstance(item, str) or (isinstance(item, dict) and _is_part(item)) for item in contents):
            return [{"role": "user", "parts": [_as_part(item) for item in contents]}]
        normalized = []
        for item in contents:
            if isinstance(item, dict) and "parts" in item:
                normalized.append({"role": "user", **item})
            else:
                raise PermanentRequestError(
                    "Mixed 'contents' list: expected parts or content objects.",
                    status_code=400,
                )
        return normalized

    raise PermanentRequestError(
        f"Unsupported 'contents' type: {type(contents).__name__}", status_code=400
    )


def _system_instruction(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        return {"parts": [{"text": value}]}
    if isinstance(value, list):
        return {"parts": [_as_part(item) for item in value]}
    if isinstance(value, dict) and "parts" not in value and _is_part(value):
        return {"parts": [value]}
    return value


def build_request_body(envelope: RequestEnvelope) -> Dict[str, Any]:
    """Translate SDK-style `config` into the REST body layout."""
    body: Dict[str, Any] = {"contents": normalize_contents(envelope.contents)}
    if envelope.operation == "countTokens":
        return body

    generation_config: Dict[str, Any] = {}
    for key, value in envelope.config.items():
        if value is None:
            continue
        if key == "systemInstruction":
            body["systemInstruction"] = _system_instruction(value)
        elif key in TOP_LEVEL_CONFIG_KEYS:
            body[key] = value
        else:
            generation_config[key] = value

    if generation_config:
        body["generationConfig"] = generation_config
    return body


def normalize_response(
    envelope: RequestEnvelope, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Reduce an upstream payload to the relay's documented shape.

    generateContent -> {text, json, audio, finishReason, usage}
    countTokens     -> {totalTokens}
    """
    if envelope.operation == "countTokens":
        return {"totalTokens": payload.get("totalTokens")}

    candidates = payload.get("candidates") or []
    if not candidates:
        block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise PermanentRequestError(
                f"Prompt was blocked by upstream: {block_reason}", status_code=400
            )

    candidate = candidates[0] if candidates else {}
    parts = (candidate.get("content") or {}).get("parts") or []

    texts = [p["text"] for p in parts if "text" in p and not p.get("thought")]
    text = "".join(texts) if texts else None

    audio = None
    for part in parts:
        inline = part.get("inlineData")
        if inline and inline.get("data"):
            audio = {"data": inline["data"], "mimeType": inline.get("mimeType")}
            break

    parsed_json = None
    if envelope.expects_json and text:
        try:
            parsed_json = json.loads(text)
        except json.JSONDecodeError:
            lib_logger.warning("Upstream returned non-JSON text for a JSON response request")

    return {
        "text": text,
        "json": parsed_json,
        "audio": audio,
        "finishReason": candidate.get("finishReason"),
        "usage": payload.get("usageMetadata"),
    }


class GenAIUpstream:
    """
    Calls the Gemini REST API with a single credential.

    `base_url` replaces the upstream host for every call. Point it at a
    regional mirror or reverse proxy to route around network blocks.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        api_version: str = "v1beta",
        default_model: str = "gemini-3-flash-preview",
        timeout: Optional[httpx.Timeout] = None,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.default_model = default_model
        self.timeout = timeout

    def resolve_model(self, model: Optional[str]) -> str:
        """
        Strip the optional "models/" prefix and check that what is left is a
        bare model id. The id becomes a URL path segment, so anything that
        could change the path or add a query string is rejected.
        """
        model = (model or self.default_model).strip()
        if model.startswith("models/"):
            model = model[len("models/") :]
        if not MODEL_ID_PATTERN.fullmatch(model):
            raise PermanentRequestError(
                f"Invalid model id: {model[:80]!r}", status_code=400
            )
        return model

    def build_url(self, model: str, operation: str) -> str:
        method = UPSTREAM_OPERATIONS.get(operation)
        if method is None:
            raise PermanentRequestError(
                f"Unsupported operation: {operation}", status_code=400
            )
        return f"{self.base_url}/{self.api_version}/models/{model}:{method}"

    def validate(self, envelope: RequestEnvelope) -> None:
        """Reject malformed requests before any credential is spent on them."""
        self.build_url(self.resolve_model(envelope.model), envelope.operation)
        build_request_body(envelope)

    async def call(
        self, credential: Credential, envelope: RequestEnvelope
    ) -> Dict[str, Any]:
        """
        Perform one upstream call. Non-2xx responses raise
        httpx.HTTPStatusError; network failures raise httpx.TransportError.
        """
        model = self.resolve_model(envelope.model)
        url = self.build_url(model, envelope.operation)
        body = build_request_body(envelope)

        kwargs: Dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        response = await self.http_client.post(
            url,
            headers={"x-goog-api-key": credential.secret},
            json=body,
            **kwargs,
        )
        response.raise_for_status()
        return normalize_response(envelope, response.json())
