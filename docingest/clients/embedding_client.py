from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..ingestion.models import TranscriptSegment
from ..shared.errors import (
    RateLimitFault,
    TimeoutFault,
    TransientFault,
    ValidationFault,
)


@dataclass
class Transcription:
    text: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    duration: Optional[float] = None


class EmbeddingService(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]: ...

    async def transcribe(self, data: bytes, filename: str) -> Transcription: ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class HttpEmbeddingClient:
    """Async client for an OpenAI-compatible embedding/transcription API.

    HTTP failures are raised as pipeline faults so the retry layer can
    tell rate limits and outages apart from bad requests.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com",
        api_key: str = "",
        model: str = "text-embedding-3-small",
        transcription_model: str = "whisper-1",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._model = model
        self._transcription_model = transcription_model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpEmbeddingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _handle_error(self, response: httpx.Response, operation: str) -> None:
        try:
            body = response.text[:500]
        except Exception:
            body = "<unavailable>"
        status = response.status_code
        message = f"{operation} HTTP {status}: {body}"
        if status == 429:
            raise RateLimitFault(message, retry_after=_retry_after(response))
        if status >= 500:
            raise TransientFault(message, status_code=status)
        raise ValidationFault(message, context={"status_code": status})

    async def _post(self, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TimeoutFault(f"{operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientFault(f"{operation} network error: {exc}") from exc
        if response.status_code != 200:
            self._handle_error(response, operation)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientFault(f"{operation} returned invalid JSON") from exc

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in input order."""
        payload: Dict[str, Any] = {
            "model": self._model,
            "input": texts,
            "encoding_format": "float",
        }
        body = await self._post("/v1/embeddings", "embed", json=payload)
        data = sorted(body.get("data") or [], key=lambda item: item.get("index", 0))
        if len(data) != len(texts):
            raise ValidationFault(
                f"Embedding response has {len(data)} vectors for {len(texts)} inputs"
            )
        return [[float(x) for x in item["embedding"]] for item in data]

    async def transcribe(self, data: bytes, filename: str) -> Transcription:
        files = {"file": (filename, data)}
        form = {
            "model": self._transcription_model,
            "response_format": "verbose_json",
        }
        body = await self._post(
            "/v1/audio/transcriptions", "transcribe", files=files, data=form
        )
        segments = [
            TranscriptSegment(
                start=float(s.get("start", 0.0)),
                end=float(s.get("end", 0.0)),
                text=s.get("text", ""),
            )
            for s in body.get("segments") or []
        ]
        return Transcription(
            text=body.get("text", ""),
            segments=segments,
            duration=body.get("duration"),
        )


__all__ = ["EmbeddingService", "HttpEmbeddingClient", "Transcription"]
