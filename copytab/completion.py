"""Text completion client and its expiring, request-coalescing cache."""

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from copytab.errors import CompletionError, StorageUnavailable
from copytab.utils import canonical_json, compute_content_hash

if TYPE_CHECKING:
    from copytab.local_store import LocalStore

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "completion:"
DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class CompletionRequest:
    """A request for generated text."""

    prompt: str
    context: str | None = None
    language: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    def to_payload(self, user_id: str | None = None, stream: bool = False) -> dict[str, Any]:
        """Build the JSON body sent to the completion endpoint."""
        payload: dict[str, Any] = {"prompt": self.prompt}
        if self.context is not None:
            payload["context"] = self.context
        if self.language is not None:
            payload["language"] = self.language
        if self.max_tokens is not None:
            payload["maxTokens"] = self.max_tokens
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if stream:
            payload["stream"] = True
        if user_id is not None:
            payload["userId"] = user_id
        return payload


@dataclass(frozen=True)
class CompletionResponse:
    """Generated text and optional token usage."""

    text: str
    usage: dict[str, int] | None = None


# Cache key derivation


def _key_data(request: CompletionRequest) -> dict[str, Any]:
    # Temperature is deliberately not part of the identity of a request
    context = request.context.strip() if request.context else None
    return {
        "prompt": request.prompt.strip(),
        "context": context or None,
        "language": request.language,
        "max_tokens": request.max_tokens,
    }


def content_hash_key(request: CompletionRequest) -> str:
    """SHA-256 of the request's identifying fields. The default key."""
    return compute_content_hash(_key_data(request))


def encoded_request_key(request: CompletionRequest) -> str:
    """Reversible URL-safe base64 encoding of the identifying fields."""
    raw = canonical_json(_key_data(request)).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def rolling_request_key(request: CompletionRequest) -> str:
    """Short 32-bit rolling hash (multiplier 31) in base 36.

    Collisions are possible; only use it where short keys matter more.
    """
    data = canonical_json(_key_data(request)).encode("utf-16-le")
    value = 0
    for i in range(0, len(data), 2):
        value = (value * 31 + int.from_bytes(data[i : i + 2], "little")) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def _to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


KeyFunc = Callable[[CompletionRequest], str]


class CompletionClient:
    """HTTP client for the text-generation backend."""

    DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = f"{base_url.rstrip('/')}/api/completion"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def complete(
        self, request: CompletionRequest, user_id: str | None = None
    ) -> CompletionResponse:
        """Request a completion.

        Raises:
            CompletionError: If the backend is unreachable or answers with
                an error or a malformed body.
        """
        try:
            response = await self._client.post(
                self.url, json=request.to_payload(user_id), headers=self._headers
            )
        except httpx.TransportError as e:
            raise CompletionError(f"Completion backend unreachable: {e}") from e

        if response.is_error:
            raise CompletionError(f"Completion request failed: {response.text}")
        try:
            body = response.json()
            return CompletionResponse(text=body["text"], usage=body.get("usage"))
        except (ValueError, KeyError, TypeError) as e:
            raise CompletionError(f"Malformed completion response: {e}") from e

    async def stream(
        self, request: CompletionRequest, user_id: str | None = None
    ) -> AsyncIterator[str]:
        """Stream a completion as text chunks from server-sent events.

        Lines that are not ``data:`` events or fail to parse are skipped.
        """
        payload = request.to_payload(user_id, stream=True)
        try:
            async with self._client.stream(
                "POST", self.url, json=payload, headers=self._headers
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise CompletionError(f"Completion request failed: {response.text}")
                async for line in response.aiter_lines():
                    chunk = parse_sse_line(line)
                    if chunk:
                        yield chunk
        except httpx.TransportError as e:
            raise CompletionError(f"Completion backend unreachable: {e}") from e


def parse_sse_line(line: str) -> str | None:
    """Extract the content delta from one server-sent event line.

    Returns:
        The text chunk, or None for non-data lines, the ``[DONE]`` marker,
        unparsable payloads and events without content.
    """
    if not line.startswith("data: "):
        return None
    data = line[len("data: ") :].strip()
    if data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
        return parsed["choices"][0]["delta"].get("content") or None
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        return None


class CompletionCache:
    """Expiring cache of completions with in-flight request coalescing.

    Entries live in the local store's cache table under the
    ``completion:`` key prefix and expire 24 hours after they are written.
    Identical requests issued while one is outstanding share a single
    backend call.
    """

    def __init__(
        self,
        store: "LocalStore",
        client: CompletionClient,
        key_func: KeyFunc = content_hash_key,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        user_id: str | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.key_func = key_func
        self.ttl_seconds = ttl_seconds
        self.user_id = user_id
        self._pending: dict[str, asyncio.Task] = {}

    def key_for(self, request: CompletionRequest) -> str:
        return self.key_func(request)

    def _storage_key(self, key: str) -> str:
        return f"{CACHE_KEY_PREFIX}{key}"

    def get(self, request: CompletionRequest) -> CompletionResponse | None:
        """Look up a cached completion; a miss returns None."""
        data = self.store.get_cache(self._storage_key(self.key_for(request)))
        if not isinstance(data, dict) or "response" not in data:
            return None
        return CompletionResponse(text=data["response"], usage=data.get("usage"))

    def set(self, request: CompletionRequest, response: CompletionResponse) -> None:
        """Cache a completion, replacing any entry and resetting its expiry."""
        self.store.set_cache(
            self._storage_key(self.key_for(request)),
            {
                "prompt": request.prompt,
                "context": request.context,
                "language": request.language,
                "response": response.text,
                "usage": response.usage,
            },
            ttl_seconds=self.ttl_seconds,
        )

    def clear(self) -> int:
        """Remove all cached completions.

        Returns:
            Number of entries removed.
        """
        return self.store.delete_cache(CACHE_KEY_PREFIX)

    def stats(self) -> dict[str, int]:
        """Return ``total`` stored entries and how many are ``expired``."""
        return self.store.cache_counts(CACHE_KEY_PREFIX)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def generate(self, request: CompletionRequest) -> CompletionResponse:
        """Return a completion, from cache or from the backend.

        A caller for a request that is already outstanding joins it instead
        of issuing a second backend call. Cancelling one caller does not
        cancel the shared call.

        Raises:
            CompletionError: If the backend call fails.
            asyncio.CancelledError: If the request is cancelled via ``cancel``.
        """
        key = self.key_for(request)
        task = self._pending.get(key)
        if task is None:
            cached = self.get(request)
            if cached is not None:
                logger.debug("Completion cache hit for %s", key)
                return cached
            task = asyncio.get_running_loop().create_task(self._fetch(request))
            self._pending[key] = task
            task.add_done_callback(lambda t, key=key: self._forget(key, t))
        else:
            logger.debug("Joining in-flight completion %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        # Mark the exception retrieved for tasks nobody awaits anymore
        if not task.cancelled():
            task.exception()

    async def _fetch(self, request: CompletionRequest) -> CompletionResponse:
        response = await self.client.complete(request, self.user_id)
        self._store(request, response)
        return response

    def _store(self, request: CompletionRequest, response: CompletionResponse) -> None:
        try:
            self.set(request, response)
        except StorageUnavailable as e:
            logger.warning("Could not cache completion: %s", e)

    def cancel(self, request: CompletionRequest | None = None) -> int:
        """Cancel one outstanding request, or all of them.

        The cancelled request is forgotten, so the next identical request
        starts a new backend call.

        Returns:
            Number of requests cancelled.
        """
        if request is not None:
            task = self._pending.pop(self.key_for(request), None)
            tasks = [task] if task else []
        else:
            tasks = list(self._pending.values())
            self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            logger.debug("Cancelled %d completion request(s)", len(tasks))
        return len(tasks)

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Stream a completion, caching the full text once the stream ends."""
        parts: list[str] = []
        async for chunk in self.client.stream(request, self.user_id):
            parts.append(chunk)
            yield chunk
        self._store(request, CompletionResponse(text="".join(parts)))
