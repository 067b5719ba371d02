"""Stream relay to a remote OpenAI-compatible completion endpoint.

Supports the upstream's /v1/chat/completions API in two interchangeable
modes behind one ``exchange()`` call:
- stream: SSE deltas decoded into token frames as they arrive
- aggregate: a single JSON completion delivered as one token frame

Every exchange yields zero or more token frames followed by exactly one
terminal frame (done or error). The upstream is typically reached through
an ephemeral forwarding tunnel, so failures are classified by both status
code and content type.
"""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Optional

import httpx

from .config import load_config, RELAY_MODES
from .deadline import Deadline, guard_stream
from .errors import ErrorKind, Frame, RelayError
from .runtime import get_version
from .sse import SSEDecoder, extract_token

logger = logging.getLogger(__name__)

# Markers of a human-facing interstitial page where JSON was expected
MARKUP_MARKERS = ("<html", "<!doctype html", "ngrok")


def normalize_base_url(api_url: str) -> str:
    """Strip trailing slashes and make sure the URL ends in the /v1 segment."""
    base_url = api_url.strip().rstrip("/")
    if not base_url.endswith("/v1"):
        base_url += "/v1"
    return base_url


def completions_url(api_url: str) -> str:
    return f"{normalize_base_url(api_url)}/chat/completions"


def looks_like_markup(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in MARKUP_MARKERS)


def gateway_expired(detail: str = "") -> RelayError:
    message = (
        "Tunnel returned HTML instead of JSON. The tunnel may have expired, "
        "restart it to get a fresh URL."
    )
    if detail:
        message = f"{message} ({detail})"
    return RelayError(ErrorKind.GATEWAY_EXPIRED, message)


def unreachable(exc: Exception) -> RelayError:
    detail = str(exc) or type(exc).__name__
    return RelayError(ErrorKind.UNREACHABLE, f"Cannot reach the model server: {detail}")


def classify_transport_error(exc: Exception) -> RelayError:
    """Map an httpx failure onto the error taxonomy."""
    if isinstance(exc, httpx.ReadTimeout):
        return RelayError(ErrorKind.STALLED, "Model server stopped sending data.")
    if isinstance(exc, httpx.ConnectTimeout):
        return unreachable(exc)
    if isinstance(exc, httpx.TimeoutException):
        return RelayError(ErrorKind.TIMEOUT)
    return unreachable(exc)


class UpstreamRelay:
    """
    Relay to one upstream completion endpoint.

    The upstream URL and credential travel with each call, so a single
    relay can serve whatever endpoint the caller has configured.
    """

    def __init__(
        self,
        mode: Optional[str] = None,
        timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = load_config()
        self.mode = mode or config["RELAY_MODE"]
        if self.mode not in RELAY_MODES:
            raise ValueError(f"Unknown relay mode: {self.mode}")
        self.timeout = timeout or config["UPSTREAM_TIMEOUT"]
        self.stall_timeout = stall_timeout or config["UPSTREAM_STALL_TIMEOUT"]
        self.model = config["MODEL_ID"]
        self.system_prompt = config["SYSTEM_PROMPT"]
        self.max_tokens = config["MAX_TOKENS"]
        self.temperature = config["TEMPERATURE"]

        # Overall and stall deadlines are enforced by this class; httpx only
        # bounds connection setup so a dead host fails as unreachable.
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0),
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    async def close(self):
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    @property
    def streaming(self) -> bool:
        return self.mode == "stream"

    def build_payload(self, messages: list[dict], stream: bool) -> dict[str, Any]:
        """Build the completion request body: system preamble, then the transcript verbatim."""
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                *({"role": m["role"], "content": m["content"]} for m in messages),
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": stream,
        }

    def _headers(self, api_key: str) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
            "ngrok-skip-browser-warning": "true",
            "User-Agent": f"relaychat/{get_version()}",
        }

    def exchange(
        self,
        messages: list[dict],
        api_url: str,
        api_key: str = "",
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Frame]:
        """Run one exchange using the configured mode."""
        if self.mode == "aggregate":
            return self.aggregate_exchange(messages, api_url, api_key, timeout)
        return self.stream_exchange(messages, api_url, api_key, timeout)

    async def _open(
        self,
        payload: dict,
        api_url: str,
        api_key: str,
        deadline: Deadline,
    ) -> httpx.Response:
        """Send the request and classify the response before any body is consumed."""
        if not api_url or not api_url.strip():
            raise RelayError(ErrorKind.CONFIG_MISSING)

        request = self.client.build_request(
            "POST",
            completions_url(api_url),
            json=payload,
            headers=self._headers(api_key),
        )
        logger.info(f"UPSTREAM: POST {request.url} stream={payload['stream']} messages={len(payload['messages'])}")
        response = await deadline.run(self.client.send(request, stream=True))
        logger.info(f"UPSTREAM: Got response status={response.status_code}")

        try:
            if not response.is_success:
                body = await deadline.run(response.aread())
                error_text = body.decode("utf-8", errors="replace")
                logger.warning(f"Upstream returned {response.status_code}: {error_text[:500]}")
                if looks_like_markup(error_text):
                    raise gateway_expired()
                status = response.status_code if response.status_code >= 400 else 502
                raise RelayError(
                    ErrorKind.UPSTREAM_HTTP_ERROR,
                    f"API Error ({response.status_code}): {error_text[:200] or 'Connection failed'}",
                    status,
                )

            # Tunnel warning pages arrive with a 200 status
            content_type = response.headers.get("content-type", "")
            if "text/html" in content_type:
                raise gateway_expired("received a web page with a success status")
        except BaseException:
            await response.aclose()
            raise

        return response

    async def stream_exchange(
        self,
        messages: list[dict],
        api_url: str,
        api_key: str = "",
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Frame]:
        """
        Stream one exchange from the upstream, token by token.

        Yields:
        - Frame(token) for each text increment
        - Frame(done) with the aggregated content on success
        - Frame(error) on any failure, including an empty reply
        """
        accumulated: list[str] = []
        try:
            deadline = Deadline(timeout or self.timeout)
            payload = self.build_payload(messages, stream=True)
            response = await self._open(payload, api_url, api_key, deadline)

            decoder = SSEDecoder()
            try:
                chunks = guard_stream(response.aiter_bytes(), deadline, self.stall_timeout)
                async with aclosing(chunks):
                    async for raw in chunks:
                        for token in decoder.feed(raw):
                            accumulated.append(token)
                            yield Frame.token(token)
                        if decoder.done:
                            # Logical end of stream; the physical connection is
                            # often kept open, so stop reading right here.
                            logger.debug(f"STREAMING: [DONE] after {decoder.lines_read} lines")
                            break
                if not decoder.done:
                    for token in decoder.flush():
                        accumulated.append(token)
                        yield Frame.token(token)
            finally:
                await response.aclose()

            content = "".join(accumulated)
            if not content:
                raise RelayError(ErrorKind.EMPTY_RESPONSE)

            logger.debug(f"Upstream streaming complete: {len(content)} chars, {len(accumulated)} tokens")
            yield Frame.done(content)

        except RelayError as e:
            logger.warning(f"Stream exchange failed after {len(accumulated)} tokens: {e.kind.value}: {e.message}")
            yield Frame.failure(e)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Stream exchange transport error: {type(e).__name__}: {e}")
            yield Frame.failure(classify_transport_error(e))
        except Exception as e:
            logger.exception("Stream exchange error")
            yield Frame.failure(unreachable(e))

    async def aggregate_exchange(
        self,
        messages: list[dict],
        api_url: str,
        api_key: str = "",
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Frame]:
        """
        Run one exchange as a single completion.

        Yields one Frame(token) with the whole reply followed by Frame(done),
        or a single Frame(error).
        """
        try:
            deadline = Deadline(timeout or self.timeout)
            payload = self.build_payload(messages, stream=False)
            response = await self._open(payload, api_url, api_key, deadline)
            try:
                body = await deadline.run(response.aread())
            finally:
                await response.aclose()

            content = self._parse_completion(body)
            if not content:
                raise RelayError(ErrorKind.EMPTY_RESPONSE)

            logger.debug(f"Upstream response: {len(content)} chars")
            yield Frame.token(content)
            yield Frame.done(content)

        except RelayError as e:
            logger.warning(f"Aggregate exchange failed: {e.kind.value}: {e.message}")
            yield Frame.failure(e)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Aggregate exchange transport error: {type(e).__name__}: {e}")
            yield Frame.failure(classify_transport_error(e))
        except Exception as e:
            logger.exception("Aggregate exchange error")
            yield Frame.failure(unreachable(e))

    def _parse_completion(self, body: bytes) -> str:
        """Extract the reply text from a non-streaming completion document."""
        text = body.decode("utf-8", errors="replace")
        try:
            data = json.loads(text)
        except ValueError:
            if looks_like_markup(text):
                raise gateway_expired()
            raise RelayError(
                ErrorKind.UPSTREAM_HTTP_ERROR,
                f"API Error: model server returned invalid JSON: {text[:200]}",
                502,
            )

        if not isinstance(data, dict) or not data.get("choices"):
            return ""

        choice = data["choices"][0]
        message = choice.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not content:
            # Some servers reuse the streaming chunk shape
            content = extract_token(data)
        return content if isinstance(content, str) else ""
