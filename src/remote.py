"""Client for a running relay server.

Speaks the relay server's /api/chat contract and turns its replies back
into Frames, so a ChatSession can use a relay in another process exactly
like an in-process UpstreamRelay:
- text/plain body: chunked raw text increments (stream mode)
- application/json body: {"content": ...} (aggregate mode)
- error document: {"error": ..., "kind": ...} with a non-2xx status
"""

import json
import logging
from typing import AsyncIterator, Optional

import httpx

from .errors import ErrorKind, Frame, RelayError
from .runtime import get_local_relay_url

logger = logging.getLogger(__name__)


class RemoteRelay:
    """Relay reached over HTTP.

    Args:
        base_url: Relay server URL; discovered from runtime.json if omitted
        mode: Mode the server is expected to run in, used only to decide
            whether the caller should apply a stall deadline
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        mode: str = "stream",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/") if base_url else None
        self.mode = mode
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0),
        )

    @property
    def streaming(self) -> bool:
        return self.mode == "stream"

    @property
    def base_url(self) -> str:
        url = self._base_url or get_local_relay_url()
        if not url:
            raise RelayError(
                ErrorKind.UNREACHABLE,
                "Relay server not running (no runtime.json found). Start it with: relaychat --serve",
            )
        return url

    async def close(self):
        await self.client.aclose()

    async def exchange(
        self,
        messages: list[dict],
        api_url: str,
        api_key: str = "",
    ) -> AsyncIterator[Frame]:
        """Forward one exchange to the relay server."""
        accumulated: list[str] = []
        try:
            payload = {"messages": messages, "apiUrl": api_url, "apiKey": api_key}
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/chat",
                json=payload,
            ) as response:
                content_type = response.headers.get("content-type", "")

                if not response.is_success or "application/json" in content_type:
                    body = await response.aread()
                    document = self._parse_document(body)
                    if not response.is_success:
                        raise RelayError.from_document(response.status_code, document)
                    content = document.get("content") or ""
                    if content:
                        accumulated.append(content)
                        yield Frame.token(content)
                else:
                    async for text in response.aiter_text():
                        if text:
                            accumulated.append(text)
                            yield Frame.token(text)

            content = "".join(accumulated)
            if not content:
                raise RelayError(ErrorKind.EMPTY_RESPONSE)
            yield Frame.done(content)

        except RelayError as e:
            yield Frame.failure(e)
        except (httpx.RemoteProtocolError, httpx.ReadError) as e:
            # The relay aborts the body when the upstream fails mid-stream
            logger.warning(f"Relay stream interrupted after {len(accumulated)} chunks: {e}")
            yield Frame.failure(RelayError(
                ErrorKind.UNREACHABLE,
                "Connection to the model server was lost mid-response.",
            ))
        except httpx.HTTPError as e:
            logger.warning(f"Could not reach relay server: {e}")
            yield Frame.failure(RelayError(
                ErrorKind.UNREACHABLE,
                f"Cannot reach the relay server: {str(e) or type(e).__name__}",
            ))

    @staticmethod
    def _parse_document(body: bytes) -> dict:
        try:
            document = json.loads(body.decode("utf-8", errors="replace"))
        except ValueError:
            return {}
        return document if isinstance(document, dict) else {}
