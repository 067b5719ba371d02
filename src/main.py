"""relaychat relay server.

Bridge between chat clients and a remote OpenAI-compatible model server.

The server:
1. Accepts one transcript per request on POST /api/chat
2. Forwards it upstream with the system preamble and generation settings
3. Streams plain-text increments back (stream mode) or answers with a
   single {"content": ...} document (aggregate mode)
4. Reports failures as {"error": ..., "kind": ...} with a status code
   that tells configuration, tunnel, reachability and timeout problems apart
"""

import logging
from typing import AsyncIterator, Literal

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from rich.console import Console

from .config import get_config_value
from .errors import ErrorKind, Frame, FrameType, RelayError
from .relay import UpstreamRelay
from .runtime import get_version

load_dotenv()

console = Console()
logger = logging.getLogger(__name__)

# =============================================================================
# App Setup
# =============================================================================

app = FastAPI(
    title="relaychat",
    description="Streaming relay to a remote OpenAI-compatible model server",
    version=get_version(),
)

# Global instance, created on first use
relay: UpstreamRelay | None = None


def get_relay() -> UpstreamRelay:
    global relay
    if relay is None:
        relay = UpstreamRelay()
    return relay


@app.on_event("startup")
async def startup():
    """Initialize the upstream relay on startup."""
    upstream = get_relay()
    console.print(f"[green]Relay mode:[/green] {upstream.mode}")
    console.print(f"[green]Model:[/green] {upstream.model}")
    console.print(
        f"[green]Deadlines:[/green] {upstream.timeout:g}s overall, "
        f"{upstream.stall_timeout:g}s between chunks"
    )
    if not get_config_value("UPSTREAM_API_KEY"):
        console.print("[yellow]No UPSTREAM_API_KEY set; clients must send their own key[/yellow]")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    from .runtime import RuntimeInfo

    RuntimeInfo.clear()
    console.print("[dim]Runtime info cleared[/dim]")

    global relay
    if relay:
        await relay.close()
        relay = None


# =============================================================================
# Health Check Endpoint
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "mode": get_relay().mode,
        "version": get_version(),
    }


# =============================================================================
# Chat Endpoint
# =============================================================================

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Request body for /api/chat endpoint."""
    messages: list[ChatMessage] = Field(default_factory=list)
    apiUrl: str = ""
    apiKey: str = ""


class StreamAborted(Exception):
    """Raised inside a streaming body to cut the response short."""

    def __init__(self, error: RelayError):
        self.error = error
        super().__init__(f"{error.kind.value}: {error.message}")


def error_response(error: RelayError) -> JSONResponse:
    return JSONResponse(status_code=error.status, content=error.to_dict())


@app.post("/api/chat")
async def chat(body: ChatRequest):
    """Chat endpoint for chat clients.

    Stream mode answers with a chunked text/plain body where every chunk is
    a raw text increment. Aggregate mode answers with {"content": ...}.
    Failures detected before the first token are returned as
    {"error", "kind"} documents; a failure after streaming has begun
    aborts the body.
    """
    api_url = body.apiUrl.strip()
    if not api_url:
        return error_response(RelayError(ErrorKind.CONFIG_MISSING))

    # Client-supplied key wins over the server default; both forwarded verbatim
    api_key = body.apiKey.strip() or get_config_value("UPSTREAM_API_KEY", "")
    messages = [m.model_dump() for m in body.messages]

    upstream = get_relay()
    frames = upstream.exchange(messages, api_url, api_key)

    if not upstream.streaming:
        return await _collect_response(frames)

    # Classify before committing to a 200 streaming response
    try:
        first = await anext(frames)
    except StopAsyncIteration:
        return error_response(RelayError(ErrorKind.EMPTY_RESPONSE))
    if first.type is FrameType.ERROR:
        await frames.aclose()
        return error_response(first.error)

    return StreamingResponse(
        _stream_text(first, frames),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


async def _collect_response(frames: AsyncIterator[Frame]) -> JSONResponse | dict:
    """Drain an exchange into a single JSON answer."""
    try:
        async for frame in frames:
            if frame.type is FrameType.ERROR:
                return error_response(frame.error)
            if frame.type is FrameType.DONE:
                return {"content": frame.text}
    finally:
        await frames.aclose()
    return error_response(RelayError(ErrorKind.EMPTY_RESPONSE))


async def _stream_text(first: Frame, frames: AsyncIterator[Frame]) -> AsyncIterator[str]:
    """Re-emit token frames as raw text chunks."""
    try:
        if first.type is FrameType.TOKEN:
            yield first.text
        async for frame in frames:
            if frame.type is FrameType.TOKEN:
                yield frame.text
            elif frame.type is FrameType.ERROR:
                logger.warning(f"Aborting stream: {frame.error.kind.value}: {frame.error.message}")
                raise StreamAborted(frame.error)
            else:
                break
    finally:
        await frames.aclose()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run(host: str | None = None, port: int | None = None, mode: str | None = None):
    """Run the relay server.

    Port is dynamically assigned by the OS unless PORT (or --port) is set.
    Use `relaychat status` or read runtime.json to discover the port.

    Uses socket-first binding so the port written to runtime.json is the
    one actually being served:
    1. Bind socket immediately (reserves port atomically)
    2. Pass bound socket directly to hypercorn
    3. Never release the socket until server shutdown
    """
    global relay
    from .runtime import RuntimeInfo, get_runtime_path, write_runtime_info
    import socket
    import asyncio
    from hypercorn.asyncio import serve as hypercorn_serve
    from hypercorn.config import Config as HypercornConfig

    if mode:
        relay = UpstreamRelay(mode=mode)

    console.print("[bold green]relaychat relay[/bold green]")
    console.print("=" * 40)

    host = host or get_config_value("HOST", "127.0.0.1")
    requested_port = port if port is not None else get_config_value("PORT", 0)

    # Socket-first binding - reserves port atomically with no race condition
    bound_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    bound_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    try:
        bound_socket.bind((host, requested_port))
    except OSError as e:
        console.print(f"[red]Failed to bind to port: {e}[/red]")
        bound_socket.close()
        return

    actual_port = bound_socket.getsockname()[1]
    bound_socket.listen(100)
    bound_socket.setblocking(False)

    # Write runtime info for client discovery
    write_runtime_info(port=actual_port, mode=get_relay().mode)

    console.print(f"[green]Runtime info:[/green] {get_runtime_path()}")
    console.print(f"Starting server at [cyan]http://{host}:{actual_port}[/cyan]")
    console.print("[dim]Use 'relaychat status' to get connection info[/dim]")
    console.print("Press Ctrl+C to stop\n")

    try:
        # Configure hypercorn to use our pre-bound socket
        hconfig = HypercornConfig()
        hconfig.bind = [f"fd://{bound_socket.fileno()}"]
        hconfig.accesslog = "-"  # Log to stdout
        hconfig.errorlog = "-"

        asyncio.run(hypercorn_serve(app, hconfig))

    except KeyboardInterrupt:
        pass
    finally:
        try:
            bound_socket.close()
        except OSError:
            pass
        RuntimeInfo.clear()


if __name__ == "__main__":
    run()
