"""
Parley - WebSocket chat backend
FastAPI app: LLM streaming with tools and cross-session memory
"""

from contextlib import asynccontextmanager
import asyncio
import logging
import time

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from config import get_config
from logging_config import setup_logging
from middleware.rate_limit import RateLimiter
from routers import chat, health
from routers.chat_orchestration import (
    ConnectionManager,
    ContextAugmenter,
    LLMGateway,
    ToolOrchestrator,
)
from routers.chat_prompts import PromptConfig
from routers.chat_streaming import StreamingRelay
from services.database import ChatStore
from services.llm_client import LLMClient
from services.memory_client import MemoryClient
from services.shutdown import ShutdownCoordinator
from tools.registry import build_default_registry

logger = logging.getLogger(__name__)


async def periodic_prune(limiter: RateLimiter, interval_s: float):
    """Drop idle rate limit identities so the table stays bounded."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            limiter.prune()
        except Exception as e:
            logger.error(f"Rate limiter prune error: {e}", exc_info=True)


def build_components(
    app: FastAPI,
    config,
    http_client: httpx.AsyncClient,
    llm=None,
    memory=None,
    store=None,
) -> ShutdownCoordinator:
    """Create the pipeline and hang it on app.state.

    ``llm``, ``memory`` and ``store`` default to the real clients built from config.
    """
    if memory is None:
        memory = MemoryClient(
            config.memory_url,
            timeout_s=config.memory_timeout_s,
            default_limit=config.memory_search_limit,
        )
    if store is None:
        store = ChatStore(url=config.database_url)
    if llm is None:
        llm = LLMClient(config.llm_base_url, api_key=config.llm_api_key, timeout=config.llm_timeout_s)

    registry = build_default_registry(config, memory=memory, http_client=http_client)
    prompt_config = PromptConfig()
    augmenter = ContextAugmenter(
        memory,
        prompt_config=prompt_config,
        tool_names=[tool.name for tool in registry.enabled_tools()],
        timeout_s=config.memory_timeout_s,
        search_limit=config.memory_search_limit,
        max_attachment_bytes=config.max_attachment_bytes,
        max_attachment_text_chars=config.max_attachment_text_chars,
    )
    gateway = LLMGateway.from_config(llm, config)
    orchestrator = ToolOrchestrator.from_config(gateway, registry, config, prompt_config=prompt_config)
    limiter = RateLimiter(
        per_minute=config.rate_limit_per_minute,
        per_hour=config.rate_limit_per_hour,
        max_identities=config.rate_limit_max_identities,
        idle_ttl_s=config.rate_limit_idle_ttl_s,
    )
    relay = StreamingRelay(queue_size=config.relay_queue_size)
    connections = ConnectionManager(
        limiter,
        augmenter,
        orchestrator,
        relay,
        config,
        store=store,
        memory=memory,
    )

    coordinator = ShutdownCoordinator(connections, grace_s=config.shutdown_grace_s)
    coordinator.register_resource("Chat store", store.disconnect)
    coordinator.register_resource("Semantic memory client", memory.close)
    coordinator.register_resource("LLM client", llm.close)
    coordinator.register_resource("HTTP client", http_client.aclose)

    app.state.config = config
    app.state.store = store
    app.state.memory = memory
    app.state.registry = registry
    app.state.limiter = limiter
    app.state.connections = connections
    app.state.shutdown = coordinator
    app.state.started_at = time.time()
    return coordinator


class GracefulServer(uvicorn.Server):
    """uvicorn server that drains chat turns on the exit signal.

    uvicorn closes every open connection (WebSockets get 1012) before the
    lifespan shutdown runs, so the drain has to start here. The lifespan
    call that follows is then a no-op.
    """

    def __init__(self, config: uvicorn.Config, chat_app: FastAPI):
        super().__init__(config)
        self.chat_app = chat_app

    async def shutdown(self, sockets=None) -> None:
        coordinator = getattr(self.chat_app.state, "shutdown", None)
        if coordinator is not None:
            await coordinator.shutdown("exit signal")
        await super().shutdown(sockets=sockets)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    config = get_config()
    setup_logging(config.log_level)

    http_client = httpx.AsyncClient(
        timeout=config.searxng_timeout_s,
        headers={"User-Agent": "Parley/1.0"},
        follow_redirects=True,
    )
    coordinator = build_components(app, config, http_client)

    if await app.state.store.connect():
        logger.info("Chat store ready")
    else:
        logger.warning("Chat store unavailable, running without persistence")

    prune_task = asyncio.create_task(periodic_prune(app.state.limiter, config.rate_limit_sweep_interval_s))
    logger.info(
        f"Parley ready: model={config.model_chat}, "
        f"rate limits {config.rate_limit_per_minute}/min {config.rate_limit_per_hour}/hour"
    )
    yield

    # Shutdown
    prune_task.cancel()
    await coordinator.shutdown("lifespan shutdown")
    logger.info("Parley signing off")


app = FastAPI(
    title="Parley",
    description="Streaming chat with tools and cross-session memory",
    version="1.0.0",
    lifespan=lifespan,
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all HTTP responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_config().cors_origins),
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

# Chat router is mounted WITHOUT /api prefix so WebSocket is at /ws/chat
app.include_router(chat.router, tags=["chat"])
app.include_router(health.router, tags=["health"])


if __name__ == "__main__":
    runtime = get_config()
    server = GracefulServer(
        uvicorn.Config(
            app,
            host="0.0.0.0",
            port=8000,
            ws_max_size=1048576,  # 1MB WS frame limit
            timeout_graceful_shutdown=int(runtime.shutdown_grace_s) + 5,
        ),
        app,
    )
    server.run()
