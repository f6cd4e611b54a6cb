"""agentmix — FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentmix.api.routes import router as api_router
from agentmix.logging_config import setup_logging
from agentmix.settings import Settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: build the default MOA from the environment. Shutdown: close backend clients."""
    settings = Settings.from_env()
    setup_logging(log_level=settings.log_level, log_file=settings.log_file)
    logger.info("Starting agentmix...")

    app.state.orchestrator = None
    try:
        from agentmix.agents.llm_providers import LLMProviderFactory
        from agentmix.agents.orchestrator import MOA

        app.state.orchestrator = MOA(
            settings.build_moa_config(),
            provider_factory=LLMProviderFactory(api_keys=settings.api_keys),
        )
        logger.info("agentmix ready — MOA initialised with %d agents",
                    len(app.state.orchestrator.agents))
    except Exception as exc:
        logger.warning("MOA init failed (missing API keys?): %s — server running in limited mode", exc)
    yield

    logger.info("Shutting down agentmix...")
    if app.state.orchestrator is not None:
        await app.state.orchestrator.close()
    logger.info("agentmix stopped.")


app = FastAPI(
    title="agentmix",
    description="Mixture-of-Agents orchestration over multiple LLM backends",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "ok",
        "service": "agentmix",
        "ai_available": orchestrator is not None,
        "agents": [agent.name for agent in orchestrator.agents] if orchestrator else [],
    }
