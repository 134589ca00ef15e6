import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from chatrelay.api.routes import chat, models
from chatrelay.core.config import Settings, settings as app_settings
from chatrelay.core.errors import (
    ChatRequestError,
    UnsupportedProviderError,
    UpstreamUnavailableError,
)
from chatrelay.db.database import connect_db, database, disconnect_db
from chatrelay.providers.local_completion import LocalCompletionAdapter
from chatrelay.providers.openai_compatible import OpenAICompatibleAdapter
from chatrelay.schemas.chat import ProviderKind
from chatrelay.services.attachment_extractor import AttachmentExtractor
from chatrelay.services.chat_orchestrator import ChatOrchestrator
from chatrelay.services.conversation_store import ConversationStore
from chatrelay.services.credential_vault import CredentialVault
from chatrelay.services.provider_config import ProviderConfigResolver
from chatrelay.services.web_search import SearxWebSearch

logging.basicConfig(
    level=app_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chat Relay API",
    version="1.0.0",
    description="Streaming chat backend in front of local and OpenAI-compatible models"
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(chat.router, prefix="/api")
app.include_router(models.router, prefix="/api")


def build_orchestrator(config: Settings, store: ConversationStore) -> ChatOrchestrator:
    """Wire the orchestrator with its collaborators."""
    web_search = None
    if config.web_search_enabled:
        web_search = SearxWebSearch(
            config.web_search_url,
            max_results=config.web_search_max_results,
            retries=config.web_search_retries,
            backoff=config.web_search_backoff,
        )

    return ChatOrchestrator(
        store=store,
        resolver=ProviderConfigResolver(
            store.db, config.ollama_base_url, config.default_context_window
        ),
        extractor=AttachmentExtractor(),
        vault=CredentialVault(config.encryption_key or None),
        adapters={
            ProviderKind.LOCAL_COMPLETION: LocalCompletionAdapter(
                connect_timeout=config.upstream_connect_timeout
            ),
            ProviderKind.OPENAI_COMPATIBLE: OpenAICompatibleAdapter(
                connect_timeout=config.upstream_connect_timeout,
                default_max_tokens=config.openai_default_max_tokens,
            ),
        },
        web_search=web_search,
    )


# ── Error bodies ──────────────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request"})


@app.exception_handler(ChatRequestError)
async def chat_request_error_handler(request: Request, exc: ChatRequestError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(UnsupportedProviderError)
async def unsupported_provider_handler(request: Request, exc: UnsupportedProviderError):
    logger.error("Model configured with unsupported provider %r", exc.provider_kind)
    return JSONResponse(status_code=500, content={"error": "Model provider is not supported"})


@app.exception_handler(UpstreamUnavailableError)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailableError):
    return JSONResponse(status_code=500, content={"error": "Failed to connect to Model Provider"})


@app.get("/")
async def root():
    return {
        "name": "Chat Relay API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.on_event("startup")
async def startup():
    """Connect to database and wire services on startup."""
    await connect_db()
    store = ConversationStore(database)
    app.state.store = store
    app.state.orchestrator = build_orchestrator(app_settings, store)


@app.on_event("shutdown")
async def shutdown():
    """Let running exchanges persist, then disconnect from database."""
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.wait_idle()
    await disconnect_db()


def run():
    """Serve the app with uvicorn on the configured port."""
    uvicorn.run(app, host="0.0.0.0", port=app_settings.backend_port)


if __name__ == "__main__":
    run()
