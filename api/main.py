"""
FastAPI backend for Mailboard.
Provides the unified mail REST API over Outlook, Gmail and IMAP accounts.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / '.env'
if env_path.exists():
    load_dotenv(env_path, override=True)

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailboard.config import MailConfig, load_config
from mailboard.crypto import TokenVault
from mailboard.errors import MailError, RateLimited
from mailboard.user_auth import UserAuth

from api.auth_middleware import AuthMiddleware
from api.mail.cache import MessageCache
from api.mail.oauth import OAuthClient
from api.mail.providers.base import FolderType, ProviderType
from api.mail.providers.gmail import GmailProvider
from api.mail.providers.imap import IMAPProvider
from api.mail.providers.outlook import OutlookProvider
from api.mail.rate_limiter import RateLimiter
from api.mail.service import UnifiedMailService
from api.mail.storage import MailStorage
from api.mail.tokens import TokenManager
from api.mail_api import router as mail_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def build_mail_service(config: MailConfig, storage: MailStorage, token_manager: TokenManager) -> UnifiedMailService:
    """Wire adapters, cache and rate limiter from configuration."""
    preview_length = config.mail.preview_length
    imap = config.imap

    providers = {
        ProviderType.OUTLOOK: OutlookProvider(
            token_manager,
            client_id=config.outlook.client_id,
            client_secret=config.outlook.client_secret,
            tenant=config.outlook.tenant,
            timeout=config.mail.request_timeout,
            preview_length=preview_length
        ),
        ProviderType.GMAIL: GmailProvider(
            token_manager,
            client_id=config.gmail.client_id,
            client_secret=config.gmail.client_secret,
            preview_length=preview_length
        ),
        ProviderType.IMAP: IMAPProvider(
            token_manager,
            account_lookup=storage.lookup_account,
            host=imap.host,
            port=imap.port,
            use_ssl=imap.use_ssl,
            folders={
                FolderType.JUNK: imap.junk_folder,
                FolderType.TRASH: imap.trash_folder,
                FolderType.SENT: imap.sent_folder,
                FolderType.DRAFTS: imap.drafts_folder,
                FolderType.ARCHIVE: imap.archive_folder,
            },
            preview_length=preview_length
        ),
    }

    return UnifiedMailService(
        storage=storage,
        token_manager=token_manager,
        providers=providers,
        cache=MessageCache(
            messages_ttl=config.cache.messages_ttl,
            summary_ttl=config.cache.summary_ttl
        ),
        rate_limiter=RateLimiter(
            max_requests=config.rate_limit.max_requests,
            window_seconds=config.rate_limit.window_seconds,
            max_entries=config.rate_limit.max_entries
        ),
        max_results_limit=config.mail.max_results_limit,
        default_sync_frequency=config.mail.default_sync_frequency_minutes
    )


def create_app(
    config: Optional[MailConfig] = None,
    service: Optional[UnifiedMailService] = None,
    user_auth: Optional[UserAuth] = None,
    oauth_client: Optional[OAuthClient] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings (loaded from config.ini and the environment if omitted)
        service: Pre-built mail service (tests inject one with fake adapters)
        user_auth: Session store used by the auth middleware
        oauth_client: OAuth code exchanger for the callback route
    """
    config = config or load_config()
    user_auth = user_auth or UserAuth(
        config.server.users_db_path,
        session_expiry_hours=config.server.session_expiry_hours
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting Mailboard API...")

        if app.state.mail_service is None:
            storage = MailStorage(config.server.database_path)
            token_manager = TokenManager(storage, TokenVault(config.encryption_key))
            app.state.mail_service = build_mail_service(config, storage, token_manager)
            logger.info("Mail service initialized")

        if not config.encryption_key:
            logger.warning("MAIL_ENCRYPTION_KEY is not set; stored credentials cannot be read")

        yield

        logger.info("Shutting down Mailboard API...")
        app.state.mail_service.cache.clear()

    app = FastAPI(
        title="Mailboard API",
        description="Unified mail API for Outlook, Gmail and IMAP accounts",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.mail_service = service
    app.state.oauth_client = oauth_client or OAuthClient(
        config.outlook, config.gmail, timeout=config.mail.request_timeout
    )

    app.add_middleware(AuthMiddleware, user_auth=user_auth)

    # CORS middleware for frontend (outermost, so preflights skip auth)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MailError)
    async def mail_error_handler(request: Request, exc: MailError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            headers['Retry-After'] = str(max(1, int(exc.retry_after + 0.999)))
        return JSONResponse(
            status_code=exc.status_code,
            content={'error': exc.message, 'code': exc.code},
            headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={'error': 'Missing or invalid parameters', 'detail': jsonable_encoder(exc.errors())}
        )

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    app.include_router(mail_router)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = load_config()
    configure_logging(settings.server.log_level)
    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)
