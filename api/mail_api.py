"""
Unified Mail API

REST endpoints over the unified mail service:
- Message listing, search and bulk actions for a linked account
- Cross-account unread summary
- Account linking, credentials and the OAuth callback

Request and response bodies use camelCase keys.
"""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Query, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mailboard.errors import MailError

from api.auth_middleware import get_current_user
from api.mail.oauth import decode_state
from api.mail.providers.base import BulkActionRequest, ProviderType, SearchRequest
from api.mail.service import UnifiedMailService
from api.mail.storage import DuplicateAccountError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mail", tags=["Mail"])

MISSING_PARAMETERS = "Missing required parameters"


# ============================================================================
# MODELS
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchBody(CamelModel):
    account_id: Optional[str] = None
    query: Optional[str] = None
    folder: Optional[str] = None
    max_results: Optional[int] = None


class BulkActionBody(CamelModel):
    account_id: Optional[str] = None
    message_ids: Optional[List[str]] = None
    action: Optional[str] = None
    folder: Optional[str] = None


class AccountCreate(CamelModel):
    provider: ProviderType
    account_name: str = Field(..., min_length=1)
    email_address: str = Field(..., min_length=3)
    sync_frequency_minutes: Optional[int] = Field(None, ge=1)


class AccountUpdate(CamelModel):
    account_name: Optional[str] = None
    email_address: Optional[str] = None
    is_enabled: Optional[bool] = None
    sync_frequency_minutes: Optional[int] = Field(None, ge=1)


class CredentialsBody(CamelModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


# ============================================================================
# HELPERS
# ============================================================================

def get_mail_service(request: Request) -> UnifiedMailService:
    service = getattr(request.app.state, 'mail_service', None)
    if service is None:
        raise HTTPException(status_code=503, detail="Mail service not initialized")
    return service


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip('/')


# ============================================================================
# MESSAGES
# ============================================================================

@router.get("/messages")
async def get_messages(
    request: Request,
    account_id: Optional[str] = Query(None, alias="accountId"),
    folder: str = Query("inbox"),
    max_results: int = Query(50, alias="maxResults")
):
    """List messages in a folder. Served from cache when fresh."""
    if not account_id:
        raise HTTPException(status_code=400, detail=MISSING_PARAMETERS)

    service = get_mail_service(request)
    result = await service.get_messages(get_current_user(request), account_id, folder, max_results)
    return result.to_dict()


@router.post("/search")
async def search_messages(request: Request, body: SearchBody):
    """Search messages in one account."""
    if not body.account_id or not body.query:
        raise HTTPException(status_code=400, detail=MISSING_PARAMETERS)

    service = get_mail_service(request)
    result = await service.search_messages(
        get_current_user(request),
        SearchRequest(
            account_id=body.account_id,
            query=body.query,
            folder=body.folder,
            max_results=body.max_results
        )
    )
    return {
        'messages': [m.to_dict() for m in result.messages],
        'totalCount': result.total_count,
    }


@router.post("/bulk-action")
async def bulk_action(request: Request, body: BulkActionBody):
    """Apply markRead, markUnread, moveToJunk or delete to a set of messages."""
    if not body.account_id or not body.message_ids or not body.action:
        raise HTTPException(status_code=400, detail=MISSING_PARAMETERS)

    service = get_mail_service(request)
    result = await service.perform_bulk_action(
        get_current_user(request),
        BulkActionRequest(
            account_id=body.account_id,
            message_ids=body.message_ids,
            action=body.action,
            folder=body.folder
        )
    )
    return result.to_dict()


@router.get("/summary")
async def get_summary(request: Request, refresh: bool = False):
    """Unread counts across all enabled accounts."""
    user = get_current_user(request)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")

    service = get_mail_service(request)
    summary = await service.get_summary(user['id'], refresh=refresh)
    return summary.to_dict()


@router.get("/folders")
async def list_folders(request: Request, account_id: Optional[str] = Query(None, alias="accountId")):
    if not account_id:
        raise HTTPException(status_code=400, detail=MISSING_PARAMETERS)

    service = get_mail_service(request)
    folders = await service.list_folders(get_current_user(request), account_id)
    return {'folders': [f.to_dict() for f in folders]}


@router.delete("/empty-folder")
async def empty_folder(
    request: Request,
    account_id: Optional[str] = Query(None, alias="accountId"),
    folder: Optional[str] = Query(None)
):
    """Empty the junk or trash folder."""
    if not account_id or not folder:
        raise HTTPException(status_code=400, detail=MISSING_PARAMETERS)

    service = get_mail_service(request)
    try:
        deleted = await service.empty_folder(get_current_user(request), account_id, folder)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'success': True, 'deletedCount': deleted}


# ============================================================================
# ACCOUNTS
# ============================================================================

@router.get("/accounts")
async def list_accounts(request: Request):
    service = get_mail_service(request)
    accounts = service.list_accounts(get_current_user(request))
    return {'accounts': [a.to_dict() for a in accounts]}


@router.post("/accounts", status_code=201)
async def create_account(request: Request, body: AccountCreate):
    """
    Link a new account.

    OAuth providers get an authorizationUrl to send the user to; IMAP
    accounts need their password posted to /accounts/{id}/credentials.
    """
    service = get_mail_service(request)
    try:
        account = service.create_account(
            get_current_user(request),
            provider=body.provider,
            account_name=body.account_name,
            email_address=body.email_address,
            sync_frequency_minutes=body.sync_frequency_minutes
        )
    except DuplicateAccountError as e:
        raise HTTPException(status_code=409, detail=str(e))

    result = {'account': account.to_dict()}
    oauth = getattr(request.app.state, 'oauth_client', None)
    if oauth is not None and account.provider != ProviderType.IMAP:
        try:
            result['authorizationUrl'] = oauth.authorization_url(account.provider, account.id, _base_url(request))
        except MailError as e:
            logger.warning(f"No authorization URL for {account.provider.value}: {e.message}")
    return result


@router.put("/accounts/{account_id}")
async def update_account(request: Request, account_id: str, body: AccountUpdate):
    service = get_mail_service(request)
    try:
        account = service.update_account(
            get_current_user(request),
            account_id,
            **body.model_dump(exclude_none=True)
        )
    except DuplicateAccountError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {'account': account.to_dict()}


@router.delete("/accounts/{account_id}")
async def delete_account(request: Request, account_id: str):
    service = get_mail_service(request)
    deleted = service.delete_account(get_current_user(request), account_id)
    return {'success': deleted}


@router.post("/accounts/{account_id}/credentials")
async def store_credentials(request: Request, account_id: str, body: CredentialsBody):
    """Store credentials directly (IMAP password, or tokens obtained elsewhere)."""
    service = get_mail_service(request)
    service.store_credentials(
        get_current_user(request),
        account_id,
        body.access_token,
        body.refresh_token,
        body.expires_at
    )
    return {'success': True}


# ============================================================================
# OAUTH
# ============================================================================

def _settings_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"/mail/settings?{query}", status_code=307)


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    provider: Optional[str] = None
):
    """Finish linking an Outlook or Gmail account. Always answers with a redirect."""
    user = get_current_user(request)
    if not user:
        return RedirectResponse(url="/login?error=not_authenticated", status_code=307)

    if not code or not state or not provider:
        return _settings_redirect("error=missing_parameters")

    if provider not in (ProviderType.OUTLOOK.value, ProviderType.GMAIL.value):
        return _settings_redirect("error=invalid_provider")

    try:
        account_id = decode_state(state)
    except ValueError:
        return _settings_redirect("error=invalid_state")

    service = get_mail_service(request)
    account = service.storage.lookup_account(account_id)
    if account is None or account.user_id != user['id']:
        return _settings_redirect("error=account_not_found")

    oauth = getattr(request.app.state, 'oauth_client', None)
    if oauth is None:
        return _settings_redirect("error=oauth_not_configured")

    try:
        tokens = await oauth.exchange_code(ProviderType(provider), code, _base_url(request))
        service.store_credentials(user, account_id, tokens.access_token, tokens.refresh_token, tokens.expires_at)
    except MailError as e:
        logger.error(f"OAuth callback failed for account {account_id}: {e.message}")
        return _settings_redirect(f"error={e.code}")

    logger.info(f"Linked {provider} account {account_id}")
    return _settings_redirect("success=account_connected")
