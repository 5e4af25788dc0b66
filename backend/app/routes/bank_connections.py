"""
TrueLayer Bank Connection Routes

Thin HTTP layer over BankSyncService:
- Connecting a bank (authorization URL)
- OAuth callback (token exchange, then background sync)
- Quick / full sync
- Status, balances, disconnect and data reset
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import get_settings
from backend.database import get_db
from backend.app import schemas
from backend.app.auth import get_current_user_id
from backend.app.bank_integration.background import run_post_link_sync
from backend.app.bank_integration.errors import (
    InvalidStateError,
    MissingAuthorizationCode,
    ReconnectRequiredError,
)
from backend.app.bank_integration.service import BankSyncService, SyncResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/banks/truelayer", tags=["bank-connections"])


def get_bank_sync_service(db: AsyncSession = Depends(get_db)) -> BankSyncService:
    return BankSyncService(db)


def get_post_link_runner():
    return run_post_link_sync


def _not_configured() -> Optional[JSONResponse]:
    settings = get_settings()
    if settings.provider_configured:
        return None
    return JSONResponse(
        status_code=503,
        content={
            "error": "truelayer_not_configured",
            "message": "TrueLayer integration is not configured. "
                       "Set TRUELAYER_CLIENT_ID and TRUELAYER_CLIENT_SECRET.",
        }
    )


def _frontend_redirect(**params) -> RedirectResponse:
    settings = get_settings()
    return RedirectResponse(url=f"{settings.frontend_redirect_url}?{urlencode(params)}")


def _sync_response(result: SyncResult) -> schemas.SyncResponse:
    return schemas.SyncResponse(
        mode=result.mode,
        accounts=result.accounts,
        inserted=result.inserted,
        skipped=result.skipped,
        date_range=schemas.DateRange(from_date=result.date_from, to_date=result.date_to),
        failed_accounts=result.failed_accounts
    )


@router.get("/connect", response_model=schemas.ConnectResponse)
async def connect_bank(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """
    Return the TrueLayer authorization URL for the user to connect their bank.

    Response:
        {"url": "https://auth.truelayer.com/?response_type=code&..."}
    """
    not_configured = _not_configured()
    if not_configured:
        return not_configured

    url = await service.start_oauth_flow(user_id)
    return schemas.ConnectResponse(url=url)


@router.get("/callback")
async def oauth_callback(
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None, description="Authorization code"),
    state: Optional[str] = Query(None, description="CSRF state token"),
    error: Optional[str] = Query(None, description="Provider-side OAuth error"),
    service: BankSyncService = Depends(get_bank_sync_service),
    post_link_sync=Depends(get_post_link_runner)
):
    """
    OAuth callback endpoint.

    Flow:
    1) Validate (and consume) the CSRF state
    2) Exchange code for tokens and store them
    3) Redirect back to the frontend immediately
    4) Quick sync then full sync run in the background
    """
    not_configured = _not_configured()
    if not_configured:
        return not_configured

    if error:
        logger.error(f"TrueLayer OAuth error: {error}")
        return _frontend_redirect(bankError=error)

    try:
        user_id = await service.handle_oauth_callback(state=state, code=code)
    except InvalidStateError as e:
        return _frontend_redirect(bankError=e.reason)
    except MissingAuthorizationCode as e:
        return _frontend_redirect(bankError=e.reason)
    except Exception:
        logger.exception("Error in TrueLayer callback")
        return _frontend_redirect(bankError="token_exchange_failed")

    background_tasks.add_task(post_link_sync, user_id)
    return _frontend_redirect(bankConnected=1, syncing=1)


@router.post("/sync", response_model=schemas.SyncResponse)
async def sync_bank(
    sync_params: Optional[schemas.SyncParams] = None,
    mode: str = Query("full"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """
    Sync transactions from the connected bank.

    Query:
        ?mode=quick   balances + latest transactions
        ?limit=30     per-account limit for quick mode
    Body (full mode):
        {"fromDate": "2024-01-01", "toDate": "2024-01-31"}
    """
    not_configured = _not_configured()
    if not_configured:
        return not_configured

    settings = get_settings()
    try:
        if mode.lower() == "quick":
            sync = service.quick_sync_latest(user_id, limit=limit)
        else:
            sync = service.sync_accounts_and_transactions(
                user_id,
                from_date=sync_params.from_date if sync_params else None,
                to_date=sync_params.to_date if sync_params else None
            )
        result = await asyncio.wait_for(sync, timeout=settings.sync_timeout_seconds)

    except ReconnectRequiredError as e:
        return JSONResponse(
            status_code=401,
            content=schemas.SyncErrorResponse(
                error="token_expired", message=e.message, requires_reconnect=True
            ).model_dump(by_alias=True)
        )
    except asyncio.TimeoutError:
        logger.error(f"Sync for user {user_id} timed out after {settings.sync_timeout_seconds}s")
        return JSONResponse(
            status_code=500,
            content={"error": "sync_failed", "message": "Sync timed out"}
        )
    except Exception as e:
        logger.exception(f"Error syncing transactions for user {user_id}")
        return JSONResponse(
            status_code=500,
            content={"error": "sync_failed", "message": str(e)}
        )

    return _sync_response(result)


@router.get("/status", response_model=schemas.ConnectionStatus)
async def connection_status(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    status = await service.get_connection_status(user_id)
    if status is None:
        return schemas.ConnectionStatus(connected=False)
    return schemas.ConnectionStatus(**status)


@router.get("/balance", response_model=schemas.BalanceResponse)
async def live_balance(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """Balance fetched live from the bank, falling back to stored balances."""
    return schemas.BalanceResponse(**await service.get_live_balance(user_id))


@router.get("/balance-cached", response_model=schemas.BalanceResponse)
async def cached_balance(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """Last stored balance, even if the bank connection has expired."""
    return schemas.BalanceResponse(**await service.get_cached_balance(user_id))


@router.delete("/disconnect")
async def disconnect_bank(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    try:
        await service.disconnect_bank(user_id)
    except Exception as e:
        logger.exception(f"Error disconnecting bank for user {user_id}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": str(e)})

    return {"ok": True}


@router.delete("/data")
async def reset_bank_data(
    user_id: str = Depends(get_current_user_id),
    service: BankSyncService = Depends(get_bank_sync_service)
):
    """Remove the bank link, its accounts and every bank-sourced transaction."""
    try:
        await service.reset_bank_data(user_id)
    except Exception as e:
        logger.exception(f"Error resetting bank data for user {user_id}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": str(e)})

    return {"ok": True}
