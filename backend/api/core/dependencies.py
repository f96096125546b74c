"""Dependency injection utilities for FastAPI"""

import logging
from datetime import timedelta

import asyncpg
from fastapi import Cookie, Depends, HTTPException

from api.core.config import get_settings
from api.core.database import get_database_manager
from api.services import (
    AuthService,
    NightbotAPIClient,
    NightbotCredentialService,
    NightbotSnapshotService,
)
from shared.errors import AuthorizationDenied, AuthRequired
from shared.repositories.nightbot import NightbotSnapshotRepository, NightbotTokenRepository

logger = logging.getLogger(__name__)


# ============================================
# Service Dependencies
# ============================================


def get_auth_service() -> AuthService:
    """Get AuthService instance (dependency injection)"""
    settings = get_settings()
    return AuthService(
        secret_key=settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        admin_emails=settings.admin_email_set,
    )


_nightbot_api: NightbotAPIClient | None = None
_credential_service: NightbotCredentialService | None = None


def get_nightbot_api() -> NightbotAPIClient:
    """Get shared NightbotAPIClient singleton (connection reuse)."""
    global _nightbot_api
    if _nightbot_api is None:
        settings = get_settings()
        _nightbot_api = NightbotAPIClient(
            client_id=settings.nightbot_client_id,
            client_secret=settings.nightbot_client_secret,
            redirect_uri=settings.nightbot_redirect_uri,
        )
    return _nightbot_api


async def close_nightbot_api() -> None:
    """Close the shared NightbotAPIClient. Call on app shutdown."""
    global _nightbot_api, _credential_service
    _credential_service = None
    if _nightbot_api is not None:
        await _nightbot_api.close()
        _nightbot_api = None


def get_db_pool() -> asyncpg.Pool:
    db_manager = get_database_manager()
    if not db_manager.is_connected:
        raise HTTPException(status_code=503, detail="Database not ready")
    return db_manager.pool


def get_credential_service(
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> NightbotCredentialService:
    """Process-wide credential service; its refresh locks must be shared."""
    global _credential_service
    if _credential_service is None or _credential_service.token_repo.pool is not pool:
        settings = get_settings()
        _credential_service = NightbotCredentialService(
            NightbotTokenRepository(pool),
            get_nightbot_api(),
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
        )
    return _credential_service


def get_snapshot_service(
    pool: asyncpg.Pool = Depends(get_db_pool),
    credentials: NightbotCredentialService = Depends(get_credential_service),
) -> NightbotSnapshotService:
    return NightbotSnapshotService(
        NightbotSnapshotRepository(pool),
        credentials,
        get_nightbot_api(),
        retention_days=get_settings().snapshot_retention_days,
    )


# ============================================
# Authentication Dependencies
# ============================================


async def get_operator_email(auth_token: str | None = Cookie(None)) -> str:
    """Return the authenticated admin's e-mail (401 / 403 otherwise)"""
    try:
        return get_auth_service().operator_email(auth_token)
    except AuthRequired as e:
        raise HTTPException(status_code=401, detail=str(e)) from None
    except AuthorizationDenied as e:
        raise HTTPException(status_code=403, detail=str(e)) from None
