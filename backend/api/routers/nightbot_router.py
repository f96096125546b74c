"""Nightbot backup / snapshot / restore API routes"""

import logging
from datetime import datetime
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel, Field

from api.core.config import get_settings
from api.core.dependencies import (
    get_credential_service,
    get_nightbot_api,
    get_operator_email,
    get_snapshot_service,
)
from api.services import (
    CommandDiff,
    NightbotAPIClient,
    NightbotCredentialService,
    NightbotSnapshotService,
)
from shared.errors import (
    NightbotError,
    ParseError,
    RemoteAPIError,
    SnapshotNotFound,
    TokenMissing,
    TokenRefreshFailed,
)
from shared.models.nightbot import CommandSnapshot, NightbotBackup

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/nightbot", tags=["nightbot"])


# ============================================
# Response / Request Models
# ============================================


class OAuthURLResponse(BaseModel):
    oauth_url: str
    redirect_uri: str


class ChannelResponse(BaseModel):
    name: str
    display_name: str
    expires_at: datetime


class ManualTokenRequest(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_in: int = Field(default=2592000, gt=0, description="Seconds until expiry")


class SnapshotCreate(BaseModel):
    note: str | None = Field(default=None, max_length=500)


class SnapshotResponse(BaseModel):
    id: int
    channel_name: str
    snapshot_at: datetime
    command_count: int
    created_by: str
    note: str | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    last_diff_added: int | None = None
    last_diff_removed: int | None = None
    last_diff_modified: int | None = None
    last_diff_at: datetime | None = None


class CommandDiffItem(BaseModel):
    name: str
    status: str
    unified_diff: str


class DiffResponse(BaseModel):
    snapshot: SnapshotResponse
    snapshot_count: int
    current_count: int
    added: int
    removed: int
    modified: int
    unchanged: int
    has_changes: bool
    diffs: list[CommandDiffItem]


class RestoreResponse(BaseModel):
    created: int
    updated: int
    deleted: int
    errors: int
    error_messages: list[str]
    message: str


class ImportResponse(BaseModel):
    created: int
    skipped: int
    errors: int
    error_messages: list[str]
    message: str


class MessageResponse(BaseModel):
    message: str


# ============================================
# Helpers
# ============================================


def _snapshot_response(snapshot: CommandSnapshot) -> SnapshotResponse:
    return SnapshotResponse(
        id=snapshot.id,
        channel_name=snapshot.channel_name,
        snapshot_at=snapshot.snapshot_at,
        command_count=snapshot.command_count,
        created_by=snapshot.created_by,
        note=snapshot.note,
        deleted_at=snapshot.deleted_at,
        deleted_by=snapshot.deleted_by,
        last_diff_added=snapshot.last_diff_added,
        last_diff_removed=snapshot.last_diff_removed,
        last_diff_modified=snapshot.last_diff_modified,
        last_diff_at=snapshot.last_diff_at,
    )


def _diff_item(diff: CommandDiff) -> CommandDiffItem:
    return CommandDiffItem(name=diff.name, status=diff.status.value, unified_diff=diff.unified_diff)


def _http_error(e: NightbotError) -> HTTPException:
    """Map a Nightbot feature error onto an HTTP status"""
    if isinstance(e, TokenMissing):
        return HTTPException(status_code=404, detail=f"Not connected to channel: {e.channel_name}")
    if isinstance(e, TokenRefreshFailed):
        return HTTPException(
            status_code=409,
            detail=f"Nightbot connection for {e.channel_name} expired, reconnect required",
        )
    if isinstance(e, SnapshotNotFound):
        return HTTPException(status_code=404, detail="Snapshot not found")
    if isinstance(e, ParseError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, RemoteAPIError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _json_download(body: str, filename: str) -> Response:
    return Response(
        content=body,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================
# Connection Endpoints
# ============================================


@router.get("/connect", response_model=OAuthURLResponse)
async def get_connect_url(
    operator: str = Depends(get_operator_email),
    nightbot_api: NightbotAPIClient = Depends(get_nightbot_api),
) -> OAuthURLResponse:
    """Get the Nightbot OAuth authorization URL."""
    return OAuthURLResponse(
        oauth_url=nightbot_api.generate_oauth_url(),
        redirect_uri=nightbot_api.redirect_uri,
    )


@router.get("/callback")
async def nightbot_oauth_callback(
    code: str | None = None,
    error: str | None = None,
    operator: str = Depends(get_operator_email),
    credentials: NightbotCredentialService = Depends(get_credential_service),
) -> RedirectResponse:
    """Handle the Nightbot OAuth callback and store the channel's tokens."""
    settings = get_settings()
    target = f"{settings.frontend_url.rstrip('/')}/admin/nightbot"

    if not code:
        msg = error or "No authorization code received"
        return RedirectResponse(url=f"{target}?error={quote(msg)}", status_code=303)

    try:
        credential = await credentials.connect_with_code(operator, code)
    except NightbotError as e:
        logger.error(f"Nightbot connect failed for {operator}: {e}")
        return RedirectResponse(
            url=f"{target}?error={quote('Failed to connect: ' + str(e))}", status_code=303
        )

    msg = f"Connected to Nightbot channel {credential.display_name}!"
    return RedirectResponse(url=f"{target}?success={quote(msg)}", status_code=303)


@router.post("/tokens", response_model=ChannelResponse, status_code=201)
async def add_manual_token(
    body: ManualTokenRequest,
    operator: str = Depends(get_operator_email),
    credentials: NightbotCredentialService = Depends(get_credential_service),
) -> ChannelResponse:
    """Store a manually obtained token pair (validated against Nightbot first)."""
    try:
        credential = await credentials.connect_manual(
            operator, body.access_token, body.refresh_token, body.expires_in
        )
    except RemoteAPIError as e:
        logger.warning(f"Manual Nightbot token rejected for {operator}: {e}")
        raise HTTPException(status_code=400, detail="Token rejected by Nightbot") from None
    return ChannelResponse(
        name=credential.channel_name,
        display_name=credential.display_name,
        expires_at=credential.expires_at,
    )


@router.get("/channels", response_model=list[ChannelResponse])
async def list_channels(
    operator: str = Depends(get_operator_email),
    credentials: NightbotCredentialService = Depends(get_credential_service),
) -> list[ChannelResponse]:
    """List the operator's connected Nightbot channels."""
    try:
        tokens = await credentials.list_channels(operator)
    except Exception as e:
        logger.exception(f"Failed to list Nightbot channels: {e}")
        raise HTTPException(status_code=500, detail="Failed to list channels") from None
    return [
        ChannelResponse(name=t.channel_name, display_name=t.display_name, expires_at=t.expires_at)
        for t in tokens
    ]


@router.delete("/channels/{channel_name}", response_model=MessageResponse)
async def disconnect_channel(
    channel_name: str,
    operator: str = Depends(get_operator_email),
    credentials: NightbotCredentialService = Depends(get_credential_service),
) -> MessageResponse:
    """Remove the stored token for a channel."""
    if not await credentials.delete(operator, channel_name):
        raise HTTPException(status_code=404, detail=f"Not connected to channel: {channel_name}")
    return MessageResponse(message=f"Disconnected {channel_name}")


# ============================================
# Backup Endpoints
# ============================================


@router.get("/channels/{channel_name}/export")
async def export_commands(
    channel_name: str,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> Response:
    """Download the channel's live commands as a backup file."""
    try:
        backup = await service.export_backup(operator, channel_name)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    filename = f"nightbot-commands-{backup.channel}-{backup.exported_at[:10]}.json"
    return _json_download(backup.to_json(), filename)


@router.post("/channels/{channel_name}/import", response_model=ImportResponse)
async def import_commands(
    channel_name: str,
    request: Request,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> ImportResponse:
    """Create commands from an uploaded backup file, skipping existing names."""
    try:
        backup = NightbotBackup.parse(await request.body())
        result = await service.import_backup(operator, channel_name, backup)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return ImportResponse(
        created=result.created,
        skipped=result.skipped,
        errors=result.errors,
        error_messages=result.error_messages,
        message=result.summary(),
    )


# ============================================
# Snapshot Endpoints
# ============================================


@router.post(
    "/channels/{channel_name}/snapshots", response_model=SnapshotResponse, status_code=201
)
async def save_snapshot(
    channel_name: str,
    body: SnapshotCreate,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> SnapshotResponse:
    """Capture the channel's current commands."""
    try:
        snapshot = await service.save_snapshot(operator, channel_name, body.note)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return _snapshot_response(snapshot)


@router.get("/channels/{channel_name}/snapshots", response_model=list[SnapshotResponse])
async def list_snapshots(
    channel_name: str,
    include_deleted: bool = False,
    limit: int | None = Query(default=None, ge=1, le=100),
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> list[SnapshotResponse]:
    """List snapshots newest first (soft-deleted ones only on request)."""
    try:
        snapshots = await service.list_snapshots(
            channel_name,
            include_deleted=include_deleted,
            limit=limit or get_settings().snapshot_list_limit,
        )
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return [_snapshot_response(s) for s in snapshots]


@router.get("/channels/{channel_name}/snapshots/trash", response_model=list[SnapshotResponse])
async def list_trash(
    channel_name: str,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> list[SnapshotResponse]:
    """Soft-deleted snapshots that can still be restored."""
    try:
        snapshots = await service.list_trash(channel_name)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return [_snapshot_response(s) for s in snapshots]


@router.get("/snapshots/{snapshot_id}/download")
async def download_snapshot(
    snapshot_id: int,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> Response:
    """Download a snapshot as a backup file."""
    try:
        snapshot = await service.get_snapshot(snapshot_id)
        backup = await service.snapshot_backup(snapshot_id)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    filename = (
        f"nightbot-snapshot-{snapshot.channel_name}-"
        f"{snapshot.snapshot_at:%Y-%m-%d-%H%M%S}.json"
    )
    return _json_download(backup.to_json(), filename)


@router.get("/snapshots/{snapshot_id}/diff", response_model=DiffResponse)
async def diff_snapshot(
    snapshot_id: int,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> DiffResponse:
    """Compare a snapshot with the channel's live commands."""
    try:
        diff = await service.diff_snapshot(operator, snapshot_id)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None

    counts = diff.result.counts
    return DiffResponse(
        snapshot=_snapshot_response(diff.snapshot),
        snapshot_count=len(diff.snapshot.commands),
        current_count=diff.current_count,
        added=counts.added,
        removed=counts.removed,
        modified=counts.modified,
        unchanged=counts.unchanged,
        has_changes=counts.has_changes,
        diffs=[_diff_item(d) for d in diff.result.diffs],
    )


@router.post("/snapshots/{snapshot_id}/restore", response_model=RestoreResponse)
async def restore_snapshot(
    snapshot_id: int,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> RestoreResponse:
    """Push a snapshot back to Nightbot (create / update / delete commands)."""
    try:
        result = await service.restore_snapshot(operator, snapshot_id)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return RestoreResponse(
        created=result.created,
        updated=result.updated,
        deleted=result.deleted,
        errors=result.errors,
        error_messages=result.error_messages,
        message=result.summary(),
    )


@router.delete("/snapshots/{snapshot_id}", response_model=SnapshotResponse)
async def delete_snapshot(
    snapshot_id: int,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> SnapshotResponse:
    """Move a snapshot to the trash (purged after the retention window)."""
    try:
        snapshot = await service.soft_delete(snapshot_id, operator)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return _snapshot_response(snapshot)


@router.post("/snapshots/{snapshot_id}/undelete", response_model=SnapshotResponse)
async def undelete_snapshot(
    snapshot_id: int,
    operator: str = Depends(get_operator_email),
    service: NightbotSnapshotService = Depends(get_snapshot_service),
) -> SnapshotResponse:
    """Restore a snapshot from the trash."""
    try:
        snapshot = await service.undelete(snapshot_id)
    except NightbotError as e:
        raise _http_error(e) from None
    except Exception as e:
        logger.exception(f"Nightbot request failed unexpectedly: {e}")
        raise HTTPException(status_code=500, detail="Internal server error") from None
    return _snapshot_response(snapshot)
