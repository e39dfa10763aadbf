"""REST API routes for PeerDrop."""

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import ALLOWED_CONTENT_TYPES, MAX_UPLOAD_SIZE
from errors import NotFoundError, UpstreamError, ValidationError
from services import Services
from transfer.channel import ChannelConnectionError, PeerUnknownError
from transfer.staging import stage_offline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_services(request: Request) -> Services:
    return request.app.state.services


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PresenceBody(_Body):
    peer_id: str | None = Field(None, alias="peerId")
    display_name: str | None = Field(None, alias="displayName")
    contact: str | None = None


class PeerBody(_Body):
    peer_id: str | None = Field(None, alias="peerId")


# --- Presence ---

@router.post("/presence/heartbeat")
def presence_heartbeat(body: PresenceBody, services: Services = Depends(get_services)):
    """Upsert presence: marks the peer online and refreshes its heartbeat."""
    if not body.peer_id or not body.display_name or not body.contact:
        raise ValidationError("peerId, displayName and contact are required")
    presence = services.presence.mark_online(body.peer_id, body.display_name, body.contact)
    return {"presence": presence.model_dump(mode="json")}


@router.post("/presence/offline")
async def presence_offline(request: Request, services: Services = Depends(get_services)):
    """
    Mark a peer offline. Besides JSON the body may be a form, which is what
    ``navigator.sendBeacon`` sends while the page unloads.
    """
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body")
        if not isinstance(payload, dict):
            raise ValidationError("peerId is required")
    else:
        payload = await request.form()

    peer_id = payload.get("peerId")
    if not peer_id or not isinstance(peer_id, str):
        raise ValidationError("peerId is required")
    await asyncio.to_thread(services.presence.mark_offline, peer_id)
    return {"ok": True}


@router.get("/presence/{peer_id}")
def presence_status(peer_id: str, services: Services = Depends(get_services)):
    identity = services.directory.get(peer_id)
    presence = services.presence.get(peer_id)
    if identity is None and presence is None:
        raise NotFoundError(f"Peer not found: {peer_id}")

    return {
        "reachable": presence.reachable if presence else False,
        "lastSeen": presence.last_heartbeat.isoformat() if presence else None,
        "displayName": presence.display_name if presence else identity.display_name,
    }


# --- Identities ---

@router.get("/peers/{peer_id}")
def lookup_peer(peer_id: str, services: Services = Depends(get_services)):
    identity = services.directory.get(peer_id)
    if identity is None:
        raise NotFoundError(f"Peer not found: {peer_id}")
    return {
        "found": True,
        "peerId": identity.peer_id,
        "displayName": identity.display_name,
        "contact": identity.contact,
    }


@router.get("/debug/peers")
def debug_peers(services: Services = Depends(get_services)):
    """Every identity with its presence as seen right now."""
    presence = {p.peer_id: p for p in services.presence.list_all()}
    peers = []
    for identity in services.directory.list_all():
        p = presence.get(identity.peer_id)
        peers.append({
            "peerId": identity.peer_id,
            "displayName": identity.display_name,
            "status": p.status.value if p else "unknown",
            "reachable": p.reachable if p else False,
            "lastSeen": p.last_heartbeat.isoformat() if p else None,
        })
    return {
        "total": len(peers),
        "onlineCount": sum(1 for p in peers if p["reachable"]),
        "peers": peers,
    }


# --- Transfers ---

async def _read_upload(file: UploadFile | None, *fields: str | None) -> bytes:
    if file is None:
        raise ValidationError("No file uploaded")
    if not all(fields):
        raise ValidationError("Missing required fields")
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError(f"File type not allowed: {file.content_type}")

    data = await file.read(MAX_UPLOAD_SIZE + 1)
    if len(data) > MAX_UPLOAD_SIZE:
        raise ValidationError("File exceeds the upload size limit")
    return data


@router.post("/transfers/send")
async def send_file(
    senderPeerId: str | None = Form(None),
    senderDisplayName: str | None = Form(None),
    receiverPeerId: str | None = Form(None),
    file: UploadFile | None = File(None),
    services: Services = Depends(get_services),
):
    """Deliver live when the receiver is reachable, otherwise queue it."""
    try:
        data = await _read_upload(file, senderPeerId, senderDisplayName, receiverPeerId)
        outcome = await services.router.send(
            sender_peer_id=senderPeerId,
            sender_display_name=senderDisplayName,
            receiver_peer_id=receiverPeerId,
            payload=data,
            file_name=file.filename or "upload",
            content_type=file.content_type,
        )
    except PeerUnknownError as e:
        raise NotFoundError(str(e))
    except ChannelConnectionError as e:
        logger.warning(f"Live channel to {receiverPeerId} failed: {e}")
        return JSONResponse(status_code=503, content={"error": str(e)})
    finally:
        if file is not None:
            await file.close()

    return {"outcome": outcome.model_dump(mode="json")}


@router.post("/transfers/offline")
async def share_offline(
    senderPeerId: str | None = Form(None),
    senderDisplayName: str | None = Form(None),
    receiverPeerId: str | None = Form(None),
    file: UploadFile | None = File(None),
    services: Services = Depends(get_services),
):
    """Upload a file to the blob store and queue it for the receiver."""
    try:
        data = await _read_upload(file, senderPeerId, senderDisplayName, receiverPeerId)
        logger.info(
            f"Offline share of {file.filename} ({len(data)} bytes) "
            f"from {senderPeerId} to {receiverPeerId}"
        )
        record, blob = await stage_offline(
            services.blob_store,
            services.queue,
            services.directory,
            sender_peer_id=senderPeerId,
            sender_display_name=senderDisplayName,
            receiver_peer_id=receiverPeerId,
            data=data,
            file_name=file.filename or "upload",
            content_type=file.content_type,
        )
    except UpstreamError as e:
        logger.error(f"Offline share failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})
    finally:
        # Drop the spooled upload whatever the outcome.
        if file is not None:
            await file.close()

    return {
        "success": True,
        "message": "File queued for delivery",
        "transfer": record.model_dump(mode="json"),
        "blobReference": blob.reference,
        "blobUrl": blob.url,
    }


@router.get("/transfers/pending/{peer_id}")
def list_pending(peer_id: str, services: Services = Depends(get_services)):
    records = services.queue.list_pending(peer_id)
    return {
        "count": len(records),
        "records": [r.model_dump(mode="json") for r in records],
    }


@router.post("/transfers/{transfer_id}/delivered")
def acknowledge_delivery(
    transfer_id: str, body: PeerBody, services: Services = Depends(get_services)
):
    if not body.peer_id:
        raise ValidationError("peerId is required")
    record = services.queue.mark_delivered(transfer_id, body.peer_id)
    return {"ok": True, "transfer": record.model_dump(mode="json")}
