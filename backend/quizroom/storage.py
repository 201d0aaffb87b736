from __future__ import annotations

import asyncio
import logging
import os
import random
import string
import time
import uuid

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .db import settings
from .errors import InvalidSoundError
from .models import BuzzerSound
from .store import RecordStore, StoreResult

logger = logging.getLogger(__name__)

_blob_service_client: BlobServiceClient | None = None
_container_initialised = False


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise RuntimeError("Azure Blob Storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


def validate_sound(filename: str, content: bytes, content_type: str | None) -> None:
    """Reject anything but a non-empty MP3 within the size limit.

    Browsers check this before uploading, but that check is only advisory.
    """
    if not content:
        raise InvalidSoundError("Uploaded file was empty")
    if len(content) > settings.MAX_SOUND_BYTES:
        raise InvalidSoundError(f"File size must be under {settings.MAX_SOUND_BYTES // 1000}KB")
    if (content_type or "").split(";")[0].strip().lower() not in settings.SOUND_CONTENT_TYPES:
        raise InvalidSoundError("File must be MP3 format")
    if os.path.splitext(filename or "")[1].lower() not in ("", ".mp3"):
        raise InvalidSoundError("File must be MP3 format")


def _blob_name(filename: str) -> str:
    extension = os.path.splitext(filename or "")[1] or ".mp3"
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}_{suffix}{extension}"


async def _ensure_container(service: BlobServiceClient):
    global _container_initialised
    container_client = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)
    if _container_initialised:
        return container_client
    try:
        await asyncio.to_thread(container_client.create_container, public_access="blob")
    except ResourceExistsError:
        pass
    except HttpResponseError as exc:
        error_code = getattr(exc, "error_code", None) or getattr(getattr(exc, "error", None), "code", None)
        if error_code == "PublicAccessNotPermitted":
            # sound URLs are stored and replayed later, so they must be public
            raise RuntimeError(
                f"Container {settings.AZURE_STORAGE_CONTAINER} must allow public blob access"
            ) from exc
        raise
    _container_initialised = True
    return container_client


async def upload_buzzer_sound(
    store: RecordStore,
    filename: str,
    content: bytes,
    content_type: str | None,
    display_name: str,
    is_starter: bool = False,
) -> StoreResult:
    """Upload an MP3 and record it in the buzzer sound catalogue."""

    validate_sound(filename, content, content_type)
    display_name = (display_name or "").strip()
    if not display_name:
        raise InvalidSoundError("Please enter a display name")

    service = _get_blob_service()
    container_client = await _ensure_container(service)
    blob_name = _blob_name(filename)
    blob_client = container_client.get_blob_client(blob_name)
    await asyncio.to_thread(
        blob_client.upload_blob,
        content,
        overwrite=True,
        content_settings=ContentSettings(content_type="audio/mpeg"),
    )

    sound = BuzzerSound(
        id=uuid.uuid4().hex,
        file_name=blob_name,
        display_name=display_name,
        file_url=blob_client.url,
        is_starter=is_starter,
        file_size=len(content),
    )
    result = await store.insert_buzzer_sound(sound)
    if not result.ok:
        # don't leave an orphaned blob behind a failed catalogue write
        await _delete_blob(service, blob_name)
        return result
    logger.info("Uploaded buzzer sound %s (%s bytes)", display_name, len(content))
    return result


async def _delete_blob(service: BlobServiceClient, blob_name: str) -> None:
    container_client = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)
    try:
        await asyncio.to_thread(container_client.delete_blob, blob_name)
    except ResourceNotFoundError:
        pass
    except HttpResponseError:
        logger.warning("Could not delete blob %s", blob_name, exc_info=True)


async def delete_buzzer_sound(store: RecordStore, sound_id: str) -> StoreResult:
    sound = await store.get_buzzer_sound(sound_id)
    if sound is None:
        return StoreResult.failure("Sound not found")
    await _delete_blob(_get_blob_service(), sound.file_name)
    return await store.delete_buzzer_sound_record(sound_id)
