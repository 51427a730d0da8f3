"""Re-host inbound WhatsApp media in S3 so transcripts keep a durable link.

Graph API media URLs expire and require the tenant token, so every inbound
image, video, audio clip or document is copied to ``MEDIA_BUCKET`` under
``<tenant_id>/<media_id>.<ext>``.
"""

from __future__ import annotations

import asyncio
import logging

from carebot.config import MEDIA_BUCKET
from carebot.models import Organization
from carebot.services.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

MEDIA_FAILURE_TEXT = "Failed to retrieve media from WA."


def extension_for(mime_type: str) -> str:
    if "image" in mime_type:
        return mime_type.split("/")[-1] or "img"
    if "pdf" in mime_type:
        return "pdf"
    if "audio" in mime_type:
        return "audio"
    if "video" in mime_type:
        return "video"
    return "dat"


class MediaUploader:
    """Uploads bytes to S3 and returns their public URL."""

    def __init__(self, bucket: str | None = None, *, s3_client=None) -> None:
        self._bucket = MEDIA_BUCKET if bucket is None else bucket
        self._s3 = s3_client

    def _get_s3(self):
        if self._s3 is None:
            import boto3

            self._s3 = boto3.client("s3")
        return self._s3

    @property
    def enabled(self) -> bool:
        return bool(self._bucket)

    async def upload(self, key: str, content: bytes, content_type: str) -> str | None:
        if not self.enabled:
            logger.warning("MEDIA_BUCKET not configured; media %s not stored", key)
            return None
        try:
            await asyncio.to_thread(
                self._get_s3().put_object,
                Bucket=self._bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except Exception:
            logger.exception("S3 upload failed for key=%s", key)
            return None
        return f"https://{self._bucket}.s3.amazonaws.com/{key}"


async def rehost_media(
    client: WhatsAppClient,
    uploader: MediaUploader,
    org: Organization,
    media_id: str,
    mime_type: str,
) -> str | None:
    """Download *media_id* from WhatsApp and upload it.  ``None`` on any failure."""
    download = await client.fetch_media(org, media_id)
    if download is None:
        return None
    mime_type = mime_type or download.mime_type
    key = f"{org.tenant_id}/{media_id}.{extension_for(mime_type)}"
    url = await uploader.upload(key, download.content, mime_type)
    if url:
        logger.info("Media %s stored at %s", media_id, url)
    return url
