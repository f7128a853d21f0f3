import asyncio
import logging
import uuid
from pathlib import Path

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ForbiddenError, InternalError, InvalidInputError
from ..core.metrics import ATTACHMENTS_UPLOADED
from ..core.session import SessionContext
from ..schemas.chat import Attachment
from ..store.base import Store, StoreError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


class AttachmentService:
    """
    Stores message attachments as files under UPLOAD_DIR, served back from
    UPLOAD_BASE_URL. Only the returned URL is kept on the message.
    """

    def __init__(self, store: Store, settings: Settings = default_settings):
        self.store = store
        self.settings = settings
        self.root = Path(settings.UPLOAD_DIR)

    def validate_attachment(self, content_type: str, size: int) -> None:
        content_type = (content_type or "").lower()
        if content_type not in self.settings.ALLOWED_UPLOAD_TYPES or content_type not in EXTENSIONS:
            raise InvalidInputError("Only JPEG, PNG, GIF and WebP images are allowed")
        if size > self.settings.MAX_UPLOAD_BYTES:
            max_mb = self.settings.MAX_UPLOAD_BYTES // (1024 * 1024)
            raise InvalidInputError(f"File too large (max {max_mb}MB)")
        if size <= 0:
            raise InvalidInputError("File is empty")

    async def upload_attachment(
        self, session: SessionContext, room_id: str, content_type: str, data: bytes
    ) -> Attachment:
        try:
            participant = await self.store.get_participant(room_id, session.user_id)
        except StoreError as e:
            logger.error(f"Store failure checking upload permission: {e}")
            raise InternalError()
        if not participant:
            raise ForbiddenError("User is not a participant in this room")

        self.validate_attachment(content_type, len(data))
        content_type = content_type.lower()
        relative = f"room-{room_id}/{uuid.uuid4()}.{EXTENSIONS[content_type]}"
        try:
            await asyncio.to_thread(self._write, relative, data)
        except OSError as e:
            logger.exception(f"Failed to store attachment {relative}: {e}")
            raise InternalError("Failed to upload file")

        ATTACHMENTS_UPLOADED.inc()
        logger.info(f"Stored attachment {relative} ({len(data)} bytes) for user {session.user_id}")
        return Attachment(
            url=f"{self.settings.UPLOAD_BASE_URL.rstrip('/')}/{relative}",
            file_type=content_type,
            size=len(data),
        )

    def _write(self, relative: str, data: bytes) -> None:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
