"""Image attachments turned into Claude content blocks."""
import base64
from typing import Any, Dict, List, Optional, Sequence, Tuple
import structlog

from telegram import Message

from ..models import MessageContent

logger = structlog.get_logger()

SUPPORTED_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
MAX_IMAGE_BYTES = 5 * 1024 * 1024

# Raw bytes plus MIME type
Image = Tuple[bytes, str]


def image_block(data: bytes, media_type: str) -> Optional[Dict[str, Any]]:
    """Base64 image block, or None for types and sizes Claude won't take."""
    if media_type not in SUPPORTED_TYPES:
        logger.debug("Skipping attachment", reason="unsupported type", media_type=media_type)
        return None
    if len(data) > MAX_IMAGE_BYTES:
        logger.debug("Skipping attachment", reason="too large", size=len(data))
        return None
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.b64encode(data).decode("ascii"),
        },
    }


def build_content(text: str, images: Sequence[Image]) -> MessageContent:
    """Plain text when there is no usable image, otherwise image blocks then the text."""
    blocks: List[Dict[str, Any]] = []
    for data, media_type in images:
        block = image_block(data, media_type)
        if block is not None:
            blocks.append(block)
    if not blocks:
        return text

    logger.info("Built image content", images=len(blocks), attachments=len(images))
    if text:
        blocks.append({"type": "text", "text": text})
    return blocks


async def download_images(message: Message) -> List[Image]:
    """Fetch the message's photo or image document. Empty if it has neither."""
    if message.photo:
        # Sizes are sorted ascending; the last one is the original
        attachment, media_type = message.photo[-1], "image/jpeg"
    elif message.document is not None and message.document.mime_type in SUPPORTED_TYPES:
        attachment, media_type = message.document, message.document.mime_type
    else:
        return []

    if attachment.file_size and attachment.file_size > MAX_IMAGE_BYTES:
        logger.info("Attachment too large", size=attachment.file_size)
        return []

    file = await attachment.get_file()
    data = await file.download_as_bytearray()
    return [(bytes(data), media_type)]
