"""Optimistic attachments: local previews and background upload.

Attachment objects shown in an optimistic message are never replaced; the
upload result is written into the same object so anything holding a
reference (a rendered thumbnail, a list key) stays valid.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from chat_models import (
    ERROR,
    PENDING,
    UPLOADED,
    UPLOADING,
    Attachment,
    LocalFile,
    ServerId,
    parse_id,
)

logger = logging.getLogger("chatstream.attachments")

PREVIEW_SCHEME = "blob:"

Uploader = Callable[[LocalFile], Awaitable[Attachment]]


class PreviewRegistry:
    """Issues and releases local preview handles for selected files.

    A handle left open is a leak, not a correctness bug; open_handles lets
    tests assert nothing is left behind.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, LocalFile] = {}

    def create(self, local: LocalFile) -> str:
        url = f"{PREVIEW_SCHEME}chatstream/{uuid.uuid4()}"
        self._handles[url] = local
        return url

    def get(self, url: str) -> Optional[LocalFile]:
        return self._handles.get(url)

    def release(self, url: Optional[str]) -> bool:
        if not url or not url.startswith(PREVIEW_SCHEME):
            return False
        return self._handles.pop(url, None) is not None

    def release_many(self, attachments: Iterable[Attachment]) -> int:
        released = 0
        for attachment in attachments:
            if self.release(attachment.preview_url):
                released += 1
        return released

    def release_all(self) -> int:
        count = len(self._handles)
        self._handles.clear()
        return count

    @property
    def open_handles(self) -> int:
        return len(self._handles)


def prepare_attachments(
    files: Sequence[LocalFile],
    previews: PreviewRegistry,
) -> List[Attachment]:
    """Build pending optimistic attachments; images get a preview handle."""
    attachments = []
    for index, local in enumerate(files):
        attachment = Attachment.from_local(local, index)
        if local.is_image:
            attachment.preview_url = previews.create(local)
        attachments.append(attachment)
    return attachments


def mark_uploading(attachments: Iterable[Attachment]) -> None:
    for attachment in attachments:
        if attachment.status == PENDING:
            attachment.status = UPLOADING


async def upload_attachments(
    attachments: Sequence[Attachment],
    uploader: Uploader,
    previews: PreviewRegistry,
) -> List[Attachment]:
    """Upload concurrently with all-settled semantics.

    Each optimistic attachment is updated in place: uploaded ones get the
    server id and url and lose their preview handle, failed ones are marked
    error and keep their preview. Returns the server records of the uploads
    that succeeded, in input order.
    """
    pending = [a for a in attachments if a.file is not None]
    if not pending:
        return []

    results = await asyncio.gather(
        *[uploader(a.file) for a in pending],
        return_exceptions=True,
    )

    uploaded: List[Attachment] = []
    for attachment, result in zip(pending, results):
        if isinstance(result, BaseException):
            logger.error("Upload of %s failed: %s", attachment.filename, result)
            attachment.status = ERROR
            continue

        server_id = parse_id(result.id)
        if not isinstance(server_id, ServerId):
            logger.error("Upload of %s returned a non-server id %s", attachment.filename, server_id)
            attachment.status = ERROR
            continue

        previews.release(attachment.preview_url)
        attachment.id = server_id
        attachment.status = UPLOADED
        attachment.url = result.url
        attachment.preview_url = None
        uploaded.append(result)

    logger.info("Uploaded %d/%d attachments", len(uploaded), len(pending))
    return uploaded
