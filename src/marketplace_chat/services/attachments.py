"""Accumulates attachments for the next outgoing message."""

from pathlib import Path
from typing import Iterable, List, Union

import structlog

from ..domain.models import Attachment, LocalFile
from ..errors import ValidationError

logger = structlog.get_logger()

FileInput = Union[LocalFile, Path, str]


def _as_local_file(item: FileInput) -> LocalFile:
    if isinstance(item, LocalFile):
        return item
    path = Path(item)
    if not path.is_file():
        raise ValidationError(f"{path} is not a readable file")
    return LocalFile(name=path.name, path=path)


class AttachmentComposer:
    """Pending attachment list owned by the compose box.

    Attachments stay here until the next send takes them with ``drain``.
    """

    def __init__(self, max_attachment_bytes: int = 25 * 1024 * 1024) -> None:
        self.max_attachment_bytes = max_attachment_bytes
        self._pending: List[Attachment] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[Attachment]:
        return list(self._pending)

    def attach_files(self, files: Iterable[FileInput]) -> List[Attachment]:
        """Turn each selected file into one attachment.

        The batch is validated as a whole: if any file is unreadable or
        too large nothing is added.
        """
        attachments = [Attachment.from_local(_as_local_file(f)) for f in files]
        for attachment in attachments:
            self._check_size(attachment)
        self._pending.extend(attachments)
        logger.debug("attachments_added", count=len(attachments), pending=len(self._pending))
        return attachments

    def add(self, attachment: Attachment) -> None:
        self._check_size(attachment)
        self._pending.append(attachment)

    def remove(self, index: int) -> Attachment:
        if not 0 <= index < len(self._pending):
            raise ValidationError(f"No pending attachment at position {index}")
        return self._pending.pop(index)

    def drain(self) -> List[Attachment]:
        """Hand the pending attachments to a message and clear the list."""
        attachments, self._pending = self._pending, []
        return attachments

    def clear(self) -> None:
        self._pending = []

    def _check_size(self, attachment: Attachment) -> None:
        if attachment.byte_size > self.max_attachment_bytes:
            raise ValidationError(
                f"{attachment.name} is {attachment.byte_size} bytes, "
                f"the limit is {self.max_attachment_bytes}"
            )
