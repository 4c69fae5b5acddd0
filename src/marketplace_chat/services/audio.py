"""Voice message recording."""

import contextlib
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import structlog

from ..domain.models import Attachment, LocalFile
from ..errors import ResourceAcquisitionError, ValidationError
from .attachments import AttachmentComposer

logger = structlog.get_logger()

VOICE_MESSAGE_NAME = "voice-message.wav"


class AudioStream(ABC):
    """An open recording on an acquired input device."""

    mime_type: str = "audio/wav"

    @abstractmethod
    async def finish(self) -> bytes:
        """Stop recording and return the encoded audio."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the input device. Must be safe to call more than once."""
        pass


class AudioDevice(ABC):
    """Source of audio input, e.g. a microphone."""

    @abstractmethod
    async def open(self) -> AudioStream:
        """Acquire the device and start recording."""
        pass


class AudioCaptureController:
    """Drives one start/stop recording session at a time.

    The device is held only between ``start`` and ``stop``/``cancel`` and
    is released on every exit path, including errors while finalizing.
    A finished recording becomes one audio attachment on the composer.
    """

    def __init__(self, device: AudioDevice, attachments: AttachmentComposer) -> None:
        self.device = device
        self.attachments = attachments
        self._stream: Optional[AudioStream] = None

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    async def start(self) -> None:
        if self._stream is not None:
            raise ValidationError("A recording is already in progress")
        try:
            self._stream = await self.device.open()
        except ResourceAcquisitionError:
            raise
        except Exception as e:
            logger.warning("audio_acquisition_failed", error=str(e))
            raise ResourceAcquisitionError(f"Audio input unavailable: {e}") from e
        logger.info("recording_started")

    async def stop(self) -> Attachment:
        """Finalize the recording into an attachment and release the device."""
        if self._stream is None:
            raise ValidationError("No recording in progress")
        stream = self._stream
        try:
            data = await stream.finish()
        finally:
            await self._release()
        attachment = Attachment.from_local(
            LocalFile(name=VOICE_MESSAGE_NAME, mime_type=stream.mime_type, data=data)
        )
        self.attachments.add(attachment)
        logger.info("recording_stopped", byte_size=attachment.byte_size)
        return attachment

    async def cancel(self) -> None:
        """Abandon the recording without producing an attachment."""
        if self._stream is None:
            return
        await self._release()
        logger.info("recording_cancelled")

    async def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()

    @contextlib.asynccontextmanager
    async def recording(self) -> AsyncIterator["AudioCaptureController"]:
        """Record for the duration of the block.

        Leaving normally attaches the recording; leaving through an
        exception or cancellation discards it.
        """
        await self.start()
        try:
            yield self
        except BaseException:
            await self.cancel()
            raise
        await self.stop()
