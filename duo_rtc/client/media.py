"""Local media capture and remote media consumption.

Capture devices are opened with aiortc's ``MediaPlayer`` (FFmpeg/PyAV under
the hood). Open failures are mapped onto the ``MediaAccessError`` categories
so the user sees a device-specific message.
"""

import asyncio
import errno
from dataclasses import dataclass, field
from typing import Any, List, Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from loguru import logger

from duo_rtc.config import MediaConfig
from duo_rtc.exceptions import MediaAccessError


def categorize_media_error(error: BaseException) -> str:
    """Map a device open failure onto a MediaAccessError category.

    PyAV raises subclasses of the builtin exceptions, so the builtin
    hierarchy is enough to tell the cases apart.
    """
    if isinstance(error, MediaAccessError):
        return error.category
    if isinstance(error, PermissionError):
        return MediaAccessError.PERMISSION_DENIED
    if isinstance(error, FileNotFoundError):
        return MediaAccessError.DEVICE_NOT_FOUND
    if isinstance(error, OSError) and error.errno == errno.EBUSY:
        return MediaAccessError.DEVICE_BUSY
    if isinstance(error, OSError) and error.errno in (errno.ENODEV, errno.ENXIO):
        return MediaAccessError.DEVICE_NOT_FOUND
    if isinstance(error, (ValueError, NotImplementedError)):
        return MediaAccessError.CONSTRAINTS_UNSATISFIABLE
    return MediaAccessError.UNKNOWN


@dataclass
class LocalMedia:
    """Captured local tracks, exclusively owned by one session.

    Attributes:
        tracks: Audio/video tracks to send to the peer.
        players: MediaPlayer instances backing the tracks.
    """

    tracks: List[Any] = field(default_factory=list)
    players: List[Any] = field(default_factory=list, repr=False)
    stopped: bool = False

    def stop(self) -> None:
        """Stop every track, releasing the capture devices."""
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Failed to stop local track {track}: {e}")
        logger.debug(f"Stopped {len(self.tracks)} local track(s)")


class MediaSource:
    """Opens the configured camera and microphone."""

    def __init__(self, config: MediaConfig):
        self.config = config

    def _open(self) -> LocalMedia:
        media = LocalMedia()
        try:
            if self.config.video_device:
                player = MediaPlayer(
                    self.config.video_device,
                    format=self.config.video_format,
                    options=self.config.video_options(),
                )
                media.players.append(player)
                if player.video is None:
                    raise MediaAccessError(
                        MediaAccessError.DEVICE_NOT_FOUND,
                        f"{self.config.video_device} has no video stream",
                    )
                media.tracks.append(player.video)

            if self.config.audio_device:
                player = MediaPlayer(
                    self.config.audio_device, format=self.config.audio_format
                )
                media.players.append(player)
                if player.audio is None:
                    raise MediaAccessError(
                        MediaAccessError.DEVICE_NOT_FOUND,
                        f"{self.config.audio_device} has no audio stream",
                    )
                media.tracks.append(player.audio)
        except Exception:
            media.stop()
            raise

        if not media.tracks:
            raise MediaAccessError(
                MediaAccessError.DEVICE_NOT_FOUND, "No capture device configured"
            )
        return media

    async def acquire(self) -> LocalMedia:
        """Open the capture devices.

        Opening runs in a worker thread. If the caller is cancelled while the
        devices are still opening, they are stopped as soon as the open
        completes so nothing stays captured.

        Raises:
            MediaAccessError: With the failure category.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._open)
        try:
            media = await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(_stop_abandoned)
            raise
        except Exception as e:
            category = categorize_media_error(e)
            logger.error(f"Error accessing media devices: {e}")
            if isinstance(e, MediaAccessError):
                raise
            raise MediaAccessError(category, str(e)) from e

        logger.info(f"Acquired {len(media.tracks)} local track(s)")
        return media


def _stop_abandoned(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    logger.debug("Releasing media opened after its session was cancelled")
    future.result().stop()


class RemoteMediaSink:
    """Consumes the peer's tracks, recording them to a file when asked.

    Tracks must be added before ``start``; tracks arriving afterwards are
    consumed by a blackhole so the peer connection keeps draining them.
    ``MediaRecorder`` opens its output file on construction, so ``stop`` must
    run even when the sink never started.
    """

    def __init__(self, record_to: Optional[str] = None):
        self.record_to = record_to
        self._sink = MediaRecorder(record_to) if record_to else MediaBlackhole()
        self._late = MediaBlackhole()
        self._late_starts: List[asyncio.Future] = []
        self.tracks: List[Any] = []
        self.started = False
        self.stopped = False

    def add_track(self, track) -> None:
        if self.stopped:
            logger.debug(f"Ignoring remote {track.kind} track after sink stop")
            return
        self.tracks.append(track)
        if self.started:
            logger.warning(f"Remote {track.kind} track arrived after sink start")
            self._late.addTrack(track)
            self._late_starts.append(asyncio.ensure_future(self._late.start()))
            return
        self._sink.addTrack(track)
        logger.info(f"Receiving remote {track.kind} track")

    async def start(self) -> None:
        if self.started or self.stopped or not self.tracks:
            return
        self.started = True
        await self._sink.start()
        if self.record_to:
            logger.info(f"Recording remote media to {self.record_to}")

    async def stop(self) -> None:
        """Stop consuming tracks and close the recording, if any. Idempotent."""
        if self.stopped:
            return
        self.stopped = True
        self.started = False

        late_starts, self._late_starts = self._late_starts, []
        for result in await asyncio.gather(*late_starts, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error(f"Late remote track failed to start: {result}")

        await self._sink.stop()
        await self._late.stop()
