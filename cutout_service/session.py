"""
Upload-to-result orchestration.

`SessionManager.submit` is the entry point for the UI layer. It keeps
orchestration simple:
bytes in -> decode -> model handle -> segmentation -> compositing -> PNG ref out.

Each upload gets a new `ProcessingSession` with a strictly increasing id.
Runs are never cancelled; instead, after every await the session checks that
it is still the latest one and quietly drops its work if a newer upload has
started.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import itertools
import logging
import mimetypes
from pathlib import Path
from typing import Callable, List, Optional

from . import config
from .compositing import CompositedImage, composite, encode_png, maybe_dump_debug
from .errors import CutoutError
from .model_loader import ModelManager
from .naming import download_file_name
from .preprocessing import ImageAsset, load_image
from .resources import EphemeralRef, ResourceLifecycle, Slot
from .segmentation import SegmentationConfig, SegmentationEngine

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_MESSAGE = "Unknown processing error"


class SessionStatus(str, Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading_model"
    SEGMENTING = "segmenting"
    COMPOSITING = "compositing"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.SUCCESS, SessionStatus.ERROR)


_TRANSITIONS = {
    SessionStatus.IDLE: {SessionStatus.LOADING_MODEL, SessionStatus.ERROR},
    SessionStatus.LOADING_MODEL: {SessionStatus.SEGMENTING, SessionStatus.ERROR},
    SessionStatus.SEGMENTING: {SessionStatus.COMPOSITING, SessionStatus.ERROR},
    SessionStatus.COMPOSITING: {SessionStatus.SUCCESS, SessionStatus.ERROR},
    SessionStatus.SUCCESS: set(),
    SessionStatus.ERROR: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class ProcessingSession:
    id: int
    file_name: Optional[str] = None
    status: SessionStatus = SessionStatus.IDLE
    source_asset: Optional[ImageAsset] = None
    result_image: Optional[CompositedImage] = None
    error_detail: Optional[str] = None
    download_name: Optional[str] = None
    source_ref: Optional[EphemeralRef] = None
    result_ref: Optional[EphemeralRef] = None
    superseded: bool = False

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def advance(self, status: SessionStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"Session {self.id}: {self.status.value} -> {status.value} is not allowed")
        self.status = status


SessionListener = Callable[[ProcessingSession], None]


class SessionManager:
    """Runs one session per upload; only the latest session may publish."""

    def __init__(
        self,
        model_manager: Optional[ModelManager] = None,
        engine: Optional[SegmentationEngine] = None,
        resources: Optional[ResourceLifecycle] = None,
        settings: Optional[config.Settings] = None,
        seg_config: Optional[SegmentationConfig] = None,
    ):
        self.settings = settings or config.get_settings()
        self.model_manager = model_manager or ModelManager(self.settings)
        self.engine = engine or SegmentationEngine()
        self.resources = resources or ResourceLifecycle()
        self.seg_config = seg_config or SegmentationConfig.from_settings(self.settings)
        self._ids = itertools.count(1)
        self._current: Optional[ProcessingSession] = None
        self._listeners: List[SessionListener] = []
        self._closed = False

    @property
    def current(self) -> Optional[ProcessingSession]:
        return self._current

    def add_listener(self, listener: SessionListener) -> None:
        """Call `listener(session)` whenever the latest session changes status."""
        self._listeners.append(listener)

    async def submit(
        self,
        data: bytes,
        file_name: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> ProcessingSession:
        """
        Process one upload end to end.

        Never raises for processing failures: the returned session carries
        either the result refs or an `error_detail`. A session superseded by
        a newer upload comes back with `superseded=True` and its last
        non-terminal status.
        """
        if self._closed:
            raise RuntimeError("SessionManager is closed")
        session = self._begin(file_name)
        try:
            await self._run(session, data, media_type)
        except CutoutError as exc:
            logger.warning("Session %d failed: %s", session.id, exc.message)
            self._fail(session, exc.message)
        except Exception:  # noqa: BLE001
            logger.exception("Session %d failed unexpectedly", session.id)
            self._fail(session, UNKNOWN_ERROR_MESSAGE)
        return session

    async def aclose(self) -> None:
        """Tear down on unload: drop every published reference."""
        self._closed = True
        if self._current is not None and not self._current.terminal:
            self._current.superseded = True
        self.resources.revoke_all()

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _begin(self, file_name: Optional[str]) -> ProcessingSession:
        previous = self._current
        session = ProcessingSession(id=next(self._ids), file_name=file_name)
        self._current = session
        if previous is not None:
            if not previous.terminal:
                previous.superseded = True
                logger.info("Session %d superseded by session %d", previous.id, session.id)
            self.resources.revoke_owned(previous.id)
            previous.source_ref = None
            previous.result_ref = None
        return session

    def _is_stale(self, session: ProcessingSession) -> bool:
        if self._closed or self._current is not session:
            session.superseded = True
            return True
        return False

    async def _run(self, session: ProcessingSession, data: bytes, media_type: Optional[str]) -> None:
        self._advance(session, SessionStatus.LOADING_MODEL)
        if media_type is None and session.file_name:
            media_type = mimetypes.guess_type(session.file_name)[0]
        session.source_ref = self.resources.publish(
            Slot.SOURCE,
            data,
            owner=session.id,
            media_type=media_type or "application/octet-stream",
        )

        asset = await load_image(data)
        if self._is_stale(session):
            logger.debug("Session %d: discarding decoded image", session.id)
            return
        session.source_asset = asset

        handle = await self.model_manager.get_handle()
        if self._is_stale(session):
            logger.debug("Session %d: discarding after model load", session.id)
            return
        self._advance(session, SessionStatus.SEGMENTING)

        mask = await self.engine.segment(asset, handle, self.seg_config)
        if self._is_stale(session):
            logger.info("Session %d: discarding segmentation of superseded upload", session.id)
            return
        self._advance(session, SessionStatus.COMPOSITING)

        result = composite(asset, mask)
        png_bytes = encode_png(result)
        if self.settings.debug:
            maybe_dump_debug(result, mask, Path(self.settings.debug_output_dir))

        session.result_image = result
        session.download_name = download_file_name(session.file_name)
        session.result_ref = self.resources.publish(
            Slot.RESULT,
            png_bytes,
            owner=session.id,
            media_type="image/png",
        )
        self._advance(session, SessionStatus.SUCCESS)
        logger.info(
            "Session %d finished: %dx%d coverage=%.4f",
            session.id,
            result.width,
            result.height,
            mask.coverage,
        )

    def _fail(self, session: ProcessingSession, message: str) -> None:
        self.resources.revoke_owned(session.id)
        session.source_ref = None
        session.result_ref = None
        if self._is_stale(session):
            logger.info("Session %d: ignoring failure of superseded upload", session.id)
            return
        session.error_detail = message
        self._advance(session, SessionStatus.ERROR)

    def _advance(self, session: ProcessingSession, status: SessionStatus) -> None:
        session.advance(status)
        logger.debug("Session %d -> %s", session.id, status.value)
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:  # noqa: BLE001
                logger.exception("Session listener failed for session %d", session.id)
