"""
Adaptive Video Source Resolver.

Attaches a media source to a playback element using the best available
delivery mode:

    Idle -> Resolving -> Streaming | Progressive -> Torn Down

Progressive uploads are first tried through their transcoded HLS manifest.
When the manifest is missing or forbidden (transcoding still running,
CDN rules), the session is torn down and the element is rebound to the
progressive file. That fallback happens at most once per source and is
remembered, so a failed source never re-enters manifest resolution for the
lifetime of the resolver.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from config import settings
from hls_engine import ErrorData, ErrorDetails, ErrorTypes, Events, HlsSession
from media_element import (
    ElementRef,
    MediaElement,
    MediaErrorCode,
    MediaEvent,
    PlaybackNotAllowedError,
)
from source_resolver import FailureMemory, ResolvedTarget, resolve_target

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = (403, 404)


class PlaybackState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    STREAMING = "streaming"
    PROGRESSIVE = "progressive"
    TORN_DOWN = "torn_down"


class PlaybackErrorKind(str, Enum):
    NETWORK = "network-error"
    MEDIA = "media-error"
    UNSUPPORTED = "unsupported"


class PlaybackError(Exception):
    """Unrecoverable playback failure reported to the caller"""

    def __init__(self, kind: PlaybackErrorKind, message: str, source: Optional[str] = None,
                 data: Optional[ErrorData] = None):
        super().__init__(message)
        self.kind = kind
        self.source = source
        self.data = data


class ErrorBudget:
    """Counts consecutive non-fatal stream errors"""

    def __init__(self, limit: int):
        self.limit = limit
        self.count = 0

    def record(self) -> bool:
        """Count one error. Returns True once the budget is exhausted."""
        self.count += 1
        return self.count > self.limit

    def reset(self):
        self.count = 0


class AdaptiveSourceResolver:
    def __init__(
        self,
        element_ref: ElementRef,
        on_error: Optional[Callable[[PlaybackError], None]] = None,
        session_factory: Optional[Callable[[], HlsSession]] = None,
        failure_memory: Optional[FailureMemory] = None,
        error_budget: Optional[int] = None,
        prefer_native: Optional[bool] = None,
        autoplay: Optional[bool] = None
    ):
        self.element_ref = element_ref
        self.on_error = on_error
        self.session_factory = session_factory or HlsSession
        self.failure_memory = failure_memory if failure_memory is not None else FailureMemory()
        self.error_budget = ErrorBudget(
            settings.ERROR_BUDGET if error_budget is None else error_budget)
        self.prefer_native = settings.PREFER_NATIVE_HLS if prefer_native is None else prefer_native
        self.autoplay = settings.AUTOPLAY if autoplay is None else autoplay

        self.state = PlaybackState.IDLE
        self.is_loading = False
        self.error: Optional[PlaybackError] = None

        self._session: Optional[HlsSession] = None
        self._element: Optional[MediaElement] = None
        self._target: Optional[ResolvedTarget] = None
        self._current_src: Optional[str] = None
        self._bound_url: Optional[str] = None
        self._native_listener: Optional[Callable[[MediaEvent], None]] = None
        self._initializing = False
        self._fallback_done = False
        self._media_recovery_attempted = False
        self._mounted = True

    @property
    def session(self) -> Optional[HlsSession]:
        return self._session

    @property
    def target(self) -> Optional[ResolvedTarget]:
        return self._target

    @property
    def current_src(self) -> Optional[str]:
        return self._current_src

    @property
    def is_adaptive(self) -> bool:
        return self.state == PlaybackState.STREAMING

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, src: Optional[str]):
        """Bind src to the referenced element, re-initializing only when something changed"""
        if not self._mounted:
            logger.debug(f"Ignoring source update after unmount: {src}")
            return

        if self._initializing:
            logger.debug(f"Initialization already in progress, ignoring source update: {src}")
            return

        element = self.element_ref.current
        if element is None or not src:
            self._teardown()
            self._release_element()
            self._current_src = None
            self._target = None
            self.state = PlaybackState.IDLE
            return

        if src == self._current_src and element is self._element and self._is_bound():
            logger.debug(f"Source unchanged and already attached, skipping: {src}")
            return

        self._initializing = True
        try:
            # A rejected claim leaves the current binding untouched
            if element is not self._element:
                element.claim(self)

            # Teardown strictly precedes any new session
            self._teardown()
            if element is not self._element:
                self._release_element()
                self._element = element

            self._current_src = src
            self._fallback_done = False
            self._media_recovery_attempted = False
            self.error_budget.reset()
            self.error = None
            self.state = PlaybackState.RESOLVING

            target = resolve_target(src, self.failure_memory)
            self._target = target

            if not target.is_manifest:
                self._bind_progressive(element, target.url)
                return

            if self.prefer_native and element.can_play_type(settings.MANIFEST_MIME_TYPE):
                self._bind_native(element, target)
                return

            if not self.session_factory.is_supported():
                self._handle_unsupported(element, target)
                return

            self._attach_session(element, target)
        finally:
            self._initializing = False

    def unmount(self):
        """Tear everything down. No callback reaches on_error afterwards."""
        self._mounted = False
        self._teardown()
        self._release_element()
        self._current_src = None
        self._target = None
        self._initializing = False
        self.failure_memory.reset()
        self.state = PlaybackState.TORN_DOWN
        logger.debug("Resolver unmounted")

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def _is_bound(self) -> bool:
        if self._session is not None:
            return self._session.media is self._element and not self._session.destroyed
        if self.state in (PlaybackState.STREAMING, PlaybackState.PROGRESSIVE):
            return self._element is not None and self._element.src == self._bound_url
        return False

    def _bind_progressive(self, element: MediaElement, url: str, reload: bool = False):
        element.src = url
        if reload:
            element.load()
        self._bound_url = url
        self.is_loading = False
        self.state = PlaybackState.PROGRESSIVE
        logger.info(f"Playing progressive source: {url}")

    def _bind_native(self, element: MediaElement, target: ResolvedTarget):
        """Element plays the manifest itself; no session is created"""
        src = self._current_src

        def on_native_error(event: MediaEvent):
            if self._native_listener is not on_native_error:
                return
            self._native_listener = None
            self._on_native_error(element, target, src)

        element.add_event_listener("error", on_native_error, once=True)
        self._native_listener = on_native_error
        element.src = target.url
        self._bound_url = target.url
        self.state = PlaybackState.STREAMING
        logger.info(f"Using native HLS playback: {target.url}")

    def _on_native_error(self, element: MediaElement, target: ResolvedTarget, src: str):
        error = element.error
        code = error.code if error else None

        if code == MediaErrorCode.SRC_NOT_SUPPORTED:
            if target.has_fallback and not self._fallback_done:
                logger.warning(f"Native HLS failed, falling back to progressive: {src}")
                self.failure_memory.mark(src)
                self._fallback_done = True
                self._bind_progressive(element, target.fallback_url, reload=True)
                return
            self._surface(PlaybackErrorKind.UNSUPPORTED,
                          "Manifest source is not supported by this element")
        elif code == MediaErrorCode.NETWORK:
            self._surface(PlaybackErrorKind.NETWORK, "Network error while loading HLS stream")
        elif code == MediaErrorCode.DECODE:
            self._surface(PlaybackErrorKind.MEDIA, "Media error while playing HLS stream")
        else:
            logger.debug(f"Ignoring native media error {code} for {src}")

    def _handle_unsupported(self, element: MediaElement, target: ResolvedTarget):
        if target.has_fallback:
            logger.warning(
                f"HLS engine not supported, playing progressive source: {target.fallback_url}")
            self._bind_progressive(element, target.fallback_url)
            return
        self.state = PlaybackState.IDLE
        self._surface(PlaybackErrorKind.UNSUPPORTED,
                      "HLS playback is not supported in this environment")

    def _attach_session(self, element: MediaElement, target: ResolvedTarget):
        session = self.session_factory()
        self._session = session

        # Events from a session that is no longer current are dropped
        def on_manifest_parsed(event, data):
            if session is self._session:
                self._on_manifest_parsed(element)

        def on_frag_loaded(event, data):
            if session is self._session:
                self.error_budget.reset()

        def on_error(event, data: ErrorData):
            if session is self._session:
                self._on_session_error(session, data)

        session.on(Events.MANIFEST_PARSED, on_manifest_parsed)
        session.on(Events.FRAG_LOADED, on_frag_loaded)
        session.on(Events.ERROR, on_error)

        self.is_loading = True
        self.state = PlaybackState.STREAMING
        logger.info(f"Created HLS session for {target.url}")
        session.load_source(target.url)
        session.attach_media(element)

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def _on_manifest_parsed(self, element: MediaElement):
        self.is_loading = False
        self.error = None
        self.failure_memory.clear(self._current_src)
        self.error_budget.reset()

        if self.autoplay and element.paused:
            try:
                element.play()
            except PlaybackNotAllowedError:
                logger.debug("Autoplay was prevented")

    def _on_session_error(self, session: HlsSession, data: ErrorData):
        self.is_loading = False

        if not data.fatal:
            if self.error_budget.record():
                logger.warning(
                    f"Non-fatal error budget exhausted ({self.error_budget.count}/{self.error_budget.limit}), "
                    f"treating {data.details.value} as fatal")
                self._handle_fatal(session, data)
            else:
                logger.debug(
                    f"Non-fatal HLS error {data.details.value} "
                    f"({self.error_budget.count}/{self.error_budget.limit})")
            return

        self._handle_fatal(session, data)

    def _handle_fatal(self, session: HlsSession, data: ErrorData):
        if data.type == ErrorTypes.NETWORK_ERROR:
            if self._can_fall_back():
                if self._is_not_found(data):
                    reason = f"not found ({data.response_code or data.details.value})"
                else:
                    reason = f"fatal network error ({data.details.value})"
                self._fall_back(reason)
                return
            self._surface(PlaybackErrorKind.NETWORK, "Network error while loading HLS stream", data)
            return

        if data.type == ErrorTypes.MEDIA_ERROR:
            if not self._media_recovery_attempted:
                self._media_recovery_attempted = True
                try:
                    session.recover_media_error()
                    return
                except Exception as e:
                    logger.warning(f"Media error recovery failed: {e}")
            self._surface(PlaybackErrorKind.MEDIA, "Media error while playing HLS stream", data)
            return

        self._surface(PlaybackErrorKind.MEDIA, "Unknown HLS error", data)

    @staticmethod
    def _is_not_found(data: ErrorData) -> bool:
        return (data.details == ErrorDetails.MANIFEST_LOAD_ERROR or
                data.response_code in NOT_FOUND_CODES)

    def _can_fall_back(self) -> bool:
        return (self._target is not None and self._target.has_fallback and
                not self._fallback_done)

    def _fall_back(self, reason: str):
        src = self._current_src
        element = self._element
        logger.warning(
            f"HLS not available ({reason}), falling back to progressive: {self._target.url} -> {src}")

        self.failure_memory.mark(src)
        self._fallback_done = True
        self._destroy_session()
        self._bind_progressive(element, self._target.fallback_url, reload=True)

    def _surface(self, kind: PlaybackErrorKind, message: str, data: Optional[ErrorData] = None):
        if not self._mounted:
            return
        error = PlaybackError(kind, message, source=self._current_src, data=data)
        self.error = error
        self.is_loading = False
        logger.error(f"{message} ({kind.value}) for {self._current_src}")
        if self.on_error:
            self.on_error(error)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _destroy_session(self):
        session = self._session
        if session is None:
            return
        self._session = None
        try:
            session.stop_load()
            session.detach_media()
            session.destroy()
        except Exception as e:
            logger.warning(f"Error destroying HLS session: {e}")

    def _teardown(self):
        self._destroy_session()
        if self._native_listener is not None and self._element is not None:
            self._element.remove_event_listener("error", self._native_listener)
        self._native_listener = None
        self._bound_url = None
        self.is_loading = False

    def _release_element(self):
        if self._element is not None:
            self._element.release(self)
        self._element = None
