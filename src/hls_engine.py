"""
Adaptive streaming session.

HlsSession loads an HLS manifest, picks a variant by measured bandwidth and
feeds fragments into an attached MediaElement. It reports progress and
failures through events in the same shape hls.js uses (MANIFEST_PARSED,
FRAG_LOADED, ERROR with type/details/fatal), so the resolver only has to
react to lifecycle events.

All network I/O happens in a single asyncio task owned by the session.
Handlers are plain callables invoked as handler(event, data).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import m3u8

from config import settings
from media_element import MediaDecodeError, MediaElement

logger = logging.getLogger(__name__)


class Events(str, Enum):
    MEDIA_ATTACHED = "hlsMediaAttached"
    MEDIA_DETACHED = "hlsMediaDetached"
    MANIFEST_LOADING = "hlsManifestLoading"
    MANIFEST_PARSED = "hlsManifestParsed"
    LEVEL_SWITCHED = "hlsLevelSwitched"
    LEVEL_LOADED = "hlsLevelLoaded"
    FRAG_LOADED = "hlsFragLoaded"
    BUFFER_EOS = "hlsBufferEos"
    ERROR = "hlsError"
    DESTROYING = "hlsDestroying"


class ErrorTypes(str, Enum):
    NETWORK_ERROR = "networkError"
    MEDIA_ERROR = "mediaError"
    OTHER_ERROR = "otherError"


class ErrorDetails(str, Enum):
    MANIFEST_LOAD_ERROR = "manifestLoadError"
    MANIFEST_LOAD_TIMEOUT = "manifestLoadTimeOut"
    MANIFEST_PARSING_ERROR = "manifestParsingError"
    LEVEL_LOAD_ERROR = "levelLoadError"
    LEVEL_LOAD_TIMEOUT = "levelLoadTimeOut"
    FRAG_LOAD_ERROR = "fragLoadError"
    FRAG_LOAD_TIMEOUT = "fragLoadTimeOut"
    BUFFER_APPEND_ERROR = "bufferAppendError"
    INTERNAL_EXCEPTION = "internalException"


@dataclass
class ErrorData:
    type: ErrorTypes
    details: ErrorDetails
    fatal: bool
    url: Optional[str] = None
    response_code: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class Level:
    index: int
    url: str
    bandwidth: int = 0
    resolution: Optional[Tuple[int, int]] = None


@dataclass(frozen=True)
class EngineConfig:
    manifest_loading_max_retry: int = 0
    level_loading_max_retry: int = 0
    frag_loading_max_retry: int = 2
    manifest_loading_retry_delay: float = 0.5
    level_loading_retry_delay: float = 0.5
    frag_loading_retry_delay: float = 0.5
    manifest_loading_timeout: float = 2.0
    level_loading_timeout: float = 2.0
    frag_loading_timeout: float = 2.0
    back_buffer_length: float = 90.0
    max_buffer_length: float = 60.0
    max_max_buffer_length: float = 120.0
    max_buffer_size: int = 60 * 1000 * 1000
    abr_ewma_default_estimate: float = 500000.0
    abr_ewma_alpha: float = 0.3
    abr_bandwidth_factor: float = 0.95
    abr_bandwidth_up_factor: float = 0.7
    min_auto_bitrate: int = 0
    buffer_poll_interval: float = 0.25
    user_agent: str = settings.DEFAULT_USER_AGENT
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "EngineConfig":
        return cls(
            manifest_loading_max_retry=settings.MANIFEST_LOADING_MAX_RETRY,
            level_loading_max_retry=settings.LEVEL_LOADING_MAX_RETRY,
            frag_loading_max_retry=settings.FRAG_LOADING_MAX_RETRY,
            manifest_loading_retry_delay=settings.MANIFEST_LOADING_RETRY_DELAY,
            level_loading_retry_delay=settings.LEVEL_LOADING_RETRY_DELAY,
            frag_loading_retry_delay=settings.FRAG_LOADING_RETRY_DELAY,
            manifest_loading_timeout=settings.MANIFEST_LOADING_TIMEOUT,
            level_loading_timeout=settings.LEVEL_LOADING_TIMEOUT,
            frag_loading_timeout=settings.FRAG_LOADING_TIMEOUT,
            back_buffer_length=settings.BACK_BUFFER_LENGTH,
            max_buffer_length=settings.MAX_BUFFER_LENGTH,
            max_max_buffer_length=settings.MAX_MAX_BUFFER_LENGTH,
            max_buffer_size=settings.MAX_BUFFER_SIZE,
            abr_ewma_default_estimate=settings.ABR_EWMA_DEFAULT_ESTIMATE,
            abr_ewma_alpha=settings.ABR_EWMA_ALPHA,
            abr_bandwidth_factor=settings.ABR_BANDWIDTH_FACTOR,
            abr_bandwidth_up_factor=settings.ABR_BANDWIDTH_UP_FACTOR,
            min_auto_bitrate=settings.MIN_AUTO_BITRATE,
            user_agent=settings.DEFAULT_USER_AGENT,
        )


class EngineStateError(RuntimeError):
    """Raised when a session operation is invalid in its current state"""


class _LoadError(Exception):
    def __init__(self, url: str, response_code: Optional[int] = None, timed_out: bool = False, reason: str = ""):
        super().__init__(reason or f"Failed to load {url}")
        self.url = url
        self.response_code = response_code
        self.timed_out = timed_out
        self.reason = reason


class _FatalStop(Exception):
    """A fatal error was emitted; the loader stops"""


# (max retry, retry delay, timeout, error detail, timeout detail) per loader kind
_LOADERS = {
    "manifest": ("manifest_loading_max_retry", "manifest_loading_retry_delay", "manifest_loading_timeout",
                 ErrorDetails.MANIFEST_LOAD_ERROR, ErrorDetails.MANIFEST_LOAD_TIMEOUT),
    "level": ("level_loading_max_retry", "level_loading_retry_delay", "level_loading_timeout",
              ErrorDetails.LEVEL_LOAD_ERROR, ErrorDetails.LEVEL_LOAD_TIMEOUT),
    "frag": ("frag_loading_max_retry", "frag_loading_retry_delay", "frag_loading_timeout",
             ErrorDetails.FRAG_LOAD_ERROR, ErrorDetails.FRAG_LOAD_TIMEOUT),
}

Handler = Callable[[Events, Any], Any]


class HlsSession:
    def __init__(self, config: Optional[EngineConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or EngineConfig.from_settings()
        self._transport = transport
        self._handlers: Dict[Events, List[Handler]] = {}
        self._task: Optional[asyncio.Task] = None
        self._destroyed = False

        self.url: Optional[str] = None
        self.media: Optional[MediaElement] = None
        self.levels: List[Level] = []
        self.current_level = -1
        self.bandwidth_estimate = self.config.abr_ewma_default_estimate
        self._level_details: Optional[m3u8.M3U8] = None
        self._next_sn: Optional[int] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._close_task: Optional[asyncio.Task] = None

    @classmethod
    def is_supported(cls) -> bool:
        """The session drives its loader on the running event loop"""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def loading(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: Events, handler: Handler):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: Events, handler: Handler):
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: Events, data: Any = None):
        if self._destroyed:
            return
        for handler in list(self._handlers.get(event, [])):
            # A handler may destroy the session; later handlers must not run
            if self._destroyed:
                break
            try:
                handler(event, data)
            except Exception as e:
                logger.error(f"Error in {event.value} handler: {e}")

    def _emit_error(self, error_type: ErrorTypes, details: ErrorDetails, fatal: bool,
                    url: Optional[str] = None, response_code: Optional[int] = None, reason: Optional[str] = None):
        self._emit(Events.ERROR, ErrorData(
            type=error_type,
            details=details,
            fatal=fatal,
            url=url,
            response_code=response_code,
            reason=reason
        ))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_source(self, url: str):
        self._check_alive()
        self.stop_load()
        self.url = url
        self.levels = []
        self.current_level = -1
        self._level_details = None
        self._next_sn = None
        if self.media is not None:
            self.start_load()

    def attach_media(self, media: MediaElement):
        self._check_alive()
        if self.media is not None and self.media is not media:
            self.detach_media()
        self.media = media
        media.attach_source_buffer()
        self._emit(Events.MEDIA_ATTACHED, {"media": media})
        if self.url is not None:
            self.start_load()

    def start_load(self):
        self._check_alive()
        if self.loading or self.url is None or self.media is None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    def stop_load(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def detach_media(self):
        self.stop_load()
        if self.media is None:
            return
        media = self.media
        self.media = None
        media.detach_source_buffer()
        self._emit(Events.MEDIA_DETACHED, {"media": media})

    def recover_media_error(self):
        """Reset the element's source buffer and resume from the failed fragment"""
        self._check_alive()
        if self.media is None:
            raise EngineStateError("Cannot recover media error without attached media")
        logger.info(f"Recovering media error for {self.url}")
        self.stop_load()
        self.media.reset_source_buffer()
        self.start_load()

    def destroy(self):
        if self._destroyed:
            return
        self._emit(Events.DESTROYING)
        self.stop_load()
        self.detach_media()
        self._destroyed = True
        self._handlers.clear()
        self._close_client()
        logger.debug(f"HLS session destroyed for {self.url}")

    def _check_alive(self):
        if self._destroyed:
            raise EngineStateError("HLS session has been destroyed")

    # ------------------------------------------------------------------
    # Loader
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        # One client per session; loader restarts reuse its connections
        if self._client is None:
            headers = {"User-Agent": self.config.user_agent}
            headers.update(self.config.headers)
            self._client = httpx.AsyncClient(transport=self._transport, headers=headers, follow_redirects=True)
        return self._client

    def _close_client(self):
        client = self._client
        self._client = None
        if client is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop to close HTTP client for {self.url}")
            return
        self._close_task = loop.create_task(client.aclose())

    async def _run(self):
        client = self._get_client()
        try:
            if not self.levels:
                await self._load_manifest(client)
            await self._load_fragments(client)
        except _FatalStop:
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error in HLS loader for {self.url}: {e}")
            self._emit_error(ErrorTypes.OTHER_ERROR, ErrorDetails.INTERNAL_EXCEPTION, True,
                             url=self.url, reason=str(e))

    async def _fetch(self, client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
        try:
            response = await client.get(url, timeout=timeout)
        except httpx.TimeoutException as e:
            raise _LoadError(url, timed_out=True, reason=f"Timeout loading {url}: {e}")
        except httpx.HTTPError as e:
            raise _LoadError(url, reason=f"Error loading {url}: {e}")

        if response.status_code >= 400:
            raise _LoadError(url, response_code=response.status_code,
                             reason=f"HTTP {response.status_code} loading {url}")
        return response

    async def _load_with_retry(self, client: httpx.AsyncClient, url: str, kind: str) -> httpx.Response:
        retry_attr, delay_attr, timeout_attr, error_detail, timeout_detail = _LOADERS[kind]
        max_retry = getattr(self.config, retry_attr)
        delay = getattr(self.config, delay_attr)
        timeout = getattr(self.config, timeout_attr)

        attempt = 0
        while True:
            try:
                return await self._fetch(client, url, timeout)
            except _LoadError as e:
                details = timeout_detail if e.timed_out else error_detail
                fatal = attempt >= max_retry
                logger.warning(
                    f"{kind} load failed (attempt {attempt + 1}/{max_retry + 1}): {e.reason}")
                self._emit_error(ErrorTypes.NETWORK_ERROR, details, fatal,
                                 url=url, response_code=e.response_code, reason=e.reason)
                if fatal:
                    raise _FatalStop()
                attempt += 1
                await asyncio.sleep(delay)

    def _parse_playlist(self, response: httpx.Response) -> m3u8.M3U8:
        text = response.text
        if not text.lstrip().startswith("#EXTM3U"):
            raise ValueError("no EXTM3U delimiter")
        return m3u8.loads(text, uri=str(response.url))

    async def _load_manifest(self, client: httpx.AsyncClient):
        self._emit(Events.MANIFEST_LOADING, {"url": self.url})
        response = await self._load_with_retry(client, self.url, "manifest")

        try:
            playlist = self._parse_playlist(response)
        except Exception as e:
            logger.warning(f"Failed to parse manifest {self.url}: {e}")
            self._emit_error(ErrorTypes.NETWORK_ERROR, ErrorDetails.MANIFEST_PARSING_ERROR, True,
                             url=self.url, reason=str(e))
            raise _FatalStop()

        if playlist.is_variant:
            variants = sorted(playlist.playlists,
                              key=lambda p: p.stream_info.bandwidth or 0)
            self.levels = [
                Level(index=i, url=p.absolute_uri,
                      bandwidth=p.stream_info.bandwidth or 0,
                      resolution=p.stream_info.resolution)
                for i, p in enumerate(variants)
            ]
        else:
            self.levels = [Level(index=0, url=str(response.url))]
            self._level_details = playlist

        if not self.levels or (not playlist.is_variant and not playlist.segments):
            self._emit_error(ErrorTypes.NETWORK_ERROR, ErrorDetails.MANIFEST_PARSING_ERROR, True,
                             url=self.url, reason="no levels found in manifest")
            raise _FatalStop()

        logger.info(f"Manifest parsed for {self.url}: {len(self.levels)} level(s)")
        self._emit(Events.MANIFEST_PARSED, {"url": self.url, "levels": list(self.levels)})

    def _select_level(self) -> Level:
        """Highest level whose bandwidth fits the current estimate"""
        candidates = [lvl for lvl in self.levels if lvl.bandwidth >= self.config.min_auto_bitrate] or self.levels
        current = self.levels[self.current_level] if 0 <= self.current_level < len(self.levels) else None

        selected = candidates[0]
        for level in candidates:
            switching_up = current is not None and level.bandwidth > current.bandwidth
            factor = self.config.abr_bandwidth_up_factor if switching_up else self.config.abr_bandwidth_factor
            if level.bandwidth <= self.bandwidth_estimate * factor:
                selected = level
        return selected

    def _update_bandwidth(self, nbytes: int, seconds: float):
        if seconds <= 0 or nbytes <= 0:
            return
        sample = nbytes * 8 / seconds
        alpha = self.config.abr_ewma_alpha
        self.bandwidth_estimate = alpha * sample + (1 - alpha) * self.bandwidth_estimate

    def _buffer_limit(self) -> float:
        top = max((lvl.bandwidth for lvl in self.levels), default=0)
        if top and self.bandwidth_estimate >= 2 * top:
            return self.config.max_max_buffer_length
        return self.config.max_buffer_length

    def _buffer_full(self) -> bool:
        self.media.evict_back_buffer(self.config.back_buffer_length)
        return (self.media.buffered_ahead() >= self._buffer_limit() or
                self.media.buffered_bytes >= self.config.max_buffer_size)

    async def _wait_for_buffer_room(self):
        while self.media is not None and self._buffer_full():
            await asyncio.sleep(self.config.buffer_poll_interval)

    async def _load_level(self, client: httpx.AsyncClient, level: Level) -> m3u8.M3U8:
        response = await self._load_with_retry(client, level.url, "level")
        try:
            details = self._parse_playlist(response)
        except Exception as e:
            self._emit_error(ErrorTypes.NETWORK_ERROR, ErrorDetails.LEVEL_LOAD_ERROR, True,
                             url=level.url, reason=str(e))
            raise _FatalStop()
        self._emit(Events.LEVEL_LOADED, {"level": level.index, "fragments": len(details.segments)})
        return details

    async def _load_fragments(self, client: httpx.AsyncClient):
        loop = asyncio.get_running_loop()

        while True:
            level = self._select_level()
            if level.index != self.current_level:
                if self.current_level >= 0:
                    logger.info(
                        f"Switching level {self.current_level} -> {level.index} "
                        f"(estimate {self.bandwidth_estimate:.0f} bps)")
                    self._level_details = None
                self.current_level = level.index
                self._emit(Events.LEVEL_SWITCHED, {"level": level.index})

            if self._level_details is None:
                self._level_details = await self._load_level(client, level)

            details = self._level_details
            first_sn = details.media_sequence or 0
            if self._next_sn is None or self._next_sn < first_sn:
                self._next_sn = first_sn

            index = self._next_sn - first_sn
            if index >= len(details.segments):
                if details.is_endlist:
                    self._emit(Events.BUFFER_EOS, {"url": self.url})
                    return
                # Live playlist: wait a target duration and reload
                await asyncio.sleep(details.target_duration or 1)
                self._level_details = None
                continue

            segment = details.segments[index]
            await self._wait_for_buffer_room()

            started = loop.time()
            response = await self._load_with_retry(client, segment.absolute_uri, "frag")
            data = response.content
            self._update_bandwidth(len(data), loop.time() - started)

            media = self.media
            if media is None:
                return
            try:
                media.append_buffer(data, segment.duration or 0.0)
            except MediaDecodeError as e:
                logger.warning(f"Failed to append fragment {self._next_sn}: {e}")
                self._emit_error(ErrorTypes.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR, True,
                                 url=segment.absolute_uri, reason=str(e))
                raise _FatalStop()
            media.evict_back_buffer(self.config.back_buffer_length)

            sn = self._next_sn
            self._next_sn = sn + 1
            self._emit(Events.FRAG_LOADED, {
                "sn": sn,
                "level": level.index,
                "url": segment.absolute_uri,
                "bytes": len(data),
                "duration": segment.duration
            })
