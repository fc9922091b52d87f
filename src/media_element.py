"""
Playback element model.

MediaElement mirrors the parts of a video element that source resolution
touches: the bound ``src``, native type support, one-shot event listeners,
play/pause state, error codes, and the source buffer an adaptive engine
appends fragments into.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class MediaErrorCode(IntEnum):
    ABORTED = 1
    NETWORK = 2
    DECODE = 3
    SRC_NOT_SUPPORTED = 4


@dataclass
class MediaError:
    code: MediaErrorCode
    message: str = ""


@dataclass
class MediaEvent:
    type: str
    target: "MediaElement"


class ElementInUseError(RuntimeError):
    """Raised when a second owner tries to claim an element"""


class MediaDecodeError(Exception):
    """Raised when appended data cannot be decoded"""


class PlaybackNotAllowedError(Exception):
    """Raised by play() when autoplay is blocked"""


Listener = Callable[[MediaEvent], Any]


class MediaElement:
    def __init__(
        self,
        native_types: Optional[Iterable[str]] = None,
        autoplay_allowed: bool = True,
        validator: Optional[Callable[[bytes], bool]] = None
    ):
        self.native_types = set(native_types or [])
        self.autoplay_allowed = autoplay_allowed
        self.validator = validator
        self.paused = True
        self.current_time = 0.0
        self.error: Optional[MediaError] = None
        self.owner: Optional[Any] = None
        # Every value assigned to src, in order
        self.bindings: List[str] = []
        self.load_count = 0
        self._src = ""
        self._listeners: Dict[str, List[Tuple[Listener, bool]]] = {}
        # Source buffer state: list of (start, end, size) ranges
        self.source_buffer_attached = False
        self._ranges: List[Tuple[float, float, int]] = []
        self.fragments_appended = 0

    @property
    def src(self) -> str:
        return self._src

    @src.setter
    def src(self, value: str):
        self._src = value or ""
        self.error = None
        self._ranges.clear()
        self.bindings.append(self._src)
        logger.debug(f"Element source set to {self._src}")

    def can_play_type(self, mime_type: str) -> str:
        return "maybe" if mime_type in self.native_types else ""

    def load(self):
        self.load_count += 1
        self.error = None
        self.current_time = 0.0
        self.dispatch_event("loadstart")

    def play(self):
        if not self.autoplay_allowed:
            raise PlaybackNotAllowedError("play() was blocked by the autoplay policy")
        self.paused = False
        self.dispatch_event("play")

    def pause(self):
        self.paused = True
        self.dispatch_event("pause")

    def fail(self, code: MediaErrorCode, message: str = ""):
        """Record a media error and notify 'error' listeners"""
        self.error = MediaError(MediaErrorCode(code), message)
        self.dispatch_event("error")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event_listener(self, event_type: str, listener: Listener, once: bool = False):
        self._listeners.setdefault(event_type, []).append((listener, once))

    def remove_event_listener(self, event_type: str, listener: Listener):
        entries = self._listeners.get(event_type)
        if not entries:
            return
        self._listeners[event_type] = [
            (fn, once) for fn, once in entries if fn is not listener]

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, []))

    def dispatch_event(self, event_type: str):
        event = MediaEvent(event_type, self)
        for listener, once in list(self._listeners.get(event_type, [])):
            if once:
                # One-shot listeners are removed before they run
                self.remove_event_listener(event_type, listener)
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in {event_type} listener: {e}")

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def claim(self, owner: Any):
        if self.owner is not None and self.owner is not owner:
            raise ElementInUseError(
                f"Element is already owned by {self.owner!r}")
        self.owner = owner

    def release(self, owner: Any):
        if self.owner is owner:
            self.owner = None

    # ------------------------------------------------------------------
    # Source buffer (adaptive engine side)
    # ------------------------------------------------------------------

    def attach_source_buffer(self):
        self.source_buffer_attached = True
        self._ranges.clear()

    def detach_source_buffer(self):
        self.source_buffer_attached = False
        self._ranges.clear()

    def reset_source_buffer(self):
        self._ranges.clear()

    def append_buffer(self, data: bytes, duration: float):
        if not self.source_buffer_attached:
            raise MediaDecodeError("No source buffer attached")
        if not data:
            raise MediaDecodeError("Empty media fragment")
        if self.validator is not None and not self.validator(data):
            raise MediaDecodeError("Fragment could not be decoded")

        start = self.buffered_end
        self._ranges.append((start, start + max(duration, 0.0), len(data)))
        self.fragments_appended += 1

    def evict_back_buffer(self, back_buffer_length: float):
        """Drop buffered ranges that ended more than back_buffer_length behind the playhead"""
        cutoff = self.current_time - back_buffer_length
        if cutoff <= 0:
            return
        self._ranges = [r for r in self._ranges if r[1] > cutoff]

    @property
    def buffered_end(self) -> float:
        return self._ranges[-1][1] if self._ranges else 0.0

    @property
    def buffered_bytes(self) -> int:
        return sum(size for _, _, size in self._ranges)

    def buffered_ahead(self) -> float:
        return max(0.0, self.buffered_end - self.current_time)


class ElementRef:
    """Mutable reference to the element a resolver plays into"""

    def __init__(self, current: Optional[MediaElement] = None):
        self.current = current
