"""
Tests for the adaptive video source resolver.

Tests cover:
- Target resolution (progressive, manifest, derived manifest)
- Manifest -> progressive fallback and FailureMemory
- Non-fatal error budget escalation
- Media error recovery
- Native manifest support branch
- Teardown ordering, idempotence and unmount
"""
from playback_resolver import (
    AdaptiveSourceResolver,
    ErrorBudget,
    PlaybackErrorKind,
    PlaybackState,
)
from hls_engine import ErrorData, ErrorDetails, ErrorTypes, Events
from media_element import ElementInUseError, ElementRef, MediaElement, MediaErrorCode
from source_resolver import FailureMemory
import pytest
from unittest.mock import Mock

MANIFEST_MIME = "application/vnd.apple.mpegurl"
MP4_SRC = "https://cdn.example.com/courses/5/video-1.mp4"
MP4_MANIFEST = "https://cdn.example.com/courses/5/hls/video-1/video-1.m3u8"
HLS_SRC = "https://cdn.example.com/stream.m3u8"


class FakeSession:
    """Records lifecycle calls and lets tests emit engine events"""

    supported = True
    created: list = []
    log: list = []
    recover_error = None

    @classmethod
    def is_supported(cls):
        return cls.supported

    def __init__(self):
        self.handlers = {}
        self.calls = []
        self.url = None
        self.media = None
        self.destroyed = False
        type(self).created.append(self)
        type(self).log.append((id(self), "created"))

    def _record(self, name):
        self.calls.append(name)
        type(self).log.append((id(self), name))

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event, handler):
        self.handlers.get(event, []).remove(handler)

    def emit(self, event, data=None):
        for handler in list(self.handlers.get(event, [])):
            handler(event, data)

    def load_source(self, url):
        self._record("load_source")
        self.url = url

    def attach_media(self, media):
        self._record("attach_media")
        for other in type(self).created:
            if other is not self and not other.destroyed and other.media is media:
                raise AssertionError("two live sessions attached to the same element")
        self.media = media

    def stop_load(self):
        self._record("stop_load")

    def detach_media(self):
        self._record("detach_media")
        self.media = None

    def recover_media_error(self):
        self._record("recover_media_error")
        if type(self).recover_error is not None:
            raise type(self).recover_error

    def destroy(self):
        self._record("destroy")
        self.destroyed = True
        self.handlers.clear()


def fatal(error_type=ErrorTypes.NETWORK_ERROR, details=ErrorDetails.MANIFEST_LOAD_ERROR, code=None):
    return ErrorData(type=error_type, details=details, fatal=True, response_code=code)


def non_fatal(details=ErrorDetails.FRAG_LOAD_ERROR):
    return ErrorData(type=ErrorTypes.NETWORK_ERROR, details=details, fatal=False)


@pytest.fixture
def session_cls():
    class Session(FakeSession):
        created = []
        log = []
        supported = True
        recover_error = None
    return Session


@pytest.fixture
def element():
    return MediaElement()


@pytest.fixture
def on_error():
    return Mock()


@pytest.fixture
def resolver(element, on_error, session_cls):
    return AdaptiveSourceResolver(
        ElementRef(element),
        on_error=on_error,
        session_factory=session_cls,
        error_budget=5,
        prefer_native=True,
        autoplay=True
    )


class TestErrorBudget:
    """Test ErrorBudget counter"""

    def test_exhausted_after_limit(self):
        budget = ErrorBudget(5)
        assert [budget.record() for _ in range(6)] == [False] * 5 + [True]

    def test_reset(self):
        budget = ErrorBudget(1)
        budget.record()
        budget.reset()
        assert budget.record() is False


class TestTargetBinding:
    """Test how sources are bound to the element"""

    def test_idle_without_source(self, resolver, element, session_cls):
        resolver.update(None)
        assert resolver.state == PlaybackState.IDLE
        assert session_cls.created == []
        assert element.bindings == []

    def test_idle_without_element(self, on_error, session_cls):
        resolver = AdaptiveSourceResolver(ElementRef(None), on_error=on_error, session_factory=session_cls)
        resolver.update(MP4_SRC)
        assert resolver.state == PlaybackState.IDLE
        assert session_cls.created == []

    def test_progressive_without_derivable_manifest(self, resolver, element, session_cls):
        src = "https://cdn.example.com/files/lecture.ogg"
        resolver.update(src)

        assert element.src == src
        assert session_cls.created == []
        assert resolver.state == PlaybackState.PROGRESSIVE
        assert resolver.is_adaptive is False

    def test_manifest_source_creates_session(self, resolver, element, session_cls):
        resolver.update(HLS_SRC)

        assert len(session_cls.created) == 1
        session = session_cls.created[0]
        assert session.url == HLS_SRC
        assert session.media is element
        assert session.calls == ["load_source", "attach_media"]
        assert resolver.state == PlaybackState.STREAMING
        assert resolver.is_loading is True

    def test_manifest_parsed_starts_playback(self, resolver, element, session_cls):
        resolver.update(HLS_SRC)
        session_cls.created[0].emit(Events.MANIFEST_PARSED, {"levels": []})

        assert element.paused is False
        assert resolver.is_loading is False

    def test_autoplay_rejection_is_swallowed(self, on_error, session_cls):
        element = MediaElement(autoplay_allowed=False)
        resolver = AdaptiveSourceResolver(ElementRef(element), on_error=on_error, session_factory=session_cls)
        resolver.update(HLS_SRC)

        session_cls.created[0].emit(Events.MANIFEST_PARSED, {"levels": []})

        assert element.paused is True
        assert resolver.error is None
        on_error.assert_not_called()

    def test_progressive_source_tries_derived_manifest(self, resolver, session_cls):
        resolver.update(MP4_SRC)

        assert session_cls.created[0].url == MP4_MANIFEST
        assert resolver.target.fallback_url == MP4_SRC


class TestManifestFallback:
    """Test the one-way Manifest -> Progressive fallback"""

    def test_manifest_404_falls_back_once(self, resolver, element, on_error, session_cls):
        resolver.update(MP4_SRC)
        session = session_cls.created[0]

        session.emit(Events.ERROR, fatal(code=404))

        assert element.src == MP4_SRC
        assert element.bindings.count(MP4_SRC) == 1
        assert element.load_count == 1
        assert MP4_SRC in resolver.failure_memory
        assert resolver.state == PlaybackState.PROGRESSIVE
        assert resolver.session is None
        assert session.calls[-3:] == ["stop_load", "detach_media", "destroy"]
        on_error.assert_not_called()

    def test_no_further_manifest_attempts_for_failed_source(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session_cls.created[0].emit(Events.ERROR, fatal(code=404))

        # Same source again is a no-op
        resolver.update(MP4_SRC)
        assert len(session_cls.created) == 1

        # Another source, then back: the failed source binds progressive directly
        resolver.update("https://cdn.example.com/courses/5/video-2.mp4")
        assert len(session_cls.created) == 2
        resolver.update(MP4_SRC)
        assert len(session_cls.created) == 2
        assert element.src == MP4_SRC
        assert resolver.state == PlaybackState.PROGRESSIVE

    def test_forbidden_falls_back(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session_cls.created[0].emit(
            Events.ERROR, fatal(details=ErrorDetails.LEVEL_LOAD_ERROR, code=403))
        assert element.src == MP4_SRC

    def test_other_fatal_network_error_falls_back(self, resolver, element, on_error, session_cls):
        resolver.update(MP4_SRC)
        session_cls.created[0].emit(
            Events.ERROR, fatal(details=ErrorDetails.FRAG_LOAD_TIMEOUT))

        assert element.src == MP4_SRC
        on_error.assert_not_called()

    def test_fatal_network_error_without_fallback_is_surfaced(self, resolver, element, on_error, session_cls):
        resolver.update(HLS_SRC)
        session = session_cls.created[0]
        session.emit(Events.ERROR, fatal(code=404))

        on_error.assert_called_once()
        error = on_error.call_args.args[0]
        assert error.kind == PlaybackErrorKind.NETWORK
        assert error.source == HLS_SRC
        assert resolver.error is error
        assert session.destroyed is False
        assert element.bindings == []

    def test_successful_parse_clears_failure_memory(self, element, on_error, session_cls):
        memory = FailureMemory()
        resolver = AdaptiveSourceResolver(
            ElementRef(element), on_error=on_error, session_factory=session_cls, failure_memory=memory)
        resolver.update(HLS_SRC)
        memory.mark(HLS_SRC)

        session_cls.created[0].emit(Events.MANIFEST_PARSED, {})

        assert HLS_SRC not in memory


class TestErrorBudgetEscalation:
    """Test non-fatal error counting"""

    def test_errors_within_budget_do_not_fall_back(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session = session_cls.created[0]
        for _ in range(5):
            session.emit(Events.ERROR, non_fatal())

        assert element.bindings == []
        assert resolver.session is session
        assert resolver.error_budget.count == 5

    def test_sixth_error_forces_fallback(self, resolver, element, on_error, session_cls):
        resolver.update(MP4_SRC)
        session = session_cls.created[0]
        for _ in range(6):
            session.emit(Events.ERROR, non_fatal())

        assert element.bindings == [MP4_SRC]
        assert session.destroyed is True
        assert MP4_SRC in resolver.failure_memory
        on_error.assert_not_called()

    def test_fragment_success_resets_budget(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session = session_cls.created[0]
        for _ in range(5):
            session.emit(Events.ERROR, non_fatal())
        session.emit(Events.FRAG_LOADED, {"sn": 0})
        for _ in range(5):
            session.emit(Events.ERROR, non_fatal())

        assert element.bindings == []
        assert session.destroyed is False

    def test_exhausted_budget_without_fallback_is_surfaced(self, resolver, on_error, session_cls):
        resolver.update(HLS_SRC)
        session = session_cls.created[0]
        for _ in range(6):
            session.emit(Events.ERROR, non_fatal())

        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.NETWORK


class TestMediaErrors:
    """Test fatal media error handling"""

    def test_media_error_is_recovered_once(self, resolver, on_error, session_cls):
        resolver.update(HLS_SRC)
        session = session_cls.created[0]

        session.emit(Events.ERROR, fatal(ErrorTypes.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR))
        assert session.calls.count("recover_media_error") == 1
        on_error.assert_not_called()

        session.emit(Events.ERROR, fatal(ErrorTypes.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR))
        assert session.calls.count("recover_media_error") == 1
        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.MEDIA

    def test_failed_recovery_is_surfaced(self, resolver, on_error, session_cls):
        session_cls.recover_error = RuntimeError("no media attached")
        resolver.update(HLS_SRC)

        session_cls.created[0].emit(
            Events.ERROR, fatal(ErrorTypes.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR))

        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.MEDIA

    def test_media_error_does_not_fall_back(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session_cls.created[0].emit(
            Events.ERROR, fatal(ErrorTypes.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR))
        assert element.bindings == []

    def test_other_fatal_error_is_surfaced(self, resolver, on_error, session_cls):
        resolver.update(MP4_SRC)
        session_cls.created[0].emit(
            Events.ERROR, fatal(ErrorTypes.OTHER_ERROR, ErrorDetails.INTERNAL_EXCEPTION))

        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.MEDIA


class TestNativePlayback:
    """Test the native manifest support branch"""

    @pytest.fixture
    def native_element(self):
        return MediaElement(native_types=[MANIFEST_MIME])

    @pytest.fixture
    def native_resolver(self, native_element, on_error, session_cls):
        return AdaptiveSourceResolver(
            ElementRef(native_element), on_error=on_error, session_factory=session_cls)

    def test_binds_manifest_without_session(self, native_resolver, native_element, session_cls):
        native_resolver.update(MP4_SRC)

        assert native_element.src == MP4_MANIFEST
        assert session_cls.created == []
        assert native_resolver.state == PlaybackState.STREAMING
        assert native_element.listener_count("error") == 1

    def test_fallback_survives_failing_error_listener(self, native_resolver, native_element):
        def analytics_hook(event):
            raise RuntimeError("analytics hook failed")

        native_element.add_event_listener("error", analytics_hook)
        native_resolver.update(MP4_SRC)

        native_element.fail(MediaErrorCode.SRC_NOT_SUPPORTED)

        assert native_element.src == MP4_SRC
        assert MP4_SRC in native_resolver.failure_memory
        assert native_resolver.state == PlaybackState.PROGRESSIVE

    def test_unsupported_source_falls_back_once(self, native_resolver, native_element, on_error):
        native_resolver.update(MP4_SRC)

        native_element.fail(MediaErrorCode.SRC_NOT_SUPPORTED)
        assert native_element.src == MP4_SRC
        assert native_element.load_count == 1
        assert MP4_SRC in native_resolver.failure_memory
        assert native_resolver.state == PlaybackState.PROGRESSIVE

        native_element.fail(MediaErrorCode.SRC_NOT_SUPPORTED)
        assert native_element.bindings.count(MP4_SRC) == 1
        on_error.assert_not_called()

    def test_decode_error_does_not_fall_back(self, native_resolver, native_element, on_error):
        native_resolver.update(MP4_SRC)
        native_element.fail(MediaErrorCode.DECODE)

        assert native_element.src == MP4_MANIFEST
        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.MEDIA

    def test_unsupported_manifest_without_fallback(self, native_resolver, native_element, on_error):
        native_resolver.update(HLS_SRC)
        native_element.fail(MediaErrorCode.SRC_NOT_SUPPORTED)

        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.UNSUPPORTED

    def test_teardown_removes_listener(self, native_resolver, native_element):
        native_resolver.update(MP4_SRC)
        native_resolver.update(None)
        assert native_element.listener_count("error") == 0

    def test_native_can_be_disabled(self, native_element, on_error, session_cls):
        resolver = AdaptiveSourceResolver(
            ElementRef(native_element), on_error=on_error, session_factory=session_cls,
            prefer_native=False)
        resolver.update(MP4_SRC)
        assert len(session_cls.created) == 1


class TestUnsupportedEngine:
    """Test behaviour without engine or native support"""

    def test_falls_back_to_progressive(self, resolver, element, on_error, session_cls):
        session_cls.supported = False
        resolver.update(MP4_SRC)

        assert element.src == MP4_SRC
        assert session_cls.created == []
        on_error.assert_not_called()

    def test_manifest_source_is_surfaced(self, resolver, element, on_error, session_cls):
        session_cls.supported = False
        resolver.update(HLS_SRC)

        on_error.assert_called_once()
        assert on_error.call_args.args[0].kind == PlaybackErrorKind.UNSUPPORTED
        assert element.bindings == []


class TestLifecycle:
    """Test idempotence, teardown ordering and unmount"""

    def test_same_source_is_idempotent(self, resolver, session_cls):
        resolver.update(MP4_SRC)
        resolver.update(MP4_SRC)
        resolver.update(MP4_SRC)
        assert len(session_cls.created) == 1

    def test_teardown_before_create(self, resolver, session_cls):
        resolver.update(MP4_SRC)
        resolver.update("https://cdn.example.com/courses/5/video-2.mp4")

        first, second = session_cls.created
        log = session_cls.log
        assert first.destroyed is True
        assert log.index((id(first), "destroy")) < log.index((id(second), "created"))

    def test_events_from_replaced_session_are_ignored(self, resolver, element, on_error, session_cls):
        resolver.update(MP4_SRC)
        first = session_cls.created[0]
        handlers = {event: list(hs) for event, hs in first.handlers.items()}
        resolver.update("https://cdn.example.com/courses/5/video-2.mp4")

        for handler in handlers[Events.ERROR]:
            handler(Events.ERROR, fatal(code=404))

        assert element.bindings == []
        on_error.assert_not_called()

    def test_clearing_source_tears_down(self, resolver, session_cls):
        resolver.update(MP4_SRC)
        resolver.update(None)

        assert session_cls.created[0].destroyed is True
        assert resolver.session is None
        assert resolver.state == PlaybackState.IDLE

    def test_unmount_mid_manifest_load(self, resolver, on_error, session_cls):
        resolver.update(MP4_SRC)
        session = session_cls.created[0]
        handlers = list(session.handlers[Events.ERROR])

        resolver.unmount()

        assert session.calls[-3:] == ["stop_load", "detach_media", "destroy"]
        assert resolver.state == PlaybackState.TORN_DOWN

        for handler in handlers:
            handler(Events.ERROR, fatal(ErrorTypes.OTHER_ERROR, ErrorDetails.INTERNAL_EXCEPTION))
        on_error.assert_not_called()

        resolver.update(MP4_SRC)
        assert len(session_cls.created) == 1

    def test_element_change_rebuilds_session(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        other = MediaElement()
        resolver.element_ref.current = other
        resolver.update(MP4_SRC)

        first, second = session_cls.created
        assert first.destroyed is True
        assert second.media is other
        assert element.owner is None
        assert other.owner is resolver

    def test_element_is_exclusive(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        intruder = AdaptiveSourceResolver(ElementRef(element), session_factory=session_cls)
        with pytest.raises(ElementInUseError):
            intruder.update(HLS_SRC)
        assert len(session_cls.created) == 1

    def test_rejected_element_keeps_current_binding(self, resolver, element, session_cls):
        resolver.update(MP4_SRC)
        session = resolver.session

        taken = MediaElement()
        other_owner = object()
        taken.claim(other_owner)
        resolver.element_ref.current = taken

        with pytest.raises(ElementInUseError):
            resolver.update(MP4_SRC)

        assert resolver.session is session
        assert session.destroyed is False
        assert session.media is element
        assert element.owner is resolver
        assert taken.owner is other_owner
        assert resolver.state == PlaybackState.STREAMING
        assert resolver.current_src == MP4_SRC

        # Once the element is free the switch goes through
        taken.release(other_owner)
        resolver.update(MP4_SRC)
        assert session.destroyed is True
        assert resolver.session.media is taken
        assert element.owner is None

    def test_reentrant_update_is_ignored(self, element, session_cls):
        holder = {}

        class ReentrantSession(session_cls):
            def __init__(self):
                super().__init__()
                holder["resolver"].update("https://cdn.example.com/other.m3u8")

        resolver = AdaptiveSourceResolver(ElementRef(element), session_factory=ReentrantSession)
        holder["resolver"] = resolver
        resolver.update(HLS_SRC)

        assert len(session_cls.created) == 1
        assert resolver.current_src == HLS_SRC
        assert resolver.session.url == HLS_SRC
