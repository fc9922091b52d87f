"""
Playback source inference.

Decides whether a raw media URL should be played from an adaptive (HLS)
manifest or from the progressive file, and derives the conventional manifest
location that the transcoder writes next to an uploaded video:

    https://cdn/courses/5/video-1.mp4 -> https://cdn/courses/5/hls/video-1/video-1.m3u8
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Set, Union
from urllib.parse import urlparse

from config import settings

logger = logging.getLogger(__name__)

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


class TargetKind(str, Enum):
    MANIFEST = "manifest"
    PROGRESSIVE = "progressive"


@dataclass(frozen=True)
class PlaybackSource:
    url: str

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class ResolvedTarget:
    kind: TargetKind
    url: str
    # Progressive URL to rebind to when the manifest turns out to be unusable.
    # None when the source itself is a manifest.
    fallback_url: Optional[str] = None

    @property
    def is_manifest(self) -> bool:
        return self.kind == TargetKind.MANIFEST

    @property
    def has_fallback(self) -> bool:
        return self.fallback_url is not None


class FailureMemory:
    """Sources whose manifest already failed. Marked sources never resolve to a manifest again."""

    def __init__(self):
        self._failed: Set[str] = set()

    def mark(self, src: str):
        self._failed.add(str(src))

    def clear(self, src: str):
        self._failed.discard(str(src))

    def reset(self):
        self._failed.clear()

    def __contains__(self, src) -> bool:
        return str(src) in self._failed

    def __len__(self) -> int:
        return len(self._failed)

    def __iter__(self) -> Iterator[str]:
        return iter(self._failed)


def is_manifest_url(url: str) -> bool:
    """Check if URL points at an adaptive manifest"""
    return settings.MANIFEST_EXTENSION in url.lower()


def is_progressive_url(url: str) -> bool:
    """Check if URL follows one of the progressive upload naming conventions"""
    url_lower = url.lower()
    if any(ext in url_lower for ext in settings.PROGRESSIVE_EXTENSIONS):
        return True
    return any(marker in url for marker in settings.PROGRESSIVE_NAME_MARKERS)


def derive_manifest_url(
    url: str,
    subfolder: Optional[str] = None,
    naming: Optional[str] = None
) -> Optional[str]:
    """Build the manifest URL the transcoder produces for a progressive file.

    Args:
        url: Absolute progressive media URL
        subfolder: Adaptive output folder, defaults to settings.ADAPTIVE_SUBFOLDER
        naming: "stem" for <name>/<name>.m3u8, "master" for <name>/master.m3u8

    Returns:
        The candidate manifest URL on the same origin, or None when the URL
        cannot be parsed or has no file component.
    """
    subfolder = (subfolder or settings.ADAPTIVE_SUBFOLDER).strip("/")
    naming = naming or settings.MANIFEST_NAMING

    try:
        parsed = urlparse(url)
    except ValueError as e:
        logger.warning(f"Failed to construct manifest URL for {url}: {e}")
        return None

    if not parsed.scheme or not parsed.netloc:
        return None

    key = parsed.path[1:] if parsed.path.startswith("/") else parsed.path
    if not key:
        return None

    last_slash = key.rfind("/")
    path = key[:last_slash] if last_slash >= 0 else ""
    filename = key[last_slash + 1:] if last_slash >= 0 else key
    base_name = _EXTENSION_RE.sub("", filename)
    if not base_name:
        return None

    if naming == "master":
        manifest_name = f"master{settings.MANIFEST_EXTENSION}"
    else:
        manifest_name = f"{base_name}{settings.MANIFEST_EXTENSION}"

    manifest_key = f"{subfolder}/{base_name}/{manifest_name}"
    if path:
        manifest_key = f"{path}/{manifest_key}"

    return f"{parsed.scheme}://{parsed.netloc}/{manifest_key}"


def resolve_target(
    source: Union[str, PlaybackSource],
    failure_memory: Optional[FailureMemory] = None
) -> ResolvedTarget:
    """Pick the delivery mode for a source.

    Manifest URLs are used as-is. Progressive URLs resolve to their derived
    manifest with the original URL kept as fallback, unless the manifest
    already failed for this exact source. Everything else plays progressive.
    """
    src = str(source)

    if is_manifest_url(src):
        return ResolvedTarget(TargetKind.MANIFEST, src)

    if is_progressive_url(src):
        if failure_memory is not None and src in failure_memory:
            logger.info(
                f"Manifest previously failed for this source, using progressive directly: {src}")
            return ResolvedTarget(TargetKind.PROGRESSIVE, src)

        manifest_url = derive_manifest_url(src)
        if manifest_url:
            return ResolvedTarget(TargetKind.MANIFEST, manifest_url, fallback_url=src)

    return ResolvedTarget(TargetKind.PROGRESSIVE, src)


def get_content_type(url: str) -> str:
    """Determine content type based on URL extension"""
    url_lower = urlparse(url).path.lower() or url.lower()
    if url_lower.endswith('.ts'):
        return 'video/mp2t'
    elif url_lower.endswith('.m3u8'):
        return 'application/vnd.apple.mpegurl'
    elif url_lower.endswith('.mp4'):
        return 'video/mp4'
    elif url_lower.endswith('.mkv'):
        return 'video/x-matroska'
    elif url_lower.endswith('.webm'):
        return 'video/webm'
    elif url_lower.endswith('.avi'):
        return 'video/x-msvideo'
    else:
        return 'application/octet-stream'
