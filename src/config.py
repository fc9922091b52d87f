from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8086
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"
    ROOT_PATH: str = ""

    # API Authentication
    API_TOKEN: Optional[str] = None

    # Source inference
    # Folder (next to the progressive file) that holds the transcoder output:
    # courses/5/video-1.mp4 -> courses/5/hls/video-1/video-1.m3u8
    ADAPTIVE_SUBFOLDER: str = "hls"
    MANIFEST_EXTENSION: str = ".m3u8"
    MANIFEST_MIME_TYPE: str = "application/vnd.apple.mpegurl"
    PROGRESSIVE_EXTENSIONS: List[str] = [".mp4", ".webm"]
    # Upload naming conventions for lesson and preview videos
    PROGRESSIVE_NAME_MARKERS: List[str] = ["/video-", "/preview-video-"]
    # "stem" -> <name>/<name>.m3u8, "master" -> <name>/master.m3u8
    MANIFEST_NAMING: str = "stem"

    # Resolver behaviour
    # Bind the manifest directly when the element declares native support
    PREFER_NATIVE_HLS: bool = True
    # Consecutive non-fatal stream errors tolerated before forcing fallback
    ERROR_BUDGET: int = 5
    AUTOPLAY: bool = True

    # Engine retry policy - fail fast on manifests, short fixed retries on fragments
    MANIFEST_LOADING_MAX_RETRY: int = 0
    LEVEL_LOADING_MAX_RETRY: int = 0
    FRAG_LOADING_MAX_RETRY: int = 2
    MANIFEST_LOADING_RETRY_DELAY: float = 0.5
    LEVEL_LOADING_RETRY_DELAY: float = 0.5
    FRAG_LOADING_RETRY_DELAY: float = 0.5
    MANIFEST_LOADING_TIMEOUT: float = 2.0
    LEVEL_LOADING_TIMEOUT: float = 2.0
    FRAG_LOADING_TIMEOUT: float = 2.0

    # Engine buffering
    # Keep 90s behind the playhead, buffer 60s ahead (up to 2min on fast networks)
    BACK_BUFFER_LENGTH: float = 90.0
    MAX_BUFFER_LENGTH: float = 60.0
    MAX_MAX_BUFFER_LENGTH: float = 120.0
    MAX_BUFFER_SIZE: int = 60 * 1000 * 1000  # 60 MB

    # Adaptive bitrate selection
    ABR_EWMA_DEFAULT_ESTIMATE: float = 500000.0  # bits per second
    ABR_EWMA_ALPHA: float = 0.3
    ABR_BANDWIDTH_FACTOR: float = 0.95
    # More conservative when switching up
    ABR_BANDWIDTH_UP_FACTOR: float = 0.7
    MIN_AUTO_BITRATE: int = 0

    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"

    # Probe endpoint timeout
    PROBE_TIMEOUT: float = 5.0

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
