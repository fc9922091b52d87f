from fastapi import FastAPI, HTTPException, Query, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import time
from urllib.parse import urlparse
from typing import Optional
from pydantic import BaseModel, field_validator
import httpx
import m3u8

from config import settings, VERSION
from source_resolver import (
    FailureMemory,
    derive_manifest_url,
    get_content_type,
    is_manifest_url,
    is_progressive_url,
    resolve_target,
)

# Set up logging
logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

started_at = time.time()


def validate_url(url: str) -> str:
    """Validate URL format and security"""
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")

    # Basic URL parsing validation
    try:
        parsed = urlparse(url)
    except Exception:
        raise ValueError("Invalid URL format")

    # Ensure scheme is http or https
    if parsed.scheme.lower() not in ['http', 'https']:
        raise ValueError("URL must use HTTP or HTTPS protocol")

    # Ensure there's a valid netloc (domain)
    if not parsed.netloc:
        raise ValueError("URL must have a valid domain")

    # Additional security check for malicious URLs
    dangerous_patterns = ['<script', 'javascript:', 'data:', 'vbscript:']
    url_lower = url.lower()
    for pattern in dangerous_patterns:
        if pattern in url_lower:
            raise ValueError(f"URL contains dangerous pattern: {pattern}")

    return url


# Request models
class ResolveRequest(BaseModel):
    url: str
    # Set when the client already saw the manifest fail for this source
    failed: bool = False

    @field_validator('url')
    @classmethod
    def validate_source_url(cls, v):
        return validate_url(v)


class ProbeRequest(BaseModel):
    url: str

    @field_validator('url')
    @classmethod
    def validate_source_url(cls, v):
        return validate_url(v)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"⚡️ playback resolver {VERSION} starting up...")
    logger.info(
        f"Adaptive subfolder: {settings.ADAPTIVE_SUBFOLDER}, manifest naming: {settings.MANIFEST_NAMING}")
    yield
    logger.info("playback resolver shutting down...")


app = FastAPI(
    title="playback resolver",
    version=VERSION,
    description="Resolves course video URLs to adaptive (HLS) manifests with progressive fallback",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Players fetch from any origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


async def fetch_manifest(url: str) -> httpx.Response:
    """GET a manifest candidate"""
    async with httpx.AsyncClient(timeout=settings.PROBE_TIMEOUT, follow_redirects=True) as client:
        return await client.get(url, headers={'User-Agent': settings.DEFAULT_USER_AGENT})


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    return {
        "status": "running",
        "message": "playback resolver is running",
        "version": VERSION,
        "uptime": int(time.time() - started_at)
    }


@app.get("/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": VERSION,
        "uptime_seconds": int(time.time() - started_at),
        "adaptive_subfolder": settings.ADAPTIVE_SUBFOLDER,
        "error_budget": settings.ERROR_BUDGET
    }


@app.post("/playback/resolve", dependencies=[Depends(verify_token)])
async def resolve_playback(request: ResolveRequest):
    """Resolve the delivery target for a source URL without touching the network"""
    memory = FailureMemory()
    if request.failed:
        memory.mark(request.url)

    target = resolve_target(request.url, memory)
    return {
        "source": request.url,
        "kind": target.kind.value,
        "url": target.url,
        "fallback_url": target.fallback_url,
        "content_type": get_content_type(target.url)
    }


@app.post("/playback/probe", dependencies=[Depends(verify_token)])
async def probe_playback(request: ProbeRequest):
    """
    Check whether the adaptive manifest for a source exists yet.
    Returns the URL a player should bind: the manifest when it is reachable,
    otherwise the progressive source.
    """
    target = resolve_target(request.url)
    if not target.is_manifest:
        return {
            "source": request.url,
            "adaptive_available": False,
            "manifest_url": None,
            "status_code": None,
            "levels": 0,
            "play_url": request.url,
            "content_type": get_content_type(request.url)
        }

    manifest_url = target.url
    try:
        response = await fetch_manifest(manifest_url)
    except httpx.TimeoutException as e:
        logger.warning(f"Timeout probing manifest {manifest_url}: {e}")
        response = None
    except httpx.HTTPError as e:
        logger.warning(f"Error probing manifest {manifest_url}: {e}")
        response = None
    except Exception as e:
        logger.error(f"Unexpected error probing manifest {manifest_url}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    status_code = response.status_code if response is not None else None
    levels = 0
    available = False
    if response is not None and response.status_code == 200 and response.text.lstrip().startswith("#EXTM3U"):
        try:
            playlist = m3u8.loads(response.text, uri=manifest_url)
            levels = len(playlist.playlists) if playlist.is_variant else 1
            available = True
        except Exception as e:
            logger.warning(f"Manifest at {manifest_url} could not be parsed: {e}")

    if available:
        play_url = manifest_url
    elif target.has_fallback:
        logger.info(
            f"HLS not available (status {status_code}), progressive fallback: {target.fallback_url}")
        play_url = target.fallback_url
    else:
        play_url = None

    return {
        "source": request.url,
        "adaptive_available": available,
        "manifest_url": manifest_url,
        "status_code": status_code,
        "levels": levels,
        "play_url": play_url,
        "content_type": get_content_type(play_url) if play_url else None
    }


@app.get("/playback/manifest-url", dependencies=[Depends(verify_token)])
async def manifest_url_for(url: str = Query(..., description="Progressive media URL")):
    """Derive the conventional manifest location of an uploaded video"""
    try:
        validate_url(url)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid URL provided: {e}")

    if is_manifest_url(url):
        return {"source": url, "manifest_url": url}

    # Only progressive uploads have transcoder output next to them
    manifest_url = derive_manifest_url(url) if is_progressive_url(url) else None
    if manifest_url is None:
        raise HTTPException(status_code=422, detail="No manifest path can be derived from this URL")
    return {"source": url, "manifest_url": manifest_url}
