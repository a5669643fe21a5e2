import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from tubegate.core.metadata import MetadataError, is_youtube_url, playlist_id_from_url
from tubegate.deps.client_auth import optional_client_key, require_client_key
from tubegate.models.api_key import ApiKey

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["gateway"])


class AnalyzeVideoIn(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    include_thumbnails: bool = True

    @field_validator("url")
    @classmethod
    def _youtube_url(cls, v: str) -> str:
        v = v.strip()
        if not is_youtube_url(v):
            raise ValueError("Must be a valid YouTube URL")
        return v


class AnalyzePlaylistIn(AnalyzeVideoIn):
    max_videos: int = Field(default=10, ge=1, le=50)

    @field_validator("url")
    @classmethod
    def _playlist_param(cls, v: str) -> str:
        if not playlist_id_from_url(v):
            raise ValueError("Must be a valid YouTube URL with playlist parameter")
        return v


def _metadata_failure(request: Request, response: Response, exc: MetadataError) -> JSONResponse:
    message = str(exc) or "Failed to analyze video"
    request.state.usage_error = message
    # a returned response replaces the injected one, so carry the quota headers over
    quota_headers = {k: v for k, v in response.headers.items() if k.lower().startswith("x-ratelimit-")}
    return JSONResponse(status_code=500, content={"success": False, "error": message}, headers=quota_headers)


@router.post("/analyze")
async def analyze_video(
    payload: AnalyzeVideoIn,
    request: Request,
    response: Response,
    api_key: ApiKey | None = Depends(optional_client_key),
):
    fetcher = request.app.state.metadata_fetcher
    try:
        metadata = await fetcher.fetch_video(payload.url, payload.include_thumbnails)
    except MetadataError as exc:
        logger.warning(
            "analyze_failed",
            extra={"key_id": api_key.key_id if api_key else None, "error": str(exc)},
        )
        return _metadata_failure(request, response, exc)

    return {"success": True, "data": metadata.model_dump()}


@router.post("/analyze-playlist")
async def analyze_playlist(
    payload: AnalyzePlaylistIn,
    request: Request,
    response: Response,
    api_key: ApiKey | None = Depends(optional_client_key),
):
    fetcher = request.app.state.metadata_fetcher
    playlist_id = playlist_id_from_url(payload.url)
    try:
        metadata = await fetcher.fetch_playlist(
            playlist_id,
            max_videos=payload.max_videos,
            include_thumbnails=payload.include_thumbnails,
        )
    except MetadataError as exc:
        logger.warning(
            "analyze_playlist_failed",
            extra={"key_id": api_key.key_id if api_key else None, "error": str(exc)},
        )
        return _metadata_failure(request, response, exc)

    return {"success": True, "data": metadata.model_dump()}


@router.get("/whoami")
async def whoami(request: Request, api_key: ApiKey = Depends(require_client_key)):
    return {
        "success": True,
        "data": {
            "key_id": api_key.key_id,
            "name": api_key.name,
            "rate_limit_per_hour": api_key.rate_limit_per_hour,
            "request_id": getattr(request.state, "request_id", None),
        },
    }
