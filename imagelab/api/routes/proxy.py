"""
Feishu image proxy.

Feishu image URLs need a tenant token, so the browser loads them through
``/api/image-proxy?url=...`` and the bytes are streamed back with long-lived
cache headers.
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, Response

from imagelab.config import PROXY_CACHE_CONTROL
from imagelab.feishu.client import FeishuAuthError, FeishuError, get_feishu_client
from imagelab.images.url_ids import feishu_image_key, is_feishu_url
from imagelab.observability.logging import get_logger
from imagelab.observability.telemetry import counter
from imagelab.utils.error_sanitizer import get_safe_error_detail

router = APIRouter(prefix="/api", tags=["proxy"])
logger = get_logger(__name__)


def _proxy_error(status_code: int, message: str, error: Exception | None = None) -> JSONResponse:
    content: dict[str, str] = {"error": message}
    if error is not None:
        content["details"] = get_safe_error_detail(error, status_code)
    return JSONResponse(status_code=status_code, content=content)


@router.get("/image-proxy")
async def image_proxy(url: str | None = Query(None)) -> Response:
    if not url:
        return _proxy_error(400, "Missing image URL")
    if not is_feishu_url(url):
        return _proxy_error(400, "Only Feishu image URLs can be proxied")

    image_key = feishu_image_key(url)
    if not image_key:
        return _proxy_error(400, "Unable to extract image key from URL")

    client = get_feishu_client()
    try:
        data, content_type = await client.download_image(image_key)
    except FeishuAuthError as e:
        counter("api.image_proxy.failed")
        logger.error("Image proxy could not authenticate with Feishu: %s", e)
        return _proxy_error(500, "Failed to get Feishu access token", error=e)
    except FeishuError as e:
        counter("api.image_proxy.failed")
        logger.error("Image proxy download failed for %s: %s", image_key, e)
        return _proxy_error(500, "Failed to download image", error=e)

    return Response(
        content=data,
        media_type=content_type,
        headers={
            "Cache-Control": PROXY_CACHE_CONTROL,
            "Access-Control-Allow-Origin": "*",
            "X-Image-Id": image_key,
        },
    )
