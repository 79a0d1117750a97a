"""
Source resolution for extractors.

Extractors accept either a local path or an http(s) URL. URLs are streamed
into a temp file that is always unlinked when the `local_copy()` block
exits, whether extraction succeeded or raised.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from asset_pipeline.core.config import settings
from asset_pipeline.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

USER_AGENT = "Asset-Pipeline-Extractor/1.0"


def is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


async def download_to_temp(
    url: str,
    suffix: str = "",
    client: Optional[httpx.AsyncClient] = None,
    max_bytes: Optional[int] = None,
) -> str:
    """
    Stream `url` into a new temp file and return its path.
    The partial file is removed if the download fails.
    """
    max_bytes = max_bytes if max_bytes is not None else settings.max_upload_size_bytes
    fd, path = tempfile.mkstemp(
        prefix="asset-", suffix=suffix, dir=settings.temp_dir or None,
    )
    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=settings.download_timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )

    written = 0
    try:
        with os.fdopen(fd, "wb") as out:
            async with http.stream("GET", url) as resp:
                resp.raise_for_status()
                async for block in resp.aiter_bytes():
                    written += len(block)
                    if written > max_bytes:
                        raise ExtractionError(
                            f"Download exceeds {max_bytes // (1024 * 1024)}MB limit", source=url,
                        )
                    out.write(block)
    except httpx.HTTPStatusError as exc:
        _unlink_quietly(path)
        logger.error("Download failed | url=%s status=%d", url, exc.response.status_code)
        raise ExtractionError(
            f"Failed to download file: HTTP {exc.response.status_code}", source=url,
        ) from exc
    except httpx.RequestError as exc:
        _unlink_quietly(path)
        logger.error("Download network error | url=%s error=%s", url, exc)
        raise ExtractionError(f"Failed to download file: {exc}", source=url) from exc
    except BaseException:
        _unlink_quietly(path)
        raise
    finally:
        if owns_client:
            await http.aclose()

    logger.debug("Downloaded | url=%s bytes=%d path=%s", url, written, path)
    return path


@asynccontextmanager
async def local_copy(
    source: str,
    suffix: str = "",
    client: Optional[httpx.AsyncClient] = None,
) -> AsyncIterator[str]:
    """Yield a local filesystem path for `source`, cleaning up any download."""
    if not is_url(source):
        yield source
        return

    path = await download_to_temp(source, suffix=suffix, client=client)
    try:
        yield path
    finally:
        _unlink_quietly(path)
        logger.debug("Cleaned up temporary file | path=%s", path)


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Temp file cleanup failed | path=%s error=%s", path, exc)
