import logging
import re
from pathlib import PurePosixPath
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from lightbox.core.errors import InputInvalid

logger = logging.getLogger(__name__)

USER_AGENT = "lightbox/0.4 (url-upload)"
_DISPOSITION_RE = re.compile(r'filename="?([^";\n]+)"?')


def filename_from_url(url: str) -> Optional[str]:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or None


def fetch_image(url: str, timeout: float, max_bytes: int) -> Tuple[bytes, Optional[str]]:
    """Download ``url`` into memory; returns the body and the server-suggested filename."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InputInvalid("url must be an absolute http(s) URL")

    try:
        with httpx.Client(follow_redirects=True, timeout=timeout, headers={"User-Agent": USER_AGENT}) as client:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                declared = int(response.headers.get("content-length") or 0)
                if declared > max_bytes:
                    raise InputInvalid("remote file exceeds maximum upload size")

                filename = None
                match = _DISPOSITION_RE.search(response.headers.get("content-disposition", ""))
                if match:
                    filename = match.group(1)

                chunks = []
                received = 0
                for chunk in response.iter_bytes(chunk_size=64 * 1024):
                    received += len(chunk)
                    if received > max_bytes:
                        raise InputInvalid("remote file exceeds maximum upload size")
                    chunks.append(chunk)
    except httpx.HTTPStatusError as exc:
        logger.info("URL upload fetch rejected", extra={"url": url, "status_code": exc.response.status_code})
        raise InputInvalid(f"remote server returned {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        logger.info("URL upload fetch failed", extra={"url": url, "error": str(exc)})
        raise InputInvalid("failed to fetch url") from exc

    logger.info("Fetched remote image", extra={"url": url, "size": received})
    return b"".join(chunks), filename or filename_from_url(url)
