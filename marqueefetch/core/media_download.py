"""
Media download helper shared by providers.
Streams a remote file with requests and publishes it atomically.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
import logging

import requests

from ..utils.file_utils import atomic_write_bytes

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/90.0.4430.93 Safari/537.36"
)


@dataclass
class MediaDownloadResult:
    completed: bool
    path: Optional[Path] = None
    status_code: int = 0
    content_type: str = ""
    error: str = ""


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({
        "User-Agent": user_agent,
        "Accept": "*/*",
    })
    return session


def download_media(
    session: requests.Session,
    url: str,
    target: Path,
    timeout: float = 15.0,
    accept_prefixes: Optional[Iterable[str]] = None,
    max_bytes: int = 64 * 1024 * 1024,
) -> MediaDownloadResult:
    """
    Fetch url into target.

    Args:
        session: Shared requests session of the calling provider
        url: Remote media URL
        target: Final local path; written only once the body is complete
        timeout: Connect/read timeout in seconds
        accept_prefixes: Allowed Content-Type prefixes (e.g. ["image/"]); None accepts anything
        max_bytes: Abort bodies larger than this

    Returns:
        MediaDownloadResult; network errors are reported, not raised
    """
    target = Path(target)
    try:
        with session.get(url, stream=True, timeout=timeout) as response:
            status = response.status_code
            content_type = str(response.headers.get("Content-Type", "") or "").split(";")[0].strip().lower()
            if status != 200:
                return MediaDownloadResult(False, status_code=status, content_type=content_type, error=f"HTTP {status}")
            if accept_prefixes is not None:
                prefixes = tuple(p.lower() for p in accept_prefixes)
                if not content_type.startswith(prefixes):
                    return MediaDownloadResult(
                        False,
                        status_code=status,
                        content_type=content_type,
                        error=f"Unexpected content type '{content_type or 'unknown'}'",
                    )

            chunks = []
            size = 0
            for chunk in response.iter_content(chunk_size=8192):
                if not chunk:
                    continue
                size += len(chunk)
                if size > max_bytes:
                    return MediaDownloadResult(False, status_code=status, content_type=content_type, error="Media too large")
                chunks.append(chunk)

        if size == 0:
            return MediaDownloadResult(False, status_code=status, content_type=content_type, error="Empty body")

        atomic_write_bytes(target, b"".join(chunks))
        logger.debug("Downloaded %s -> %s (%d bytes)", url, target, size)
        return MediaDownloadResult(True, path=target, status_code=status, content_type=content_type)
    except requests.RequestException as e:
        return MediaDownloadResult(False, error=f"Request failed: {e}")
    except OSError as e:
        return MediaDownloadResult(False, error=f"Could not write {target}: {e}")
