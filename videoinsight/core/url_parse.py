"""
Video URL validation and platform detection.
"""

import re
from urllib.parse import urlparse

from videoinsight.core.constants import PLATFORM_URL_PATTERNS
from videoinsight.core.error_codes import TaskError, ErrorCode


def detect_platform(url: str) -> str | None:
    """
    Return the platform name for a known video URL ('YouTube', 'Bilibili'),
    'Other' for any other http(s) URL yt-dlp may still handle, or None if
    the string is not a usable URL.
    """
    url = (url or "").strip()
    if not url:
        return None

    for platform, patterns in PLATFORM_URL_PATTERNS.items():
        for pattern in patterns:
            if re.search(pattern, url):
                return platform

    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme in ('http', 'https') and parsed.netloc:
        return "Other"
    return None


def validate_video_url(url: str) -> str:
    """
    Validate a video URL and return it trimmed.
    Raises TaskError if it is empty or not an http(s) URL.
    """
    cleaned = (url or "").strip()
    if not cleaned:
        raise TaskError(ErrorCode.INVALID_URL, "URL cannot be empty")
    if detect_platform(cleaned) is None:
        raise TaskError(ErrorCode.INVALID_URL, f"Not a valid video URL: {cleaned}")
    return cleaned


def parse_input_lines(text: str) -> list[str]:
    """
    Parse pasted text into a list of video URLs.
    - Trims whitespace
    - Ignores empty lines
    - Silently skips anything that is not a URL
    """
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if detect_platform(line) is not None:
            urls.append(line)
    return urls
