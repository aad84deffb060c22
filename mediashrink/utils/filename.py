import logging
import posixpath
import re
import typing
from urllib.parse import unquote, urlparse

from mediashrink.const import DEFAULT_FILENAME, FALLBACK_EXTENSION, VIDEO_EXTENSIONS

logger = logging.getLogger(__name__)

_EXTENDED_FILENAME_RE = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;\n]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)", re.IGNORECASE)


def _from_disposition(disposition: str) -> typing.Optional[str]:
    """
    Pull the filename out of a Content-Disposition value.

    RFC 5987 ``filename*=charset''value`` wins over the plain parameter when both are present.
    """
    extended = _EXTENDED_FILENAME_RE.search(disposition)
    if extended:
        charset = extended.group(1) or "utf-8"
        name = unquote(extended.group(2).strip(), encoding=charset, errors="replace")
    else:
        match = _FILENAME_RE.search(disposition)
        if not match or not match.group(1):
            return None
        name = match.group(1)

    name = re.sub(r"['\"]", "", name).strip()
    # Never let an upstream header smuggle a path into our own Content-Disposition.
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    return name or None


def _from_url(url: str) -> typing.Optional[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {url!r}")

    return posixpath.basename(unquote(parsed.path)) or None


def _with_video_extension(name: str) -> str:
    _, ext = posixpath.splitext(name)
    if ext.lower() not in VIDEO_EXTENSIONS:
        name += FALLBACK_EXTENSION
    return name


def resolve_filename(disposition: typing.Optional[str], url: str) -> str:
    """
    Derive the download name for a source video.

    Args:
        disposition (str, optional): The upstream Content-Disposition header value.
        url (str): The source URL, used when the header carries no filename.

    Returns:
        str: A non-empty filename ending in a video extension. Falls back to ``video.mp4`` on any parsing problem.
    """
    try:
        name = _from_disposition(disposition) if disposition else None
        name = name or _from_url(url)
        return _with_video_extension(name) if name else DEFAULT_FILENAME
    except Exception as e:
        logger.debug(f"Could not derive filename from {url!r}: {e}")
        return DEFAULT_FILENAME
