"""Rewrite hosting-provider share links into directly fetchable URLs.

The remote generator downloads the source image itself, so share pages
(Google Drive viewer, Dropbox preview) must be turned into links that serve
the raw file without a redirect or a login wall. This is a best-effort
rewrite: anything unrecognised is returned untouched.
"""

from __future__ import annotations

import re

_DIRECT_IMAGE_HOSTS = ("ibb.co", "imgbb.com")
_DRIVE_HOSTS = ("drive.google.com", "docs.google.com")
_CLOUD_STORAGE_HOSTS = ("dropbox.com",)

_DRIVE_FILE_PATH = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")
_DRIVE_ID_PARAM = re.compile(r"[?&]id=([a-zA-Z0-9_-]+)")
_DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}"


def _drive_file_id(url: str) -> str | None:
    match = _DRIVE_FILE_PATH.search(url) or _DRIVE_ID_PARAM.search(url)
    return match.group(1) if match else None


def normalize_source_url(url: str) -> str:
    """Return a URL the remote service can fetch directly.

    Args:
        url: User-supplied image link. Not validated.

    Returns:
        The rewritten link, or ``url`` itself when no rule applies.
    """
    if any(host in url for host in _DIRECT_IMAGE_HOSTS):
        return url

    if any(host in url for host in _DRIVE_HOSTS):
        file_id = _drive_file_id(url)
        if file_id:
            return _DRIVE_DOWNLOAD_URL.format(file_id=file_id)
        return url

    if any(host in url for host in _CLOUD_STORAGE_HOSTS):
        return url.replace("?dl=0", "?dl=1").replace("&dl=0", "&dl=1")

    return url
