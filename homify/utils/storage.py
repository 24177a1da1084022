"""Public URL helpers for the remote storage bucket.

The engine reports result locations as bucket-relative paths
(``empty/123.jpg``); the app stores and displays public URLs:
    {supabase_url}/storage/v1/object/public/{bucket}/{path}
"""

from __future__ import annotations

from homify.config import Settings, settings


def public_url(path: str | None, config: Settings = settings) -> str:
    """Convert a bucket path to its public URL. Empty input yields ''."""
    if not path:
        return ""
    if path.startswith(("http://", "https://")):
        return path
    clean = path.removeprefix("/")
    base = config.supabase_url.rstrip("/")
    return f"{base}/storage/v1/object/public/{config.storage_bucket}/{clean}"


def is_remote_uri(uri: str) -> bool:
    return uri.startswith(("http://", "https://"))


def local_path(uri: str) -> str:
    """Strip a ``file://`` scheme so the URI can be opened from disk."""
    return uri.removeprefix("file://")
