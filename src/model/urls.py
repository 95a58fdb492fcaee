"""URL sanitisation helpers (query, fragment and credentials are dropped)."""

from typing import Literal
from urllib.parse import urlsplit

INVALID_URL = "invalid-url"

SiteCategory = Literal["productive", "distracting", "neutral"]

DISTRACTING_SITES = (
    "twitter.com",
    "x.com",
    "facebook.com",
    "instagram.com",
    "reddit.com",
    "youtube.com",
    "tiktok.com",
    "linkedin.com",
    "pinterest.com",
)

PRODUCTIVE_SITES = (
    "github.com",
    "stackoverflow.com",
    "docs.google.com",
    "notion.so",
    "figma.com",
    "linear.app",
    "asana.com",
    "trello.com",
)


def sanitize_url(url: str) -> str:
    """scheme://host/path だけを残したURLを返す.

    解析できないURLは ``"invalid-url"`` に置き換える。
    """
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError:
        return INVALID_URL
    if not parts.scheme or not hostname:
        return INVALID_URL
    path = parts.path or "/"
    return f"{parts.scheme}://{hostname}{path}"


def _hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _matches(hostname: str, domains: tuple[str, ...]) -> bool:
    # サブドメインも一致 (www.youtube.com など)
    return any(hostname == d or hostname.endswith(f".{d}") for d in domains)


def is_distracting_site(url: str) -> bool:
    """SNS・動画サイトなど脱線しやすいサイトか."""
    return _matches(_hostname(url), DISTRACTING_SITES)


def is_productive_site(url: str) -> bool:
    """開発・ドキュメント系の生産的なサイトか."""
    return _matches(_hostname(url), PRODUCTIVE_SITES)


def classify_site(url: str | None) -> SiteCategory:
    if not url:
        return "neutral"
    if is_productive_site(url):
        return "productive"
    if is_distracting_site(url):
        return "distracting"
    return "neutral"
