"""Utility helpers for the MovieMatch service."""

from __future__ import annotations

from typing import Literal


IMAGE_BASE_URL = "https://image.tmdb.org/t/p/"

PosterSize = Literal["w92", "w154", "w185", "w342", "w500", "w780", "original"]
LogoSize = Literal["w45", "w92", "w154", "w185", "w300", "w500", "original"]


def extract_release_year(release_date: str | None) -> int | None:
    """Return the year encoded in the first four characters of a date string."""

    if not isinstance(release_date, str) or len(release_date) < 4:
        return None
    prefix = release_date[:4]
    if not prefix.isdigit():
        return None
    return int(prefix)


def build_image_url(path: str | None, size: str) -> str | None:
    """Return an absolute TMDB image URL for the supplied path."""

    if not path:
        return None
    if path.startswith("http"):
        return path
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{IMAGE_BASE_URL}{size}{path}"


def build_poster_url(path: str | None, size: PosterSize = "w500") -> str | None:
    return build_image_url(path, size)


def build_logo_url(path: str | None, size: LogoSize = "w154") -> str | None:
    return build_image_url(path, size)
