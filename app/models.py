"""Pydantic models describing catalog entries and swipe preferences."""

from __future__ import annotations

from typing import Any, Iterable, Literal, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

from .utils import build_logo_url, build_poster_url, extract_release_year

MediaType = Literal["movie", "tv"]
ContentType = Literal["movie", "tv", "both"]


class Genre(BaseModel):
    """A TMDB genre tag."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class StreamingProvider(BaseModel):
    """A service where a title can be streamed, rented or bought."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int = Field(validation_alias=AliasChoices("id", "provider_id"))
    name: str = Field(validation_alias=AliasChoices("name", "provider_name"))
    logo_path: str | None = None
    deep_link_url: str | None = Field(
        default=None, validation_alias=AliasChoices("deep_link_url", "link")
    )

    def logo_url(self) -> str | None:
        return build_logo_url(self.logo_path)


class CatalogItem(BaseModel):
    """Represents a single recommendable title served to a swipe session."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    title: str = Field(validation_alias=AliasChoices("title", "name"))
    media_type: MediaType = "movie"
    overview: str | None = None
    poster_path: str | None = None
    release_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("release_date", "first_air_date"),
    )
    vote_average: float = 0.0
    runtime: int | None = None
    genres: tuple[Genre, ...] = ()

    @field_validator("overview", "poster_path", "release_date", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("vote_average", mode="before")
    @classmethod
    def _default_rating(cls, value: object) -> object:
        return 0.0 if value is None else value

    @property
    def release_year(self) -> int | None:
        """Return the release year, or ``None`` when the date is missing or malformed."""

        return extract_release_year(self.release_date)

    def poster_url(self) -> str | None:
        return build_poster_url(self.poster_path)


class PreferenceSet(BaseModel):
    """Active filter configuration for a swipe session.

    Instances are immutable and compare structurally, so re-applying the same
    filters produces an equal value.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    selected_genres: frozenset[int] = Field(
        default=frozenset(),
        validation_alias=AliasChoices("selected_genres", "selectedGenres", "genres"),
    )
    year_range: tuple[int, int] = Field(
        default=(1990, 2024),
        validation_alias=AliasChoices("year_range", "yearRange", "years"),
    )
    min_rating: float = Field(
        default=6.0,
        ge=0.0,
        le=10.0,
        validation_alias=AliasChoices("min_rating", "minRating"),
    )
    selected_providers: frozenset[int] = Field(
        default=frozenset(),
        validation_alias=AliasChoices(
            "selected_providers", "selectedProviders", "providers"
        ),
    )
    availability_strict: bool = Field(
        default=False,
        validation_alias=AliasChoices("availability_strict", "availabilityStrict"),
    )
    content_type: ContentType = Field(
        default="movie",
        validation_alias=AliasChoices("content_type", "contentType"),
    )

    @field_validator("year_range", mode="before")
    @classmethod
    def _parse_year_range(cls, value: object) -> object:
        if isinstance(value, Mapping):
            return (value.get("min"), value.get("max"))
        return value

    @field_validator("content_type", mode="before")
    @classmethod
    def _normalise_content_type(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _check_year_range(self) -> "PreferenceSet":
        low, high = self.year_range
        if low > high:
            raise ValueError("year range minimum must not exceed its maximum")
        return self

    @field_serializer("selected_genres", "selected_providers")
    def _serialise_ids(self, value: frozenset[int]) -> list[int]:
        return sorted(value)

    @property
    def min_year(self) -> int:
        return self.year_range[0]

    @property
    def max_year(self) -> int:
        return self.year_range[1]

    def contains_year(self, year: int) -> bool:
        return self.min_year <= year <= self.max_year

    def accepts(self, item: CatalogItem) -> bool:
        """Return whether the item passes the rating and release-year checks."""

        if item.vote_average < self.min_rating:
            return False
        year = item.release_year
        if year is not None and not self.contains_year(year):
            return False
        return True

    def filters_providers(self) -> bool:
        return self.availability_strict and bool(self.selected_providers)


class QueueSnapshot(BaseModel):
    """Point-in-time view of a recommendation engine's observable state."""

    items: list[CatalogItem] = Field(default_factory=list)
    size: int = 0
    loading: bool = False
    last_error: str | None = None
    cursor: int = 1
    preferences: PreferenceSet | None = None

    @classmethod
    def capture(
        cls,
        items: Iterable[CatalogItem],
        *,
        loading: bool,
        last_error: str | None,
        cursor: int,
        preferences: PreferenceSet | None,
    ) -> "QueueSnapshot":
        listed = list(items)
        return cls(
            items=listed,
            size=len(listed),
            loading=loading,
            last_error=last_error,
            cursor=cursor,
            preferences=preferences,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
