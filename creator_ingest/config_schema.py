from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def _validate_route(value: str) -> str:
    route = (value or "").strip()
    if not route:
        raise ValueError("must be non-empty")
    if route.startswith(("http://", "https://")):
        return route
    if not route.startswith("/"):
        raise ValueError("must start with '/' or be an absolute http(s) URL")
    return route


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]


class RoutesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    instagram_profile: str = "/v1/instagram/profile"
    instagram_posts: str = "/v2/instagram/user/posts"
    instagram_post: str = "/v1/instagram/post"
    instagram_transcript: str = "/v2/instagram/media/transcript"
    tiktok_profile: str = "/v1/tiktok/profile"
    tiktok_posts: str = "/v3/tiktok/profile/videos"
    tiktok_post: str = "/v2/tiktok/video"
    tiktok_transcript: str = "/v1/tiktok/video/transcript"
    tiktok_oembed: str = "https://www.tiktok.com/oembed"

    @field_validator(
        "instagram_profile",
        "instagram_posts",
        "instagram_post",
        "instagram_transcript",
        "tiktok_profile",
        "tiktok_posts",
        "tiktok_post",
        "tiktok_transcript",
        "tiktok_oembed",
    )
    @classmethod
    def _route_must_be_valid(cls, v: str) -> str:
        return _validate_route(v)


class UpstreamConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "SCRAPECREATORS_API_KEY"
    base_url: str = "https://api.scrapecreators.com"
    timeout_seconds: float | None = Field(None, gt=0.0)  # None leaves requests unbounded
    routes: RoutesConfig = Field(default_factory=RoutesConfig)

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("base_url")
    @classmethod
    def _base_url_must_be_http(cls, v: str) -> str:
        url = (v or "").strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return url


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    backend: Literal["memory", "sqlite"] = "memory"
    profile_ttl_seconds: PositiveInt = 300
    posts_ttl_seconds: PositiveInt = 180
    post_ttl_seconds: PositiveInt = 300
    transcript_ttl_seconds: PositiveInt = 86400


class ListingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    page_size: PositiveInt = 12
    refresh_limit: PositiveInt = 7


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    delay_ms: NonNegativeInt = 500
    fetch_max_attempts: PositiveInt = 2
    retry_base_delay_seconds: NonNegativeFloat = 1.0
    retry_max_delay_seconds: NonNegativeFloat = 30.0

    @model_validator(mode="after")
    def _max_delay_must_cover_base(self) -> "BatchConfig":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self


class EnrichmentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    max_workers: PositiveInt = 2
    transcript_language: str = "en"
    fetch_embeds: bool = True
    fetch_transcripts: bool = True


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    db_path: str = "state/ingest.sqlite"

    @field_validator("db_path")
    @classmethod
    def _db_path_must_be_set(cls, v: str) -> str:
        path = (v or "").strip()
        if not path:
            raise ValueError("must be non-empty")
        return path


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    listing: ListingConfig = Field(default_factory=ListingConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
