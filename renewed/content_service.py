"""Business logic for serving guidebook sections, audio and visuals."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from .cache import BoundedTTLCache, CacheStats
from .errors import NotFoundError, UpstreamFailureError, ValidationFailedError
from .models import (
    AppConfig,
    AudioTrack,
    ChartVisual,
    ContentEngineItem,
    Section,
    SectionDetail,
)
from .supabase_client import SupabaseClient, SupabaseError


SECTION_COLUMNS = "id,title,slug,order,description,audio_file_path,text_file_path"
CONTENT_ENGINE_TABLE = "content_engine"
CONTENT_ENGINE_PREFIX = "content-engine:"
CHART_TAGS: Tuple[str, ...] = (
    "NEXT_STEPS_CHART",
    "![MTC]",
    "MTC",
    "CHART",
    "TRANSFORMATION_CHART",
)
DEFAULT_CHART_ALT = "Mind Transformation Chart"
TEXT_UNAVAILABLE = "Text content not available for this section."
TEXT_NOT_MARKDOWN = "Content is not in Markdown format or path is incorrect."
TEXT_LOAD_FAILED = "Could not load text content."
# Signed URLs are cached a little shorter than they live
SIGNED_URL_MARGIN_SEC = 60

_LOGGER = logging.getLogger("renewed.content")


def _section_from_row(row: Dict[str, Any]) -> Section:
    return Section(
        id=str(row["id"]),
        title=str(row.get("title") or ""),
        slug=str(row.get("slug") or row["id"]),
        order=int(row.get("order") or 0),
        description=row.get("description"),
        audio_file_path=row.get("audio_file_path") or None,
        text_file_path=row.get("text_file_path") or None,
    )


class ContentService:
    """Entry point for guidebook content lookups.

    Every backend round trip that is safe to repeat (section rows, signed
    URLs, the chart visual) goes through the shared cache.
    """

    def __init__(
        self,
        config: AppConfig,
        cache: BoundedTTLCache[Any],
        *,
        client: SupabaseClient | None = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> SupabaseClient:
        if self._client is None:
            raise UpstreamFailureError("Content backend is not configured")
        return self._client

    def list_sections(self) -> List[Section]:
        cache_key = "sections:all"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        client = self._require_client()
        try:
            rows = client.select("sections", columns=SECTION_COLUMNS, order="order")
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to fetch book sections") from exc

        sections = sorted((_section_from_row(row) for row in rows or []), key=lambda s: s.order)
        self._cache.set(cache_key, sections)
        return sections

    def get_section(self, slug: str) -> SectionDetail:
        slug = slug.strip()
        if not slug:
            raise NotFoundError("No section slug provided")
        cache_key = f"section:{slug}"
        # Cached without the audio URL, which has its own shorter lifetime
        cached = self._cache.get(cache_key)
        if cached is not None:
            return self._with_audio_url(cached)

        client = self._require_client()
        try:
            row = client.select(
                "sections", columns=SECTION_COLUMNS, filters={"slug": slug}, single=True
            )
        except SupabaseError as exc:
            if exc.is_not_found:
                raise NotFoundError(f"Section '{slug}' not found") from exc
            raise UpstreamFailureError(f"Failed to fetch section '{slug}'") from exc
        if not row:
            raise NotFoundError(f"Section '{slug}' not found")

        section = _section_from_row(row)
        complete = True
        text_content = TEXT_UNAVAILABLE
        if section.text_file_path and section.text_file_path.endswith(".md"):
            try:
                text_content = client.download(self._config.storage.bucket, section.text_file_path)
            except SupabaseError as exc:
                _LOGGER.error("Markdown download for %s failed: %s", slug, exc)
                text_content = TEXT_LOAD_FAILED
                complete = False
        elif section.text_file_path:
            _LOGGER.warning("Text file of %s is not markdown: %s", slug, section.text_file_path)
            text_content = TEXT_NOT_MARKDOWN

        detail = SectionDetail(**section.model_dump(), text_content=text_content)
        if complete:
            self._cache.set(cache_key, detail)
        return self._with_audio_url(detail)

    def _with_audio_url(self, detail: SectionDetail) -> SectionDetail:
        if not detail.audio_file_path:
            return detail
        try:
            audio_url = self.signed_url(detail.audio_file_path)
        except UpstreamFailureError as exc:
            # Non-fatal: the page renders without the narration
            _LOGGER.error("Audio signed URL for %s failed: %s", detail.slug, exc)
            return detail
        return detail.model_copy(update={"audio_url": audio_url})

    def signed_url(self, path: str) -> str:
        """Return a signed URL of ``path`` in the assets bucket, memoized."""

        cache_key = f"signed:{path}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        client = self._require_client()
        storage = self._config.storage
        try:
            url = client.sign(storage.bucket, path, storage.signed_url_ttl_sec)
        except SupabaseError as exc:
            raise UpstreamFailureError(f"Signed URL generation failed for {path}") from exc
        ttl = max(0, storage.signed_url_ttl_sec - SIGNED_URL_MARGIN_SEC)
        self._cache.set(cache_key, url, ttl)
        return url

    def list_audio_tracks(self) -> List[AudioTrack]:
        sections = self.list_sections()
        if not sections:
            raise NotFoundError("No sections found in database")

        tracks: List[AudioTrack] = []
        for section in sections:
            if not section.audio_file_path:
                continue
            try:
                url = self.signed_url(section.audio_file_path)
            except UpstreamFailureError as exc:
                _LOGGER.error("Skipping audio of section %s: %s", section.id, exc)
                continue
            tracks.append(
                AudioTrack(
                    id=section.id,
                    title=section.title,
                    slug=section.slug,
                    order=section.order,
                    audio_url=url,
                )
            )
        return tracks

    def chart_visual(self) -> ChartVisual:
        cache_key = "visual:chart"
        cached = self._cache.get(cache_key)
        if cached is not None:
            file_path, alt = cached
            return ChartVisual(src=self.signed_url(file_path), alt=alt, file_path=file_path)

        client = self._require_client()
        row: Dict[str, Any] | None = None
        for tag in CHART_TAGS:
            try:
                row = client.select(
                    "visuals",
                    columns="file_path,caption",
                    filters={"markdown_tag": tag},
                    single=True,
                )
            except SupabaseError as exc:
                if exc.is_not_found:
                    continue
                raise UpstreamFailureError("Failed to load chart visual") from exc
            if row:
                break
        if not row:
            raise NotFoundError("No transformation chart found with any known tags")
        file_path = row.get("file_path")
        if not file_path:
            raise NotFoundError("Chart visual found but no file_path available")

        alt = row.get("caption") or DEFAULT_CHART_ALT
        chart = ChartVisual(src=self.signed_url(file_path), alt=alt, file_path=file_path)
        self._cache.set(cache_key, (file_path, alt))
        return chart

    def content_engine(
        self, *, section: str | None = None, principle: int | None = None
    ) -> List[ContentEngineItem]:
        """Content blocks ordered by ``order_index``, optionally filtered."""

        principle_key = "*" if principle is None else str(principle)
        cache_key = f"{CONTENT_ENGINE_PREFIX}{section or '*'}:{principle_key}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        filters: Dict[str, Any] = {}
        if section:
            filters["section"] = section
        if principle is not None:
            filters["principle_number"] = principle
        client = self._require_client()
        try:
            rows = client.select(CONTENT_ENGINE_TABLE, filters=filters, order="order_index")
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to fetch content") from exc

        items = [ContentEngineItem.model_validate(row) for row in rows or []]
        self._cache.set(cache_key, items)
        return items

    def create_content(
        self, payload: Dict[str, Any], *, access_token: str | None = None
    ) -> ContentEngineItem:
        if not payload:
            raise ValidationFailedError("Content payload must not be empty")
        client = self._require_client()
        try:
            row = client.insert(CONTENT_ENGINE_TABLE, payload, access_token=access_token)
        except SupabaseError as exc:
            raise UpstreamFailureError("Failed to create content") from exc

        # Any cached listing may now be missing the new row
        for key in self._cache.keys():
            if key.startswith(CONTENT_ENGINE_PREFIX):
                self._cache.delete(key)
        _LOGGER.info("Content engine item %s created", row.get("id"))
        return ContentEngineItem.model_validate(row)

    def cache_stats(self) -> CacheStats:
        return self._cache.get_stats()
