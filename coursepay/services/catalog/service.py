"""Course catalog client guarded by a circuit breaker.

A 404 is a healthy answer ("no such course"). Anything else that is not a
usable 2xx body counts against the breaker and is reported as UNAVAILABLE;
callers must treat that as "not purchasable" and never guess a price.
"""

import httpx
from pydantic import ValidationError

from coursepay.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from coursepay.common.config import CommonSettings
from coursepay.common.logging import logger
from coursepay.services.catalog.schemas import Course, CourseLookup, LookupStatus


class CatalogUnavailableError(RuntimeError):
    """The catalog could not give a definite answer."""


class CatalogLookup:
    """Fetches authoritative course price and publish state."""

    def __init__(
        self,
        base_url: str,
        breaker: CircuitBreaker,
        timeout_seconds: float = 3.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.breaker = breaker
        self._http = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, settings: CommonSettings, transport: httpx.BaseTransport | None = None) -> "CatalogLookup":
        breaker = CircuitBreaker(
            "course-catalog",
            failure_rate_threshold=settings.catalog_breaker_failure_rate,
            window_size=settings.catalog_breaker_window_size,
            minimum_calls=settings.catalog_breaker_minimum_calls,
            open_seconds=settings.catalog_breaker_open_seconds,
            half_open_max_calls=settings.catalog_breaker_half_open_calls,
        )
        return cls(
            settings.catalog_url,
            breaker,
            timeout_seconds=settings.catalog_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def get_course(self, course_id: int) -> CourseLookup:
        """Resolve one course; never raises."""

        return self.breaker.call(self._fetch, course_id, fallback=lambda exc: self._unavailable(course_id, exc))

    def _fetch(self, course_id: int) -> CourseLookup:
        try:
            resp = self._http.get(f"/api/courses/{course_id}")
        except httpx.HTTPError as exc:
            raise CatalogUnavailableError(f"catalog request failed: {exc}") from exc
        if resp.status_code == 404:
            return CourseLookup(status=LookupStatus.NOT_FOUND)
        if not resp.is_success:
            raise CatalogUnavailableError(f"catalog answered HTTP {resp.status_code}")
        try:
            course = Course.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise CatalogUnavailableError(f"catalog returned a malformed course: {exc}") from exc
        return CourseLookup(status=LookupStatus.FOUND, course=course)

    def _unavailable(self, course_id: int, exc: BaseException) -> CourseLookup:
        if isinstance(exc, CircuitOpenError):
            logger.warning("catalog_short_circuited course_id=%s", course_id)
        else:
            logger.warning("catalog_lookup_failed course_id=%s error=%s", course_id, exc)
        return CourseLookup(status=LookupStatus.UNAVAILABLE, reason=str(exc))
