"""
Sport80 results source over its paged JSON endpoints.
Uses structured JSON (Laravel-style ``data`` / ``last_page`` pagination); no HTML scraping.
"""
from __future__ import annotations

import asyncio
import time
from datetime import date, datetime
from typing import Any, Optional

import httpx

from shared.models.enums import Gender
from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from shared.utils.logging import get_logger
from shared.utils.metrics import SOURCE_LATENCY, SOURCE_REQUESTS, atrack_latency

from reconciler.config import ReconcilerSettings
from reconciler.errors import SourceFormatChanged, SourceUnavailable
from reconciler.names import NameNormalizer, PlainNameNormalizer
from reconciler.rate_limiter import TokenBucket
from reconciler.sources.base import CompetitorCandidate, HistoryEntry, ResultsSource

logger = get_logger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _parse_date(value: Any) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    if not isinstance(value, str) or len(value) < 10:
        raise SourceFormatChanged(f"unexpected date value {value!r}")
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise SourceFormatChanged(f"unexpected date value {value!r}") from exc


def _opt_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _gender(value: Any) -> Optional[Gender]:
    text = (_opt_str(value) or "").upper()[:1]
    if text == "M":
        return Gender.MALE
    if text in ("F", "W"):
        return Gender.FEMALE
    return None


def _row_to_candidate(row: dict[str, Any]) -> CompetitorCandidate:
    try:
        name = row["name"]
        raw_date = row["date"]
    except KeyError as exc:
        raise SourceFormatChanged(f"result row missing key {exc}") from exc
    return CompetitorCandidate(
        name=str(name).strip(),
        date=_parse_date(raw_date),
        division=_opt_str(row.get("division")),
        total=_opt_float(row.get("total")),
        competition_age=_opt_int(row.get("lifter_age")),
        birth_year=_opt_int(row.get("birth_year")),
        club_name=_opt_str(row.get("club")),
        region=_opt_str(row.get("wso")),
        gender=_gender(row.get("gender")),
        meet_name=_opt_str(row.get("meet")),
        remote_competitor_id=_opt_int(row.get("member_id")),
    )


class Sport80Source(ResultsSource):
    """
    One instance owns one HTTP session; requests are paced by a token bucket,
    retried with bounded exponential backoff and guarded by a circuit breaker.
    """

    def __init__(
        self,
        settings: ReconcilerSettings,
        client: Optional[httpx.AsyncClient] = None,
        normalizer: Optional[NameNormalizer] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None
        self._normalizer = normalizer or PlainNameNormalizer()
        self._bucket = TokenBucket(rpm=settings.source_rpm, burst=settings.source_burst)
        self._breaker = CircuitBreaker(
            "sport80",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout_s=settings.circuit_recovery_s,
            trips_on=(SourceUnavailable,),
        )

    @property
    def source_name(self) -> str:
        return "sport80"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.source_base_url,
                timeout=self._settings.fetch_timeout_s,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Transport ────────────────────────────────────────────────────────

    async def _get_json(self, operation: str, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._breaker.call(self._get_with_retries, operation, path, params)
        except CircuitBreakerOpen as exc:
            SOURCE_REQUESTS.labels(operation=operation, status="circuit_open").inc()
            raise SourceUnavailable(str(exc), operation=operation) from exc

    async def _get_with_retries(self, operation: str, path: str, params: dict[str, Any]) -> dict[str, Any]:
        s = self._settings
        last_error = "unknown"
        for attempt in range(1, s.retry_max_attempts + 1):
            await self._bucket.wait_until_available(timeout_s=s.fetch_timeout_s)
            try:
                async with atrack_latency(SOURCE_LATENCY, operation=operation):
                    resp = await self._http().get(path, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if resp.status_code in RETRYABLE_STATUS:
                    last_error = f"HTTP {resp.status_code}"
                    if resp.status_code == 429:
                        self._bucket.back_off(s.retry_max_delay_s)
                elif resp.status_code >= 400:
                    SOURCE_REQUESTS.labels(operation=operation, status="format_error").inc()
                    raise SourceFormatChanged(
                        f"unexpected HTTP {resp.status_code} from {path}",
                        operation=operation,
                        status_code=resp.status_code,
                    )
                else:
                    try:
                        payload = resp.json()
                    except ValueError as exc:
                        SOURCE_REQUESTS.labels(operation=operation, status="format_error").inc()
                        raise SourceFormatChanged(f"non-JSON response from {path}", operation=operation) from exc
                    if not isinstance(payload, dict):
                        SOURCE_REQUESTS.labels(operation=operation, status="format_error").inc()
                        raise SourceFormatChanged(f"expected a JSON object from {path}", operation=operation)
                    SOURCE_REQUESTS.labels(operation=operation, status="ok").inc()
                    return payload

            SOURCE_REQUESTS.labels(operation=operation, status="retry").inc()
            if attempt < s.retry_max_attempts:
                delay = min(s.retry_base_delay_s * (2 ** (attempt - 1)), s.retry_max_delay_s)
                logger.warning(
                    "source_request_retry",
                    operation=operation,
                    path=path,
                    attempt=attempt,
                    delay_s=delay,
                    error=last_error,
                )
                await asyncio.sleep(delay)

        SOURCE_REQUESTS.labels(operation=operation, status="unavailable").inc()
        raise SourceUnavailable(
            f"{operation} failed after {s.retry_max_attempts} attempts: {last_error}",
            operation=operation,
            path=path,
        )

    async def _paged_rows(self, operation: str, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page = 1
        while True:
            payload = await self._get_json(
                operation, path, {**params, "page": page, "per_page": self._settings.source_page_size}
            )
            data = payload.get("data")
            if not isinstance(data, list):
                raise SourceFormatChanged(f"{operation}: response has no 'data' list", operation=operation)
            rows.extend(r for r in data if isinstance(r, dict))
            last_page = _opt_int(payload.get("last_page")) or 1
            if page >= last_page or not data:
                return rows
            page += 1

    # ── Operations ──────────────────────────────────────────────────────

    async def get_result_count(self, remote_meet_id: int) -> int:
        path = self._settings.source_count_path.format(meet_id=remote_meet_id)
        payload = await self._get_json("result_count", path, {"page": 1, "per_page": 1})
        total = payload.get("total")
        if total is not None:
            count = _opt_int(total)
            if count is None:
                raise SourceFormatChanged(f"result_count: non-integer total {total!r}", operation="result_count")
            return count
        rows = await self._paged_rows("result_count", path, {})
        return len(rows)

    async def search_candidates(
        self,
        division_code: Optional[str],
        start_date: date,
        end_date: date,
        name_filter: Optional[str] = None,
    ) -> list[CompetitorCandidate]:
        params: dict[str, Any] = {
            "date_range_start": start_date.isoformat(),
            "date_range_end": end_date.isoformat(),
        }
        if division_code is not None:
            params["weight_class"] = division_code
        if name_filter:
            params["search"] = name_filter
        started = time.monotonic()
        rows = await self._paged_rows("search", self._settings.source_search_path, params)

        seen: set[tuple] = set()
        candidates: list[CompetitorCandidate] = []
        for row in rows:
            cand = _row_to_candidate(row)
            key = cand.dedupe_key(self._normalizer.match_key(cand.name))
            if key in seen:
                continue
            seen.add(key)
            candidates.append(cand)
        logger.debug(
            "source_search_done",
            division=division_code,
            start=params["date_range_start"],
            end=params["date_range_end"],
            name_filter=name_filter,
            candidates=len(candidates),
            elapsed_s=round(time.monotonic() - started, 2),
        )
        return candidates

    async def get_competitor_history(self, remote_competitor_id: int) -> list[HistoryEntry]:
        path = self._settings.source_history_path.format(member_id=remote_competitor_id)
        rows = await self._paged_rows("history", path, {})
        history = []
        for row in rows:
            meet_name = row.get("meet")
            if meet_name is None or "date" not in row:
                raise SourceFormatChanged("history row missing 'meet' or 'date'", operation="history")
            history.append(
                HistoryEntry(
                    meet_name=str(meet_name).strip(),
                    date=_parse_date(row["date"]),
                    division=_opt_str(row.get("division")),
                    total=_opt_float(row.get("total")),
                )
            )
        return history

    async def get_recorded_date(self, remote_meet_id: int, competitor_name: str) -> Optional[date]:
        path = self._settings.source_count_path.format(meet_id=remote_meet_id)
        rows = await self._paged_rows("recorded_date", path, {})
        for row in rows:
            if "name" not in row:
                raise SourceFormatChanged("meet result row missing 'name'", operation="recorded_date")
            if self._normalizer.same_person(str(row["name"]), competitor_name):
                raw = row.get("date")
                return _parse_date(raw) if raw else None
        return None
