# pardini_sync/services/retrieval.py

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from exceptions import ContentUnavailable
from logger import get_logger
from models import RemoteMapping, RemoteResult

log = get_logger("retrieval")


def _current_year() -> int:
    return datetime.now().year


@dataclass(frozen=True)
class YearFallbackPolicy:
    """
    Order years to try for a CodPedApoio: default, default-1, ... default-N.
    No default_year means the current year, read on every call so a
    long-running worker rolls over at New Year.

    HPWS needs anoCodPedApoio and the period listing does not always carry it,
    so the year is guessed. With prefer_mapped_year the year captured during
    reconciliation (when there is one) goes first.
    """
    default_year: Optional[int] = None
    prior_years: int = 2
    prefer_mapped_year: bool = False

    def years(self, mapped_year: Optional[int] = None) -> Iterator[int]:
        seen = set()
        if self.prefer_mapped_year and mapped_year:
            seen.add(mapped_year)
            yield mapped_year

        default_year = self.default_year or _current_year()
        for offset in range(max(self.prior_years, 0) + 1):
            year = default_year - offset
            if year in seen:
                continue
            seen.add(year)
            yield year


def fetch_with_year_fallback(
    client,
    policy: YearFallbackPolicy,
    mapping: RemoteMapping,
    check: Optional[Callable[[], None]] = None,
) -> RemoteResult:
    """
    First year that comes back successful *with* something attached wins.

    `check` is called before every remote call; it raises to abort (timeout
    cancellation).
    """
    tried: List[int] = []
    last: Optional[RemoteResult] = None

    for year in policy.years(mapping.order_year):
        if check:
            check()

        tried.append(year)
        result = client.fetch_order(year, mapping.remote_order_code)
        result.local_order_code = mapping.local_order_code
        last = result

        if result.success and result.has_artifacts:
            if len(tried) > 1:
                log.info(f"Order {mapping.local_order_code}: content found for year {year} "
                         f"after {len(tried)} attempt(s)")
            return result

        log.debug(f"Order {mapping.local_order_code}: nothing for year {year}: "
                  f"{result.error_message or 'no artifacts'}")

    last_error = last.error_message if last else None
    raise ContentUnavailable(
        f"unable to retrieve content for order {mapping.local_order_code} "
        f"(CodPedApoio {mapping.remote_order_code}, years {tried})"
        + (f": {last_error}" if last_error else ""),
        years_tried=tried,
        last_error=last_error,
    )
