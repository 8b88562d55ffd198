from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional

# Any run starting with a scheme and continuing until whitespace, angle brackets or quotes.
URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")


class LinkState(str, Enum):
    UNCHECKED = "unchecked"
    CHECKING = "checking"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


TERMINAL_STATES = (LinkState.REACHABLE, LinkState.UNREACHABLE)


def extract_urls(text: str) -> list[str]:
    """Return URLs in order of appearance, duplicates included."""
    if not text:
        return []
    return URL_PATTERN.findall(text)


def iter_url_spans(text: str) -> Iterator[tuple[int, int, str]]:
    """Yield (start, end, url) for every URL match in text."""
    if not text:
        return
    for match in URL_PATTERN.finditer(text):
        yield match.start(), match.end(), match.group(0)


@dataclass(frozen=True)
class LinkStatus:
    url: str
    state: LinkState
    error: Optional[str] = None
    # Offsets at the time the record was positioned; the renderer never trusts them.
    span: Optional[tuple[int, int]] = None

    def to_dict(self) -> dict:
        payload: dict = {"url": self.url, "status": self.state.value}
        if self.error:
            payload["error"] = self.error
        if self.span is not None:
            payload["startIndex"], payload["endIndex"] = self.span
        return payload


class StatusTable:
    """Link status records keyed by the exact URL text.

    Last write wins per URL. Records for URLs that vanished from the buffer are
    kept; the renderer only looks up URLs it finds in the current text.
    """

    def __init__(self, records: Iterable[LinkStatus] = ()) -> None:
        self._records: dict[str, LinkStatus] = {}
        self.replace_all(records)

    def get(self, url: str) -> Optional[LinkStatus]:
        return self._records.get(url)

    def state_of(self, url: str) -> LinkState:
        record = self._records.get(url)
        return record.state if record else LinkState.UNCHECKED

    def upsert(self, record: LinkStatus) -> None:
        if record.state == LinkState.UNCHECKED:
            raise ValueError("Unchecked is the absence of a record, not a stored state")
        if record.state != LinkState.UNREACHABLE and record.error is not None:
            record = LinkStatus(record.url, record.state, None, record.span)
        self._records[record.url] = record

    def contains_in_flight(self, url: str) -> bool:
        record = self._records.get(url)
        return record is not None and record.state == LinkState.CHECKING

    def replace_all(self, records: Iterable[LinkStatus]) -> None:
        self._records = {}
        for record in records:
            self.upsert(record)

    def snapshot(self) -> list[dict]:
        return [record.to_dict() for record in self._records.values()]

    def __contains__(self, url: object) -> bool:
        return url in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[LinkStatus]:
        return iter(list(self._records.values()))
