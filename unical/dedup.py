from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from unical.models import DUPLICATE_POLICIES, Event, to_utc

logger = logging.getLogger(__name__)

FINGERPRINT_TOLERANCE = timedelta(seconds=60)


def event_fingerprint(title: str, start: datetime, end: datetime, location: str | None = None) -> str:
    normalized = "|".join(
        [
            (title or "").strip().lower(),
            to_utc(start).isoformat(),
            to_utc(end).isoformat(),
            (location or "").strip().lower(),
        ]
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass
class Duplicate:
    existing: Event
    matched_by: str


@dataclass
class DuplicateDecision:
    should_import: bool
    linked_event_id: str | None = None


def _fingerprint_match(candidate: Event, existing: Event) -> bool:
    if None in (candidate.start, candidate.end, existing.start, existing.end):
        return False
    delta = to_utc(candidate.start) - to_utc(existing.start)
    if abs(delta) > FINGERPRINT_TOLERANCE:
        return False
    # Align the existing copy on the candidate's start so a rounding
    # difference inside the tolerance does not change the hash.
    aligned = event_fingerprint(
        existing.title, existing.start + delta, existing.end + delta, existing.location
    )
    return aligned == event_fingerprint(candidate.title, candidate.start, candidate.end, candidate.location)


def identify(candidate: Event, existing_events: Iterable[Event]) -> Duplicate | None:
    # ICS UID, then external id, then fingerprint; own-calendar events never match.
    others = [event for event in existing_events if event.calendar_id != candidate.calendar_id]
    if not others:
        return None

    if candidate.ics_uid:
        for event in others:
            if event.ics_uid and event.ics_uid == candidate.ics_uid:
                logger.debug("Duplicate by ICS UID %s", candidate.ics_uid)
                return Duplicate(existing=event, matched_by="ics_uid")

    if candidate.external_id:
        for event in others:
            if event.external_id and event.external_id == candidate.external_id:
                logger.debug("Duplicate by external id %s", candidate.external_id)
                return Duplicate(existing=event, matched_by="external_id")

    for event in others:
        if _fingerprint_match(candidate, event):
            logger.debug("Duplicate by fingerprint: %s", candidate.title)
            return Duplicate(existing=event, matched_by="fingerprint")
    return None


def decide(duplicate: Duplicate | None, policy: str = "skip") -> DuplicateDecision:
    if duplicate is None:
        return DuplicateDecision(should_import=True)
    if policy not in DUPLICATE_POLICIES:
        raise ValueError(f"unknown duplicate policy: {policy}")
    if policy == "keep-both":
        return DuplicateDecision(should_import=True)
    if policy == "link":
        return DuplicateDecision(should_import=True, linked_event_id=duplicate.existing.id)
    return DuplicateDecision(should_import=False)
