from __future__ import annotations

from typing import Any, Iterable, Mapping

from app.guide.domain.models import AllowLists


# payload sections whose items are citable evidence (each item carries an ``id``)
EVIDENCE_SECTIONS = ("life", "mem", "anchors", "arts", "convos", "candidates")


def _as_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _iter_section_ids(items: Any) -> Iterable[str]:
    if not isinstance(items, list):
        return
    for item in items:
        if not isinstance(item, Mapping):
            continue
        item_id = _as_id(item.get("id"))
        if item_id:
            yield item_id


def allowed_evidence_ids(payload: Any) -> frozenset[str]:
    if not isinstance(payload, Mapping):
        return frozenset()
    ids: set[str] = set()
    for section in EVIDENCE_SECTIONS:
        ids.update(_iter_section_ids(payload.get(section)))
    return frozenset(ids)


def allowed_action_types(payload: Any) -> frozenset[str] | None:
    """
    Action types enumerated by the payload (``aff``, or the older
    ``affordances.enabled_actions``). None when nothing is enumerated, so an
    absent list never rejects every event.
    """
    if not isinstance(payload, Mapping):
        return None

    raw = payload.get("aff")
    if not isinstance(raw, list):
        affordances = payload.get("affordances")
        raw = affordances.get("enabled_actions") if isinstance(affordances, Mapping) else None
    if not isinstance(raw, list):
        return None

    allowed = frozenset(v.strip() for v in raw if isinstance(v, str) and v.strip())
    return allowed or None


def extract_allow_lists(payload: Any) -> AllowLists:
    return AllowLists(
        evidence_ids=allowed_evidence_ids(payload),
        action_types=allowed_action_types(payload),
    )
