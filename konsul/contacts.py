"""Contact reconciliation: merge model-extracted key/values into a contact.

Keys are partitioned into standard columns (``name``, ``email``, ``phone``,
matched case-insensitively) and custom fields declared somewhere in the
workspace (exact match first, then lower-cased).  Anything else is dropped,
so the stored data bag only ever holds declared keys.  Applying the same
update twice leaves the contact exactly as applying it once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from konsul.models import ContactRecord
from konsul.services.store import ConversationStore

logger = logging.getLogger(__name__)

STANDARD_FIELDS = ("name", "email", "phone")


@dataclass
class ReconciliationPlan:
    standard: dict[str, Any] = field(default_factory=dict)
    custom: dict[str, Any] = field(default_factory=dict)
    dropped: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.standard and not self.custom


@dataclass
class ReconciliationResult:
    success: bool
    contact: ContactRecord | None = None
    applied: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    error: str | None = None


def plan_updates(updates: Mapping[str, Any], declared_keys: Iterable[str]) -> ReconciliationPlan:
    """Partition ``updates`` into standard, custom and dropped keys."""
    declared = set(declared_keys)
    plan = ReconciliationPlan()
    for key, value in updates.items():
        lower = key.lower()
        if lower in STANDARD_FIELDS:
            plan.standard[lower] = value
        elif key in declared:
            plan.custom[key] = value
        elif lower in declared:
            plan.custom[lower] = value
        else:
            plan.dropped.append(key)
    return plan


def merge_contact(contact: ContactRecord, plan: ReconciliationPlan) -> ContactRecord:
    """Return a copy of ``contact`` with ``plan`` applied (new values win)."""
    standard = {k: (None if v is None else str(v)) for k, v in plan.standard.items()}
    return contact.model_copy(update={
        **standard,
        "custom_data": {**contact.custom_data, **plan.custom},
    })


def reconcile_contact(
    store: ConversationStore,
    contact_id: str,
    updates: Mapping[str, Any],
) -> ReconciliationResult:
    """Validate and persist ``updates`` for ``contact_id``.

    Never raises for data problems: a missing contact or an update with no
    recognised keys is reported as an unsuccessful result and nothing is
    written.
    """
    contact = store.get_contact(contact_id)
    if contact is None:
        logger.warning("Contact %s not found; update discarded", contact_id)
        return ReconciliationResult(success=False, error="Contact not found")

    plan = plan_updates(updates, store.custom_field_keys(contact.workspace_id))
    if plan.dropped:
        logger.debug("Dropping undeclared contact keys for %s: %s", contact_id, plan.dropped)
    if plan.is_empty:
        return ReconciliationResult(
            success=False,
            dropped=plan.dropped,
            error="None of the provided keys are standard or declared custom fields",
        )

    updated = merge_contact(contact, plan)
    store.save_contact(updated)
    logger.info(
        "Contact %s updated (standard=%s, custom=%s)",
        contact_id, sorted(plan.standard), sorted(plan.custom),
    )
    return ReconciliationResult(
        success=True,
        contact=updated,
        applied=[*plan.standard, *plan.custom],
        dropped=plan.dropped,
    )
