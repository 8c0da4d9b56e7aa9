"""
Message composition for automated notifications.

Groups matching domain records by destination address (so a parent with
two expiring children gets one SMS, not two) and renders the rule's
template for each group.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from app.models.domain.delivery_domain import OutboundMessage
from app.models.domain.snapshot_domain import Recipient, SessionRecord, SubscriptionRecord
from app.services.sms.phone import format_phone

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render_template(template: str, context: dict[str, Any]) -> str:
    """Substitute {name} placeholders; unknown placeholders stay verbatim."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in context and context[key] is not None:
            return str(context[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template or "")


@dataclass(slots=True)
class RecipientGroup:
    """Everything one destination address should hear about in a single message."""

    address: str
    name: str
    contact_id: str | None = None
    items: list[Any] = field(default_factory=list)


def group_by_parent(
    records: list[SubscriptionRecord] | list[SessionRecord], country_code: str = "966"
) -> list[RecipientGroup]:
    """
    Group records by the parent's normalized phone number.

    Records without a reachable parent are skipped. Group order follows the
    first record seen for each address.
    """
    groups: dict[str, RecipientGroup] = {}
    for record in records:
        parent = record.parent
        if parent is None or not parent.phone:
            continue
        address = format_phone(parent.phone, country_code)
        group = groups.get(address)
        if group is None:
            group = RecipientGroup(address=address, name=parent.name, contact_id=parent.id)
            groups[address] = group
        group.items.append(record)
    return list(groups.values())


def subscription_expiring_context(group: RecipientGroup, days: int) -> dict[str, Any]:
    items: list[SubscriptionRecord] = group.items
    return {
        "parent_name": group.name,
        "name": group.name,
        "children": ", ".join(f"{s.player_name} ({s.program_name})" for s in items),
        "days": days,
        "end_date": items[0].end_date.isoformat() if items else "",
    }


def payment_overdue_context(group: RecipientGroup, days_overdue: int) -> dict[str, Any]:
    items: list[SubscriptionRecord] = group.items
    total_due = sum(s.amount for s in items)
    return {
        "parent_name": group.name,
        "name": group.name,
        "children": ", ".join(f"{s.player_name} ({s.program_name})" for s in items),
        "total_due": f"{total_due:.2f}",
        "days_overdue": days_overdue,
        "days": days_overdue,
    }


def session_reminder_context(group: RecipientGroup, session_date: date) -> dict[str, Any]:
    items: list[SessionRecord] = group.items
    return {
        "parent_name": group.name,
        "name": group.name,
        "sessions": "\n".join(
            f"{s.player_name} - {s.program_name} at {s.start_time or 'TBD'}" for s in items
        ),
        "date": session_date.isoformat(),
    }


def recipient_context(recipient: Recipient) -> dict[str, Any]:
    return {"name": recipient.name, "parent_name": recipient.name}


def compose_messages(
    template: str, groups: list[RecipientGroup], contexts: list[dict[str, Any]]
) -> list[OutboundMessage]:
    return [
        OutboundMessage(phone=group.address, body=render_template(template, context), name=group.name)
        for group, context in zip(groups, contexts)
    ]
