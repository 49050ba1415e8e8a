import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from transit_watch.config import Settings, get_settings
from transit_watch.engine.eligibility import MIRROR_GUARD, resolution_for
from transit_watch.engine.sweep import SweepRun
from transit_watch.errors import DataIntegrityError
from transit_watch.schemas import ClaimEvent, ClaimStatus, ClaimTicket, SweepSummary
from transit_watch.timeutils import utcnow

logger = logging.getLogger(__name__)

ADVANCE_SWEEP = "advance-claims"
SYNC_SWEEP = "sync-claims"

REVIEW_DELAY = timedelta(minutes=15)
CREDIT_REQUESTED_NOTE = "Credit request has been sent to the warehouse team for review."

ISSUE_DISPLAY_NAMES = {
    "Loss": "Lost in Transit",
    "Damage": "Damage",
    "Pick Error": "Incorrect Items",
    "Short Ship": "Short Ship",
}


def _ticket_label(row: dict) -> str:
    return f"ticket #{row.get('ticket_number') or row.get('id')}"


def _load_ticket(row: dict) -> ClaimTicket:
    try:
        return ClaimTicket.from_row(row)
    except ValidationError as e:
        raise DataIntegrityError(f"unreadable claim ticket: {e.error_count()} validation error(s)") from e


def _parse_tickets(rows: list[dict], run: SweepRun) -> list[ClaimTicket]:
    tickets = []
    for row in rows:
        try:
            tickets.append(_load_ticket(row))
        except DataIntegrityError as e:
            run.warn(_ticket_label(row), f"skipped: {e}")
            run.count("anomalies")
    return tickets


def claim_email(ticket: ClaimTicket, client_name: Optional[str]) -> tuple[str, str]:
    """(subject, body) for the fulfillment partner."""
    issue = ticket.issue_type or "Loss"
    display = ISSUE_DISPLAY_NAMES.get(issue, issue)
    merchant = client_name or ticket.client_id or "Unknown merchant"
    subject = f"{merchant} - {ticket.shipment_id} - {display} Claim"

    if issue == "Loss":
        detail = f"Shipment {ticket.shipment_id} is lost in transit."
    elif issue == "Damage":
        detail = f"Shipment {ticket.shipment_id} arrived damaged.\n\nPlease see attached photos and documentation."
    else:
        detail = f"Shipment {ticket.shipment_id} has the following issues:\n{display}"

    body = (
        "Hello,\n\n"
        f"I am writing to you on behalf of Merchant ID {ticket.client_id}.\n\n"
        f"{detail}\n\n"
        "Thank you for your help"
    )
    return subject, body


def advance_ticket(repo, ticket: ClaimTicket, now: datetime) -> bool:
    """Under Review -> Credit Requested, guarded on the current status."""
    event = ClaimEvent(
        status=ClaimStatus.CREDIT_REQUESTED,
        note=CREDIT_REQUESTED_NOTE,
        created_at=now,
        created_by="System",
    )
    return repo.transition_claim(
        ticket.id,
        ClaimStatus.UNDER_REVIEW,
        ClaimStatus.CREDIT_REQUESTED,
        [event] + list(ticket.events),
        now,
    )


def _notify(repo, notifier, ticket: ClaimTicket, recipients, run: SweepRun) -> None:
    if notifier is None or not recipients:
        return
    try:
        subject, body = claim_email(ticket, repo.client_name(ticket.client_id))
        notifier.notify(list(recipients), subject, body)
        run.count("notified")
    except Exception as e:
        # The transition is already durable.
        run.warn(f"ticket #{ticket.ticket_number or ticket.id}", f"notification failed: {e}")


def run_claim_advancement(
    repo,
    notifier=None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    run: Optional[SweepRun] = None,
) -> SweepSummary:
    settings = settings or get_settings()
    now = now or utcnow()
    run = run or SweepRun(ADVANCE_SWEEP, settings.sweep_budget_seconds, settings.max_reported_errors)

    try:
        rows = repo.fetch_claims_to_advance(now - REVIEW_DELAY)
        run.count("found", len(rows))
        tickets = _parse_tickets(rows, run)
        for ticket in tickets:
            if run.out_of_time():
                break
            label = f"ticket #{ticket.ticket_number or ticket.id}"
            # Never advance a ticket younger than the review delay.
            if now - ticket.created_at < REVIEW_DELAY:
                run.count("too_recent")
                continue
            try:
                if not advance_ticket(repo, ticket, now):
                    run.count("already_moved")
                    continue
            except Exception as e:
                run.error(label, f"{type(e).__name__}: {e}")
                continue
            run.count("advanced")
            logger.info("[%s] Advanced %s to %s", ADVANCE_SWEEP, label, ClaimStatus.CREDIT_REQUESTED)
            _notify(repo, notifier, ticket, settings.partner_emails, run)
    except Exception as e:
        run.fail(e)
    return run.summary()


def run_claim_sync(
    repo,
    settings: Optional[Settings] = None,
    run: Optional[SweepRun] = None,
) -> SweepSummary:
    """Mirrors resolved/denied claim tickets into their monitoring records."""
    settings = settings or get_settings()
    run = run or SweepRun(SYNC_SWEEP, settings.sweep_budget_seconds, settings.max_reported_errors)

    try:
        rows = repo.fetch_resolved_claims()
        run.count("found", len(rows))
        tickets = _parse_tickets(rows, run)
        for ticket in tickets:
            if run.out_of_time():
                break
            new_status = resolution_for(ticket.status)
            if new_status is None or not ticket.shipment_id:
                continue
            try:
                changed = repo.mirror_claim_resolution(ticket.shipment_id, new_status, MIRROR_GUARD)
            except Exception as e:
                run.error(f"ticket #{ticket.ticket_number or ticket.id}", f"{type(e).__name__}: {e}")
                continue
            if changed:
                run.count("synced")
                logger.info("[%s] %s -> %s", SYNC_SWEEP, ticket.shipment_id, new_status.value)
    except Exception as e:
        run.fail(e)
    return run.summary()
