"""Disputes module for the structured dispute workflow.

A dispute moves through evidence, response, mediation and moderation:

    awaiting_evidence -> awaiting_response -> in_mediation
        -> escalated_to_moderation -> resolved

Each waiting stage has a deadline. The deadline sweep closes tickets whose
initiator never supplied evidence and escalates the rest to moderation.
Resolution decides where the trade's cash and items end up, and opens a
fresh rating round for both parties.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from database import Repository, DISPUTES
from database.locks import LockRegistry, trade_key, ticket_key
from core.exceptions import (
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from core.models import Trade, TradeStatus, DISPUTABLE_STATUSES, utc_now
from notifications import Notifier, NotificationType
from trades.store import TradeStore
from .models import (
    DisputeTicket,
    DisputeStatus,
    DisputeType,
    DisputeResolution,
    Evidence,
    MediationMessage,
)

logger = logging.getLogger(__name__)

__all__ = [
    'DisputeManager', 'DisputeTicket', 'DisputeStatus', 'DisputeType',
    'DisputeResolution', 'Evidence', 'MediationMessage',
]


class DisputeManager:
    """Runs dispute tickets from opening to resolution."""

    def __init__(
        self,
        repository: Repository,
        store: TradeStore,
        escrow,
        locks: LockRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        evidence_deadline: timedelta = timedelta(hours=48),
        response_deadline: timedelta = timedelta(hours=72),
        mediation_deadline: timedelta = timedelta(days=7),
        rating_window: timedelta = timedelta(days=7),
        min_notes_length: int = 10,
        moderator_ids: Iterable[str] = ()
    ) -> None:
        """Initialize dispute manager.

        Args:
            repository: Storage for dispute tickets
            store: Trade persistence
            escrow: Escrow coordinator that settles, refunds or reverses trades
            locks: Shared per-aggregate lock registry
            notifier: Notification dispatcher
            clock: Source of the current time
            evidence_deadline: Time the initiator has to submit evidence
            response_deadline: Time the respondent has to respond
            mediation_deadline: Time the parties have to settle in mediation
            rating_window: Rating window opened after resolution
            min_notes_length: Minimum length of moderator notes
            moderator_ids: Users allowed to resolve disputes; empty allows
                anyone who is not a party to the dispute
        """
        self.repository = repository
        self.store = store
        self.escrow = escrow
        self.locks = locks
        self.notifier = notifier
        self.clock = clock
        self.evidence_deadline = evidence_deadline
        self.response_deadline = response_deadline
        self.mediation_deadline = mediation_deadline
        self.rating_window = rating_window
        self.min_notes_length = min_notes_length
        self.moderator_ids = frozenset(moderator_ids)

    async def open_dispute(
        self,
        trade_id: str,
        initiator_id: str,
        dispute_type: str,
        statement: str
    ) -> DisputeTicket:
        """Open a dispute on a delivered or completed trade.

        Raises:
            ValidationError: If the type is unknown or the statement is blank
            InvalidStateError: If the trade cannot be disputed
            NotAuthorizedError: If the initiator is not a party
        """
        try:
            dispute_type = DisputeType(dispute_type)
        except ValueError:
            raise ValidationError(f"Unknown dispute type: {dispute_type}")
        if not statement or not statement.strip():
            raise ValidationError("A dispute statement is required")

        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            if trade.status not in DISPUTABLE_STATUSES:
                raise InvalidStateError(
                    f"Trade {trade_id} cannot be disputed",
                    trade.status.value
                )
            if trade.role_of(initiator_id) is None:
                raise NotAuthorizedError(f"User {initiator_id} is not a party to trade {trade_id}")

            now = self.clock()
            ticket = DisputeTicket(
                trade_id=trade_id,
                initiator_id=initiator_id,
                respondent_id=trade.other_party(initiator_id),
                dispute_type=dispute_type,
                initiator_evidence=Evidence(statement=statement.strip(), submitted_at=now),
                deadline_for_next_action=now + self.evidence_deadline,
                created_at=now,
                updated_at=now
            )

            async with self.repository.transaction():
                ticket = await self.repository.add(DISPUTES, ticket.id, ticket)
                trade.status = TradeStatus.DISPUTE_OPENED
                trade.dispute_ticket_id = ticket.id
                await self.store.save(trade)

        logger.info(f"Dispute {ticket.id} ({dispute_type.value}) opened on trade {trade_id} by {initiator_id}")
        await self.notifier.notify(NotificationType.DISPUTE_OPENED, ticket.respondent_id, trade_id)
        return ticket

    async def submit_evidence(
        self,
        ticket_id: str,
        attachments: Iterable[str],
        user_id: Optional[str] = None
    ) -> DisputeTicket:
        """Attach the initiator's evidence and hand over to the respondent.

        A significantly-not-as-described claim needs at least one attachment.

        Raises:
            InvalidStateError: If the ticket is not awaiting evidence
            NotAuthorizedError: If user_id is given and is not the initiator
            ValidationError: If required attachments are missing
        """
        attachments = [a for a in attachments if a]

        async with self.locks.hold(ticket_key(ticket_id)):
            ticket = await self.get_ticket(ticket_id)
            if ticket.status != DisputeStatus.AWAITING_EVIDENCE:
                raise InvalidStateError(
                    f"Dispute {ticket_id} is not awaiting evidence",
                    ticket.status.value
                )
            if user_id is not None and user_id != ticket.initiator_id:
                raise NotAuthorizedError(f"Only the initiator can submit evidence for dispute {ticket_id}")
            if ticket.dispute_type == DisputeType.SIGNIFICANTLY_NOT_AS_DESCRIBED and not attachments:
                raise ValidationError("Photo evidence is required for significantly-not-as-described disputes")

            now = self.clock()
            ticket.initiator_evidence.attachments.extend(attachments)
            ticket.initiator_evidence.submitted_at = now
            ticket.status = DisputeStatus.AWAITING_RESPONSE
            ticket.deadline_for_next_action = now + self.response_deadline
            ticket = await self._save(ticket)

        logger.info(f"Evidence submitted for dispute {ticket_id} ({len(attachments)} attachments)")
        await self.notifier.notify(NotificationType.DISPUTE_UPDATED, ticket.respondent_id, ticket.trade_id)
        return ticket

    async def submit_response(
        self,
        ticket_id: str,
        statement: str,
        attachments: Iterable[str] = (),
        user_id: Optional[str] = None
    ) -> DisputeTicket:
        """Record the respondent's side and move the ticket into mediation.

        Raises:
            InvalidStateError: If the ticket is not awaiting a response
            NotAuthorizedError: If user_id is given and is not the respondent
            ValidationError: If the statement is blank
        """
        async with self.locks.hold(ticket_key(ticket_id)):
            ticket = await self.get_ticket(ticket_id)
            if ticket.status != DisputeStatus.AWAITING_RESPONSE:
                raise InvalidStateError(
                    f"Dispute {ticket_id} is not awaiting a response",
                    ticket.status.value
                )
            if user_id is not None and user_id != ticket.respondent_id:
                raise NotAuthorizedError(f"Only the respondent can respond to dispute {ticket_id}")
            if not statement or not statement.strip():
                raise ValidationError("A response statement is required")

            now = self.clock()
            ticket.respondent_evidence = Evidence(
                statement=statement.strip(),
                attachments=[a for a in attachments if a],
                submitted_at=now
            )
            ticket.status = DisputeStatus.IN_MEDIATION
            ticket.deadline_for_next_action = now + self.mediation_deadline
            ticket = await self._save(ticket)

        logger.info(f"Response submitted for dispute {ticket_id}, now in mediation")
        await self.notifier.notify(NotificationType.DISPUTE_UPDATED, ticket.initiator_id, ticket.trade_id)
        return ticket

    async def send_mediation_message(self, ticket_id: str, sender_id: str, text: str) -> MediationMessage:
        """Append a message to the mediation log.

        Raises:
            InvalidStateError: If the ticket is not in mediation
            NotAuthorizedError: If the sender is not a party
            ValidationError: If the message is blank
        """
        async with self.locks.hold(ticket_key(ticket_id)):
            ticket = await self.get_ticket(ticket_id)
            if ticket.status != DisputeStatus.IN_MEDIATION:
                raise InvalidStateError(
                    f"Dispute {ticket_id} is not in mediation",
                    ticket.status.value
                )
            if not ticket.is_party(sender_id):
                raise NotAuthorizedError(f"User {sender_id} is not a party to dispute {ticket_id}")
            if not text or not text.strip():
                raise ValidationError("Message text is required")

            message = MediationMessage(sender_id=sender_id, text=text.strip(), timestamp=self.clock())
            ticket.mediation_log.append(message)
            ticket = await self._save(ticket)

        recipient_id = ticket.respondent_id if sender_id == ticket.initiator_id else ticket.initiator_id
        logger.debug(f"Mediation message from {sender_id} on dispute {ticket_id}")
        await self.notifier.notify(NotificationType.DISPUTE_MESSAGE, recipient_id, ticket.trade_id)
        return message

    async def get_mediation_messages(self, ticket_id: str, since: Optional[datetime] = None) -> List[MediationMessage]:
        ticket = await self.get_ticket(ticket_id)
        if since is None:
            return list(ticket.mediation_log)
        return [m for m in ticket.mediation_log if m.timestamp > since]

    async def escalate(self, ticket_id: str, user_id: Optional[str] = None) -> DisputeTicket:
        """Hand a mediated dispute to a moderator.

        Raises:
            InvalidStateError: If the ticket is not in mediation
            NotAuthorizedError: If user_id is given and is not a party
        """
        async with self.locks.hold(ticket_key(ticket_id)):
            ticket = await self.get_ticket(ticket_id)
            if ticket.status != DisputeStatus.IN_MEDIATION:
                raise InvalidStateError(
                    f"Dispute {ticket_id} is not in mediation",
                    ticket.status.value
                )
            if user_id is not None and not ticket.is_party(user_id):
                raise NotAuthorizedError(f"User {user_id} is not a party to dispute {ticket_id}")

            self._escalate(ticket)
            ticket = await self._save(ticket)

        await self._notify_ticket_parties(NotificationType.DISPUTE_ESCALATED, ticket)
        return ticket

    async def resolve(
        self,
        ticket_id: str,
        resolution: str,
        moderator_notes: str,
        moderator_id: str,
        refund_amount: Optional[int] = None
    ) -> DisputeTicket:
        """Close an escalated dispute with a moderator's decision.

        trade-upheld settles the trade if it was not settled yet.
        full-refund returns the payer's cash, if any, and leaves items where
        they are.
        partial-refund returns refund_amount to the payer; on an unsettled
        trade the rest goes to the payee and items are exchanged.
        trade-reversal puts cash and items back with their original owners.

        Both parties may then rate again in a new rating round.

        Raises:
            ValidationError: If the resolution, notes or refund amount is invalid
            NotAuthorizedError: If the moderator is a party or not a listed moderator
            InvalidStateError: If the ticket is not escalated
        """
        if self.moderator_ids and moderator_id not in self.moderator_ids:
            raise NotAuthorizedError(f"User {moderator_id} is not a moderator")
        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown dispute resolution: {resolution}")
        moderator_notes = (moderator_notes or '').strip()
        if len(moderator_notes) < self.min_notes_length:
            raise ValidationError(
                f"Moderator notes must be at least {self.min_notes_length} characters"
            )
        if resolution == DisputeResolution.PARTIAL_REFUND:
            if refund_amount is None or refund_amount <= 0:
                raise ValidationError("A partial refund needs a positive refund amount")
        elif refund_amount is not None:
            raise ValidationError(f"A refund amount only applies to {DisputeResolution.PARTIAL_REFUND.value}")

        ticket = await self.get_ticket(ticket_id)
        async with self.locks.hold_many(ticket_key(ticket_id), trade_key(ticket.trade_id)):
            ticket = await self.get_ticket(ticket_id)
            if ticket.status != DisputeStatus.ESCALATED_TO_MODERATION:
                raise InvalidStateError(
                    f"Dispute {ticket_id} is not escalated to moderation",
                    ticket.status.value
                )
            if ticket.is_party(moderator_id):
                raise NotAuthorizedError(f"User {moderator_id} is a party to dispute {ticket_id} and cannot resolve it")
            trade = await self.store.get(ticket.trade_id)

            async with self.notifier.deferred(), self.repository.transaction():
                await self._apply_resolution(trade, resolution, refund_amount)

                now = self.clock()
                ticket.status = DisputeStatus.RESOLVED
                ticket.resolution = resolution
                ticket.refund_amount = refund_amount
                ticket.moderator_notes = moderator_notes
                ticket.moderator_id = moderator_id
                ticket.resolved_at = now
                ticket.deadline_for_next_action = None
                ticket = await self._save(ticket)

                self._close_trade(trade)
                trade = await self.store.save(trade)

        logger.info(f"Dispute {ticket_id} resolved by {moderator_id}: {resolution.value}")
        await self._notify_ticket_parties(NotificationType.DISPUTE_RESOLVED, ticket)
        return ticket

    async def run_deadline_sweep(self) -> int:
        """Apply lapsed deadlines.

        A ticket still waiting for evidence is closed and its trade settled
        as agreed. A ticket waiting for a response or stuck in mediation is
        escalated to moderation. Running the sweep again changes nothing.

        Returns:
            Number of tickets changed
        """
        now = self.clock()
        lapsed = [
            t for t in await self.repository.list(DISPUTES)
            if t.status in (
                DisputeStatus.AWAITING_EVIDENCE,
                DisputeStatus.AWAITING_RESPONSE,
                DisputeStatus.IN_MEDIATION,
            )
            and t.deadline_for_next_action is not None
            and t.deadline_for_next_action <= now
        ]

        changed = 0
        for candidate in lapsed:
            try:
                if await self._apply_lapse(candidate.id, candidate.trade_id):
                    changed += 1
            except Exception as e:
                logger.error(f"Error applying deadline to dispute {candidate.id}: {e}")
                continue

        if changed:
            logger.info(f"Deadline sweep changed {changed} disputes")
        return changed

    async def get_ticket(self, ticket_id: str) -> DisputeTicket:
        ticket = await self.repository.get(DISPUTES, ticket_id)
        if ticket is None:
            raise NotFoundError("Dispute", ticket_id)
        return ticket

    async def get_ticket_for_trade(self, trade_id: str) -> DisputeTicket:
        trade = await self.store.get(trade_id)
        if trade.dispute_ticket_id is None:
            raise NotFoundError("Dispute for trade", trade_id)
        return await self.get_ticket(trade.dispute_ticket_id)

    async def list_tickets(self, status: Optional[DisputeStatus] = None) -> List[DisputeTicket]:
        tickets = [
            t for t in await self.repository.list(DISPUTES)
            if status is None or t.status == status
        ]
        return sorted(tickets, key=lambda t: t.created_at)

    async def _apply_lapse(self, ticket_id: str, trade_id: str) -> bool:
        async with self.locks.hold_many(ticket_key(ticket_id), trade_key(trade_id)):
            ticket = await self.get_ticket(ticket_id)
            now = self.clock()
            if ticket.deadline_for_next_action is None or ticket.deadline_for_next_action > now:
                return False

            if ticket.status == DisputeStatus.AWAITING_EVIDENCE:
                trade = await self.store.get(trade_id)
                async with self.notifier.deferred(), self.repository.transaction():
                    await self._apply_resolution(trade, DisputeResolution.TRADE_UPHELD, None)
                    ticket.status = DisputeStatus.CLOSED_AUTOMATICALLY
                    ticket.resolved_at = now
                    ticket.deadline_for_next_action = None
                    ticket = await self._save(ticket)
                    self._close_trade(trade)
                    await self.store.save(trade)
                event = NotificationType.DISPUTE_RESOLVED
                logger.info(f"Dispute {ticket_id} closed automatically, no evidence submitted")
            elif ticket.status in (DisputeStatus.AWAITING_RESPONSE, DisputeStatus.IN_MEDIATION):
                self._escalate(ticket)
                ticket = await self._save(ticket)
                event = NotificationType.DISPUTE_ESCALATED
            else:
                return False

        await self._notify_ticket_parties(event, ticket)
        return True

    async def _apply_resolution(
        self,
        trade: Trade,
        resolution: DisputeResolution,
        refund_amount: Optional[int]
    ) -> None:
        """Move cash and items for a resolution. Caller holds the trade lock."""
        settled = trade.settled_at is not None

        if resolution == DisputeResolution.TRADE_UPHELD:
            if not settled:
                await self.escrow.release_escrow(trade)
        elif resolution == DisputeResolution.FULL_REFUND:
            if settled:
                await self.escrow.claw_back(trade)
            else:
                await self.escrow.refund_escrow(trade)
        elif resolution == DisputeResolution.PARTIAL_REFUND:
            if settled:
                await self.escrow.claw_back(trade, refund_amount)
            else:
                await self.escrow.release_escrow(trade, refund_amount=refund_amount)
        elif resolution == DisputeResolution.TRADE_REVERSAL:
            if settled:
                await self.escrow.reverse_settlement(trade)
            else:
                await self.escrow.refund_escrow(trade)

    def _close_trade(self, trade: Trade) -> None:
        trade.status = TradeStatus.DISPUTE_RESOLVED
        trade.proposer_rated = False
        trade.receiver_rated = False
        trade.rating_round += 1
        trade.rating_deadline = self.clock() + self.rating_window

    def _escalate(self, ticket: DisputeTicket) -> None:
        ticket.status = DisputeStatus.ESCALATED_TO_MODERATION
        ticket.deadline_for_next_action = None
        logger.info(f"Dispute {ticket.id} escalated to moderation")

    async def _save(self, ticket: DisputeTicket) -> DisputeTicket:
        ticket.touch(self.clock())
        return await self.repository.compare_and_swap(DISPUTES, ticket.id, ticket)

    async def _notify_ticket_parties(self, event_type: NotificationType, ticket: DisputeTicket) -> None:
        for user_id in (ticket.initiator_id, ticket.respondent_id):
            await self.notifier.notify(event_type, user_id, ticket.trade_id)
