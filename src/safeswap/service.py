"""SafeSwap service: unified facade over the deal, escrow and trust engines.

This is the only interface the API layer calls. It orchestrates:
- Users and KYC review (registration, verification, trust bonus)
- Deal lifecycle (create, accept, fund, milestones, cancel, dispute,
  release, refund, admin dispute resolution, edits)
- Escrow movements through the payment provider
- Trust score updates and manual admin adjustments
- Audit events and post-commit notifications

Every operation returns a ServiceResult; no SafeSwapError crosses this
boundary. Deal operations run on a copy of the stored deal under the
deal's lock. The copy is saved (with an optimistic version check),
trust updates are applied and audit events recorded only after every
step has succeeded, so a failed operation leaves no partial state.
Notifications are dispatched after the commit and never undo it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from safeswap.deals.milestones import MilestoneLedger
from safeswap.deals.state_machine import DealStateMachine
from safeswap.errors import (
    InvalidReason,
    InvalidState,
    NotAdmin,
    NotFound,
    NotParticipant,
    PaymentDeclined,
    SafeSwapError,
    ValidationFailed,
)
from safeswap.escrow.fees import compute_fee, quote
from safeswap.escrow.ledger import EscrowLedger
from safeswap.escrow.provider import MockPaymentProvider, PaymentProvider
from safeswap.locks import KeyedLocks
from safeswap.models.deal import (
    TERMINAL_DEAL_STATUSES,
    Deal,
    DealCategory,
    DealFilters,
    DealPage,
    DealSortField,
    DealStatus,
    DisputeOutcome,
    MilestoneSpec,
)
from safeswap.models.ledger import Transaction
from safeswap.models.trust import TrustHistory, TrustOutcome, TrustScoreUpdate
from safeswap.models.user import Actor, KYCStatus, User, UserRole
from safeswap.notifications import NotificationDispatcher, NotificationEvent, NullDispatcher
from safeswap.persistence.event_log import EventKind, EventLog, EventRecord
from safeswap.persistence.repository import InMemoryRepository, Repository
from safeswap.policy.resolver import PolicyResolver
from safeswap.result import ServiceResult
from safeswap.trust.engine import TrustEngine
from safeswap.trust.log import TrustUpdateLog

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


@dataclass
class _PendingCommit:
    """Side effects an operation wants, applied only once it has succeeded."""
    trust: list[tuple[str, TrustOutcome, bool]] = field(default_factory=list)
    events: list[tuple[EventKind, dict[str, Any]]] = field(default_factory=list)
    notifications: list[tuple[NotificationEvent, dict[str, Any]]] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    def event(self, kind: EventKind, **payload: Any) -> None:
        self.events.append((kind, payload))

    def notify(self, event: NotificationEvent, **payload: Any) -> None:
        self.notifications.append((event, payload))


def _parse_amount(value: Any, label: str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationFailed(f"{label} must be a number", {"field": label}) from exc
    if not amount.is_finite():
        raise ValidationFailed(f"{label} must be a number", {"field": label})
    try:
        exact = amount == amount.quantize(_CENT)
    except InvalidOperation as exc:
        raise ValidationFailed(f"{label} is out of range", {"field": label}) from exc
    if not exact:
        raise ValidationFailed(
            f"{label} can have at most 2 decimal places", {"field": label},
        )
    return amount


def _validate_text(value: Optional[str], bounds: tuple[int, int], label: str) -> str:
    cleaned = (value or "").strip()
    low, high = bounds
    if not low <= len(cleaned) <= high:
        raise ValidationFailed(
            f"{label} must be between {low} and {high} characters",
            {"field": label, "length": len(cleaned)},
        )
    return cleaned


class SafeSwapService:
    """Escrow marketplace core facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = SafeSwapService(resolver, provider=MockPaymentProvider())

        service.register_user("buyer_1", "buyer@example.com")
        service.register_user("seller_1", "seller@example.com")
        buyer = Actor("buyer_1")
        result = service.create_deal(
            buyer, title="Logo design", description="...", category="design",
            amount=Decimal("1000"), seller_id="seller_1",
            milestones=[MilestoneSpec("Drafts", Decimal("400")),
                        MilestoneSpec("Final files", Decimal("600"))],
        )
        deal_id = result.value.deal_id
        service.accept_deal(Actor("seller_1"), deal_id)
        service.fund_deal(buyer, deal_id, "pm_card_visa")
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        provider: Optional[PaymentProvider] = None,
        users: Optional[Repository[User]] = None,
        deals: Optional[Repository[Deal]] = None,
        event_log: Optional[EventLog] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        trust_log: Optional[TrustUpdateLog] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._resolver = resolver
        self._trust_engine = TrustEngine(resolver)
        self._milestones = MilestoneLedger(resolver)
        self._state_machine = DealStateMachine(resolver)
        self._escrow = EscrowLedger(
            provider if provider is not None else MockPaymentProvider(),
            timeout_seconds=resolver.escrow_timeout_seconds(),
        )
        self._users: Repository[User] = users if users is not None else InMemoryRepository("user_id")
        self._deals: Repository[Deal] = deals if deals is not None else InMemoryRepository("deal_id")
        self._event_log = event_log if event_log is not None else EventLog()
        self._dispatcher = dispatcher if dispatcher is not None else NullDispatcher()
        self._trust_log = trust_log if trust_log is not None else TrustUpdateLog()
        self._locks = locks if locks is not None else KeyedLocks()

    @property
    def escrow(self) -> EscrowLedger:
        return self._escrow

    @property
    def trust_log(self) -> TrustUpdateLog:
        return self._trust_log

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    def close(self) -> None:
        self._escrow.close()

    # ------------------------------------------------------------------
    # Users and KYC
    # ------------------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        email: str,
        role: UserRole = UserRole.USER,
        average_rating: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Register a user with the configured initial trust score."""
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            if not (user_id or "").strip():
                raise ValidationFailed("User ID is required")
            if "@" not in (email or ""):
                raise ValidationFailed("A valid email address is required")
            if average_rating is not None and not 0 <= average_rating <= 5:
                raise ValidationFailed("Average rating must be between 0 and 5")
            try:
                user_role = UserRole(role)
            except ValueError as exc:
                raise ValidationFailed(
                    f"Unknown role: {role}", {"field": "role"},
                ) from exc
            initial, _, _ = self._resolver.trust_bounds()
            user = User(
                user_id=user_id.strip(),
                email=email.strip().lower(),
                role=user_role,
                trust_score=initial,
                average_rating=average_rating,
                created_utc=now,
                updated_utc=now,
            )
            with self._locks.hold(KeyedLocks.user_key(user.user_id)):
                stored = self._users.save(user, None)
            self._audit(EventKind.USER_REGISTERED, stored.user_id, {
                "user_id": stored.user_id, "role": stored.role,
            }, now)
        except SafeSwapError as exc:
            return self._refuse("register_user", exc)
        logger.info("Registered user %s (%s)", stored.user_id, stored.role.value)
        return ServiceResult.ok(stored)

    def get_user(self, actor: Actor, user_id: Optional[str] = None) -> ServiceResult:
        """Users read their own record; admins read anyone's."""
        try:
            caller = self._resolve_actor(actor)
            target_id = user_id or caller.user_id
            if target_id != caller.user_id and not caller.is_admin:
                raise NotAdmin("Admin access required to view other users")
            user = self._require_user(target_id)
        except SafeSwapError as exc:
            return self._refuse("get_user", exc)
        return ServiceResult.ok(user)

    def submit_kyc(self, actor: Actor, now: Optional[datetime] = None) -> ServiceResult:
        """Move the caller's KYC to PENDING so an admin can review it."""
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            with self._locks.hold(KeyedLocks.user_key(actor.actor_id)):
                user = self._resolve_actor(actor)
                if user.kyc_status not in (KYCStatus.NOT_SUBMITTED, KYCStatus.REJECTED):
                    raise InvalidState(
                        f"KYC is already {user.kyc_status.value}",
                        {"user_id": user.user_id, "kyc_status": user.kyc_status.value},
                    )
                user.kyc_status = KYCStatus.PENDING
                user.updated_utc = now
                stored = self._users.save(user, user.version)
        except SafeSwapError as exc:
            return self._refuse("submit_kyc", exc)
        return ServiceResult.ok(stored)

    def review_kyc(
        self,
        actor: Actor,
        user_id: str,
        approved: bool,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin decision on a pending KYC submission.

        Approval marks the user verified and applies the KYC trust bonus.
        Rejection requires a reason.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        notifications: list[tuple[NotificationEvent, dict[str, Any]]] = []
        update: Optional[TrustScoreUpdate] = None
        try:
            admin = self._require_admin(actor)
            with self._locks.hold(KeyedLocks.user_key(user_id)):
                user = self._require_user(user_id)
                if user.kyc_status != KYCStatus.PENDING:
                    raise InvalidState(
                        f"KYC for {user_id} is {user.kyc_status.value}, not pending",
                        {"user_id": user_id, "kyc_status": user.kyc_status.value},
                    )
                if approved:
                    user.kyc_status = KYCStatus.APPROVED
                    user.is_verified = True
                    new_score, update = self._trust_engine.apply_outcome(
                        user, TrustOutcome.KYC_APPROVED, now=now,
                    )
                    user.trust_score = new_score
                    notifications.append((NotificationEvent.KYC_APPROVED, {"user_id": user_id}))
                else:
                    cleaned = (reason or "").strip()
                    if not cleaned:
                        raise InvalidReason("A rejection reason is required")
                    user.kyc_status = KYCStatus.REJECTED
                    notifications.append((
                        NotificationEvent.KYC_REJECTED,
                        {"user_id": user_id, "reason": cleaned},
                    ))
                user.updated_utc = now
                stored = self._users.save(user, user.version)
                if update is not None:
                    self._trust_log.append(update)
            self._audit(EventKind.KYC_REVIEWED, admin.user_id, {
                "user_id": user_id, "approved": approved, "reason": (reason or "").strip(),
            }, now)
            if update is not None:
                self._audit_trust(update, now)
                notifications.append(self._trust_notification(update))
        except SafeSwapError as exc:
            return self._refuse("review_kyc", exc)
        logger.info("KYC for %s %s by %s", user_id, "approved" if approved else "rejected", admin.user_id)
        self._notify(notifications)
        return ServiceResult.ok(stored, trust_updates=[update] if update else [])

    # ------------------------------------------------------------------
    # Trust
    # ------------------------------------------------------------------

    def adjust_trust_score(
        self,
        actor: Actor,
        user_id: str,
        delta: int,
        reason: str,
        deal_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin-only manual adjustment, bounded and reasoned."""
        if now is None:
            now = datetime.now(timezone.utc)
        try:
            admin = self._require_admin(actor)
            update = self._write_trust(
                user_id,
                lambda user: self._trust_engine.apply_adjustment(
                    user, delta, reason, deal_id=deal_id, adjusted_by=admin.user_id, now=now,
                ),
            )
            self._audit_trust(update, now)
        except SafeSwapError as exc:
            return self._refuse("adjust_trust_score", exc)
        logger.info(
            "Trust score of %s adjusted %+d by %s", user_id, update.delta, admin.user_id,
        )
        self._notify([self._trust_notification(update)])
        return ServiceResult.ok(update)

    def trust_summary(
        self,
        actor: Actor,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Score, rank, trend, component breakdown and improvement hints."""
        try:
            user = self._readable_user(actor, user_id)
            history = self._trust_history(user, now)
            updates = self._trust_log.for_user(user.user_id, limit=self._resolver.trend_window())
            summary = self._trust_engine.summarize(user, history, updates)
        except SafeSwapError as exc:
            return self._refuse("trust_summary", exc)
        return ServiceResult.ok(summary)

    def trust_history(
        self,
        actor: Actor,
        user_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ServiceResult:
        """A user's trust updates, newest first."""
        try:
            user = self._readable_user(actor, user_id)
            updates = self._trust_log.for_user(user.user_id, limit=max(1, limit), offset=max(0, offset))
        except SafeSwapError as exc:
            return self._refuse("trust_history", exc)
        return ServiceResult.ok(updates, total=len(self._trust_log.for_user(user.user_id)))

    # ------------------------------------------------------------------
    # Deal creation and queries
    # ------------------------------------------------------------------

    def quote_fee(self, amount: Union[Decimal, str, int]) -> ServiceResult:
        """Fee breakdown shown before a deal is created."""
        try:
            value = _parse_amount(amount, "Amount")
            if value <= 0:
                raise ValidationFailed("Amount must be positive")
            fee_quote = quote(value, self._resolver.fee_rate())
        except SafeSwapError as exc:
            return self._refuse("quote_fee", exc)
        return ServiceResult.ok(fee_quote)

    def create_deal(
        self,
        actor: Actor,
        title: str,
        description: str,
        category: Union[DealCategory, str],
        amount: Union[Decimal, str, int],
        seller_id: str,
        milestones: list[MilestoneSpec],
        currency: str = "USD",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Create a deal in CREATED status with the caller as buyer."""
        if now is None:
            now = datetime.now(timezone.utc)
        limits = self._resolver.deal_limits()
        try:
            buyer = self._resolve_actor(actor)
            clean_title = _validate_text(title, limits.title_length, "Title")
            clean_description = _validate_text(
                description, limits.description_length, "Description",
            )
            try:
                deal_category = DealCategory(category)
            except ValueError as exc:
                raise ValidationFailed(
                    f"Unknown category: {category}", {"field": "category"},
                ) from exc
            value = _parse_amount(amount, "Amount")
            if not limits.min_amount <= value <= limits.max_amount:
                raise ValidationFailed(
                    f"Amount must be between {limits.min_amount} and {limits.max_amount}",
                    {"field": "amount", "amount": value},
                )
            deal_currency = (currency or "").strip().upper()
            if deal_currency not in limits.currencies:
                raise ValidationFailed(
                    f"Unsupported currency: {currency}", {"field": "currency"},
                )
            seller = self._users.get(seller_id)
            if seller is None or seller.disabled:
                raise NotFound(f"Seller not found: {seller_id}", {"user_id": seller_id})
            if seller.user_id == buyer.user_id:
                raise ValidationFailed("Buyer and seller must be different users")

            deal_id = f"deal_{uuid4().hex[:12]}"
            deal = Deal(
                deal_id=deal_id,
                title=clean_title,
                description=clean_description,
                category=deal_category,
                amount=value,
                currency=deal_currency,
                buyer_id=buyer.user_id,
                seller_id=seller.user_id,
                escrow_fee=compute_fee(value, self._resolver.fee_rate()),
                milestones=self._milestones.create_milestones(deal_id, value, milestones),
                created_utc=now,
                updated_utc=now,
            )
            with self._locks.hold(KeyedLocks.deal_key(deal_id)):
                stored = self._deals.save(deal, None)
            self._audit(EventKind.DEAL_CREATED, buyer.user_id, {
                "deal_id": deal_id,
                "buyer_id": stored.buyer_id,
                "seller_id": stored.seller_id,
                "amount": stored.amount,
                "fee": stored.escrow_fee,
                "currency": stored.currency,
                "milestones": len(stored.milestones),
            }, now)
        except SafeSwapError as exc:
            return self._refuse("create_deal", exc)
        logger.info("Deal %s created by %s for %s %s", deal_id, buyer.user_id, value, deal_currency)
        self._notify([(NotificationEvent.DEAL_CREATED, {
            "deal_id": deal_id, "buyer_id": stored.buyer_id, "seller_id": stored.seller_id,
        })])
        return ServiceResult.ok(stored)

    def get_deal(self, actor: Actor, deal_id: str) -> ServiceResult:
        """Participants and admins can read a deal."""
        try:
            user = self._resolve_actor(actor)
            deal = self._require_deal(deal_id)
            self._require_visible(deal, user)
        except SafeSwapError as exc:
            return self._refuse("get_deal", exc)
        return ServiceResult.ok(deal)

    def deal_transactions(self, actor: Actor, deal_id: str) -> ServiceResult:
        try:
            user = self._resolve_actor(actor)
            deal = self._require_deal(deal_id)
            self._require_visible(deal, user)
        except SafeSwapError as exc:
            return self._refuse("deal_transactions", exc)
        return ServiceResult.ok(self._escrow.transactions(deal_id))

    def list_deals(self, actor: Actor, filters: Optional[DealFilters] = None) -> ServiceResult:
        """Search, filter, sort and page the deals the caller may see.

        Admins see every deal; everyone else sees deals where they are
        the buyer or the seller.
        """
        filters = filters or DealFilters()
        try:
            user = self._resolve_actor(actor)
        except SafeSwapError as exc:
            return self._refuse("list_deals", exc)

        search = filters.search.strip().lower()

        def matches(deal: Deal) -> bool:
            if not user.is_admin and not deal.is_participant(user.user_id):
                return False
            if search and search not in deal.title.lower() and search not in deal.description.lower():
                return False
            if filters.category is not None and deal.category != filters.category:
                return False
            if filters.status is not None and deal.status != filters.status:
                return False
            if filters.min_amount is not None and deal.amount < filters.min_amount:
                return False
            if filters.max_amount is not None and deal.amount > filters.max_amount:
                return False
            return True

        sort_keys: dict[DealSortField, Callable[[Deal], Any]] = {
            DealSortField.CREATED: lambda d: (d.created_utc or datetime.min.replace(tzinfo=timezone.utc), d.deal_id),
            DealSortField.AMOUNT: lambda d: (d.amount, d.deal_id),
            DealSortField.TITLE: lambda d: (d.title.lower(), d.deal_id),
        }
        found = sorted(
            self._deals.find_by(matches),
            key=sort_keys[filters.sort_by],
            reverse=filters.descending,
        )
        limit = min(self._resolver.deal_limits().max_page_size, max(1, filters.limit))
        page = max(1, filters.page)
        start = (page - 1) * limit
        return ServiceResult.ok(DealPage(
            items=found[start:start + limit], total=len(found), page=page, limit=limit,
        ))

    # ------------------------------------------------------------------
    # Deal transitions
    # ------------------------------------------------------------------

    def accept_deal(self, actor: Actor, deal_id: str, now: Optional[datetime] = None) -> ServiceResult:
        """Seller accepts a CREATED deal."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_accept(deal, user)
            self._move(deal, DealStatus.ACCEPTED, pending, now)
            pending.notify(NotificationEvent.DEAL_ACCEPTED, deal_id=deal.deal_id, buyer_id=deal.buyer_id)

        return self._deal_operation("accept_deal", actor, deal_id, body, now)

    def fund_deal(
        self,
        actor: Actor,
        deal_id: str,
        payment_method_ref: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Buyer deposits amount + fee into escrow; first milestone starts.

        A declined, failed or timed-out charge leaves the deal ACCEPTED
        and returns a retryable PAYMENT_DECLINED failure.
        """
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_fund(deal, user, payment_method_ref)
            tx = self._escrow.deposit(
                deal.deal_id, deal.buyer_id, deal.amount, deal.escrow_fee,
                payment_method_ref.strip(), deal.currency, now=now,
            )
            self._require_success(tx, actor.actor_id, "Payment failed")
            deal.escrow_amount = deal.amount
            deal.payment_reference = tx.reference
            self._move(deal, DealStatus.FUNDED, pending, now)
            started = self._milestones.start_next(deal.milestones)
            pending.data["transaction"] = tx
            pending.event(
                EventKind.ESCROW_DEPOSITED, deal_id=deal.deal_id, transaction_id=tx.transaction_id,
                amount=tx.amount, fee=tx.fee, currency=tx.currency,
            )
            pending.notify(
                NotificationEvent.DEAL_FUNDED, deal_id=deal.deal_id, seller_id=deal.seller_id,
                amount=deal.amount, milestone_id=started.milestone_id if started else None,
            )

        return self._deal_operation("fund_deal", actor, deal_id, body, now)

    def complete_milestone(
        self,
        actor: Actor,
        deal_id: str,
        milestone_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Seller delivers the in-progress milestone."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_complete_milestone(deal, user)
            milestone = self._milestones.advance(deal, milestone_id, user.user_id, now=now)
            if deal.status == DealStatus.FUNDED:
                self._move(deal, DealStatus.IN_PROGRESS, pending, now)
            else:
                self._move(deal, DealStatus.MILESTONE_COMPLETED, pending, now)
            pending.data["milestone"] = milestone
            pending.event(
                EventKind.MILESTONE_COMPLETED, deal_id=deal.deal_id,
                milestone_id=milestone.milestone_id, order=milestone.order,
            )
            pending.notify(
                NotificationEvent.MILESTONE_COMPLETED, deal_id=deal.deal_id,
                milestone_id=milestone.milestone_id, buyer_id=deal.buyer_id,
            )

        return self._deal_operation("complete_milestone", actor, deal_id, body, now)

    def approve_milestone(
        self,
        actor: Actor,
        deal_id: str,
        milestone_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Buyer approves a completed milestone.

        Approving the last milestone releases the whole escrow to the
        seller and completes the deal; if that release fails nothing
        changes, not even the approval.
        """
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_approve_milestone(deal, user)
            milestone, started = self._milestones.approve(deal, milestone_id, user.user_id, now=now)
            pending.data["milestone"] = milestone
            pending.event(
                EventKind.MILESTONE_APPROVED, deal_id=deal.deal_id,
                milestone_id=milestone.milestone_id, order=milestone.order,
            )
            pending.notify(
                NotificationEvent.MILESTONE_APPROVED, deal_id=deal.deal_id,
                milestone_id=milestone.milestone_id, seller_id=deal.seller_id,
            )
            if self._milestones.all_approved(deal.milestones):
                self._complete(deal, user, pending, now)
            else:
                deal.updated_utc = now
                pending.trust.append((deal.seller_id, TrustOutcome.MILESTONE_APPROVED, True))
                if started is not None:
                    pending.data["started_milestone"] = started

        return self._deal_operation("approve_milestone", actor, deal_id, body, now)

    def release_escrow(self, actor: Actor, deal_id: str, now: Optional[datetime] = None) -> ServiceResult:
        """Buyer releases the full escrow once every milestone is approved.

        Approving the last milestone already releases and completes the
        deal, and a failed release rolls that approval back, so in
        practice this only ever refuses: INCOMPLETE_MILESTONES while work
        is outstanding, INVALID_STATE once the deal has left FUNDED.
        """
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_release(deal, user)
            self._complete(deal, user, pending, now)

        return self._deal_operation("release_escrow", actor, deal_id, body, now)

    def cancel_deal(
        self,
        actor: Actor,
        deal_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Cancel a deal; funds still held are refunded to the buyer first."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_cancel(deal, user)
            if deal.escrow_amount > 0:
                self._refund(deal, actor.actor_id, reason or "Deal cancelled", pending, now)
            deal.cancelled_by = user.user_id
            self._move(deal, DealStatus.CANCELLED, pending, now)
            if deal.is_participant(user.user_id):
                pending.trust.append((user.user_id, TrustOutcome.DEAL_CANCELLED, True))
                pending.trust.append((deal.counterparty_of(user.user_id), TrustOutcome.DEAL_CANCELLED, False))
            else:
                pending.trust.append((deal.buyer_id, TrustOutcome.DEAL_CANCELLED, False))
                pending.trust.append((deal.seller_id, TrustOutcome.DEAL_CANCELLED, False))
            pending.notify(
                NotificationEvent.DEAL_CANCELLED, deal_id=deal.deal_id,
                cancelled_by=user.user_id, reason=(reason or "").strip(),
            )

        return self._deal_operation("cancel_deal", actor, deal_id, body, now)

    def refund_escrow(
        self,
        actor: Actor,
        deal_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Return the escrow to the buyer and close the deal as REFUNDED."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_refund(deal, user)
            self._refund(deal, actor.actor_id, reason or "Escrow refunded", pending, now)
            self._move(deal, DealStatus.REFUNDED, pending, now)
            pending.notify(
                NotificationEvent.DEAL_REFUNDED, deal_id=deal.deal_id,
                buyer_id=deal.buyer_id, requested_by=user.user_id,
            )

        return self._deal_operation("refund_escrow", actor, deal_id, body, now)

    def dispute_deal(
        self,
        actor: Actor,
        deal_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Either participant freezes the deal pending admin resolution."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_dispute(deal, user)
            cleaned = (reason or "").strip()
            if not cleaned:
                raise InvalidReason("A dispute reason is required")
            self._open_dispute(deal, user, cleaned, None, pending, now)

        return self._deal_operation("dispute_deal", actor, deal_id, body, now)

    def dispute_milestone(
        self,
        actor: Actor,
        deal_id: str,
        milestone_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Dispute one milestone; the whole deal becomes DISPUTED."""
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_dispute(deal, user)
            milestone = self._milestones.dispute(deal, milestone_id, user.user_id, reason)
            pending.data["milestone"] = milestone
            pending.event(
                EventKind.MILESTONE_DISPUTED, deal_id=deal.deal_id,
                milestone_id=milestone.milestone_id, order=milestone.order,
            )
            self._open_dispute(deal, user, milestone.dispute_reason or "", milestone.milestone_id, pending, now)

        return self._deal_operation("dispute_milestone", actor, deal_id, body, now)

    def resolve_dispute(
        self,
        actor: Actor,
        deal_id: str,
        outcome: Union[DisputeOutcome, str],
        note: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin settles a disputed deal in favour of the seller or the buyer.

        RELEASE pays the seller and completes the deal; REFUND returns
        the escrow to the buyer. The losing party takes the dispute
        penalty.
        """
        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_resolve_dispute(deal, user)
            try:
                decision = DisputeOutcome(outcome)
            except ValueError as exc:
                raise ValidationFailed(
                    f"Unknown dispute outcome: {outcome}", {"field": "outcome"},
                ) from exc
            cleaned = (note or "").strip()
            if not cleaned:
                raise InvalidReason("A resolution note is required")

            if decision == DisputeOutcome.RELEASE:
                tx = self._release(deal, actor.actor_id, pending, now)
                self._move(deal, DealStatus.COMPLETED, pending, now)
                winner, loser = deal.seller_id, deal.buyer_id
                pending.notify(
                    NotificationEvent.PAYMENT_RECEIVED, deal_id=deal.deal_id,
                    seller_id=deal.seller_id, amount=tx.amount,
                )
            else:
                self._refund(deal, actor.actor_id, cleaned, pending, now)
                self._move(deal, DealStatus.REFUNDED, pending, now)
                winner, loser = deal.buyer_id, deal.seller_id
            pending.trust.append((winner, TrustOutcome.DISPUTE_WON, True))
            pending.trust.append((loser, TrustOutcome.DISPUTE_LOST, True))
            pending.event(
                EventKind.DISPUTE_RESOLVED, deal_id=deal.deal_id, outcome=decision,
                note=cleaned, winner_id=winner,
            )
            pending.notify(
                NotificationEvent.DISPUTE_RESOLVED, deal_id=deal.deal_id,
                outcome=decision.value, winner_id=winner,
            )

        return self._deal_operation("resolve_dispute", actor, deal_id, body, now)

    def edit_deal(
        self,
        actor: Actor,
        deal_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        milestones: Optional[list[MilestoneSpec]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Buyer edits a deal the seller has not accepted yet."""
        limits = self._resolver.deal_limits()

        def body(deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
            self._state_machine.guard_edit(deal, user)
            changed: list[str] = []
            if title is not None:
                deal.title = _validate_text(title, limits.title_length, "Title")
                changed.append("title")
            if description is not None:
                deal.description = _validate_text(description, limits.description_length, "Description")
                changed.append("description")
            if milestones is not None:
                self._milestones.replace_milestones(deal, milestones)
                changed.append("milestones")
            if not changed:
                raise ValidationFailed("Nothing to update")
            deal.updated_utc = now
            pending.event(EventKind.DEAL_EDITED, deal_id=deal.deal_id, fields=changed)

        return self._deal_operation("edit_deal", actor, deal_id, body, now)

    # ------------------------------------------------------------------
    # Internal: operation runner and commit
    # ------------------------------------------------------------------

    def _deal_operation(
        self,
        operation: str,
        actor: Actor,
        deal_id: str,
        body: Callable[[Deal, User, _PendingCommit, datetime], None],
        now: Optional[datetime],
    ) -> ServiceResult:
        if now is None:
            now = datetime.now(timezone.utc)
        pending = _PendingCommit()
        key = KeyedLocks.deal_key(deal_id)
        try:
            with self._locks.hold(key):
                user = self._resolve_actor(actor)
                deal = self._require_deal(deal_id)
                expected_version = deal.version
                previous_status = deal.status
                body(deal, user, pending, now)
                stored = self._deals.save(deal, expected_version)
                updates = [
                    self._apply_outcome(user_id, outcome, responsible, deal_id, now)
                    for user_id, outcome, responsible in pending.trust
                ]
                for kind, payload in pending.events:
                    self._audit(kind, user.user_id, payload, now)
                for update in updates:
                    self._audit_trust(update, now)
        except SafeSwapError as exc:
            closed = self._deals.get(deal_id)
            if closed is None or closed.is_terminal:
                self._locks.retire(key)
            return self._refuse(operation, exc, deal_id)
        if stored.is_terminal:
            self._locks.retire(key)

        logger.info(
            "%s on deal %s by %s: %s → %s",
            operation, deal_id, user.user_id, previous_status.value, stored.status.value,
        )
        notifications = list(pending.notifications)
        notifications.extend(self._trust_notification(u) for u in updates if u.delta != 0)
        self._notify(notifications)
        return ServiceResult.ok(stored, trust_updates=updates, **pending.data)

    def _move(
        self,
        deal: Deal,
        target: DealStatus,
        pending: _PendingCommit,
        now: datetime,
    ) -> None:
        previous = deal.status
        if previous == target:
            deal.updated_utc = now
            return
        self._state_machine.apply(deal, target, now)
        pending.event(
            EventKind.DEAL_TRANSITION, deal_id=deal.deal_id,
            from_status=previous, to_status=target,
        )

    def _complete(self, deal: Deal, user: User, pending: _PendingCommit, now: datetime) -> None:
        tx = self._release(deal, user.user_id, pending, now)
        self._move(deal, DealStatus.COMPLETED, pending, now)
        pending.trust.append((deal.buyer_id, TrustOutcome.DEAL_COMPLETED, True))
        pending.trust.append((deal.seller_id, TrustOutcome.DEAL_COMPLETED, True))
        pending.notify(
            NotificationEvent.DEAL_COMPLETED, deal_id=deal.deal_id,
            buyer_id=deal.buyer_id, seller_id=deal.seller_id,
        )
        pending.notify(
            NotificationEvent.PAYMENT_RECEIVED, deal_id=deal.deal_id,
            seller_id=deal.seller_id, amount=tx.amount,
        )

    def _release(self, deal: Deal, actor_id: str, pending: _PendingCommit, now: datetime) -> Transaction:
        tx = self._escrow.release(deal.deal_id, deal.escrow_amount, deal.seller_id, now=now)
        self._require_success(tx, actor_id, "Escrow release failed")
        deal.escrow_amount = Decimal("0")
        pending.data["transaction"] = tx
        pending.event(
            EventKind.ESCROW_RELEASED, deal_id=deal.deal_id, transaction_id=tx.transaction_id,
            amount=tx.amount, seller_id=deal.seller_id,
        )
        return tx

    def _refund(
        self,
        deal: Deal,
        actor_id: str,
        reason: str,
        pending: _PendingCommit,
        now: datetime,
    ) -> Transaction:
        tx = self._escrow.refund(deal.deal_id, deal.escrow_amount, deal.buyer_id, reason, now=now)
        self._require_success(tx, actor_id, "Escrow refund failed")
        deal.escrow_amount = Decimal("0")
        pending.data["transaction"] = tx
        pending.event(
            EventKind.ESCROW_REFUNDED, deal_id=deal.deal_id, transaction_id=tx.transaction_id,
            amount=tx.amount, fee=tx.fee, buyer_id=deal.buyer_id, reason=reason,
        )
        return tx

    def _open_dispute(
        self,
        deal: Deal,
        user: User,
        reason: str,
        milestone_id: Optional[str],
        pending: _PendingCommit,
        now: datetime,
    ) -> None:
        deal.dispute_reason = reason
        deal.disputed_by = user.user_id
        deal.disputed_utc = now
        self._move(deal, DealStatus.DISPUTED, pending, now)
        pending.event(
            EventKind.DISPUTE_OPENED, deal_id=deal.deal_id, reason=reason,
            milestone_id=milestone_id,
        )
        pending.notify(
            NotificationEvent.DISPUTE_CREATED, deal_id=deal.deal_id,
            disputed_by=user.user_id, milestone_id=milestone_id,
        )

    def _require_success(self, tx: Transaction, actor_id: str, message: str) -> None:
        """Raise PaymentDeclined for a failed transaction, after auditing it."""
        if tx.succeeded:
            return
        self._audit(EventKind.PAYMENT_FAILED, actor_id, {
            "deal_id": tx.deal_id,
            "transaction_id": tx.transaction_id,
            "transaction_type": tx.transaction_type,
            "code": tx.failure_code,
        }, tx.created_utc)
        raise PaymentDeclined(
            f"{message}: {tx.failure_code}",
            {"transaction_id": tx.transaction_id, "code": tx.failure_code},
        )

    def _apply_outcome(
        self,
        user_id: str,
        outcome: TrustOutcome,
        responsible: bool,
        deal_id: str,
        now: datetime,
    ) -> TrustScoreUpdate:
        return self._write_trust(
            user_id,
            lambda user: self._trust_engine.apply_outcome(
                user, outcome, deal_id=deal_id, responsible=responsible, now=now,
            ),
        )

    def _write_trust(
        self,
        user_id: str,
        build: Callable[[User], tuple[int, TrustScoreUpdate]],
    ) -> TrustScoreUpdate:
        """Recompute and store one user's score under that user's lock."""
        with self._locks.hold(KeyedLocks.user_key(user_id)):
            user = self._require_user(user_id)
            new_score, update = build(user)
            user.trust_score = new_score
            user.updated_utc = update.created_utc
            self._users.save(user, user.version)
            self._trust_log.append(update)
        return update

    # ------------------------------------------------------------------
    # Internal: lookups, audit, notifications
    # ------------------------------------------------------------------

    def _resolve_actor(self, actor: Actor) -> User:
        """Map the caller to its stored user; roles come from storage."""
        user = self._users.get(actor.actor_id)
        if user is None or user.disabled:
            raise NotFound(f"User not found: {actor.actor_id}", {"user_id": actor.actor_id})
        return user

    def _require_admin(self, actor: Actor) -> User:
        user = self._resolve_actor(actor)
        if not user.is_admin:
            raise NotAdmin("Admin access required", {"user_id": user.user_id})
        return user

    def _require_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFound(f"User not found: {user_id}", {"user_id": user_id})
        return user

    def _readable_user(self, actor: Actor, user_id: Optional[str]) -> User:
        caller = self._resolve_actor(actor)
        if user_id is None or user_id == caller.user_id:
            return caller
        if not caller.is_admin:
            raise NotAdmin("Admin access required to view other users' trust scores")
        return self._require_user(user_id)

    def _require_deal(self, deal_id: str) -> Deal:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise NotFound(f"Deal not found: {deal_id}", {"deal_id": deal_id})
        return deal

    @staticmethod
    def _require_visible(deal: Deal, user: User) -> None:
        if not user.is_admin and not deal.is_participant(user.user_id):
            raise NotParticipant("You do not have access to this deal", {"deal_id": deal.deal_id})

    def _trust_history(self, user: User, now: Optional[datetime]) -> TrustHistory:
        if now is None:
            now = datetime.now(timezone.utc)
        closed = self._deals.find_by(
            lambda d: d.is_participant(user.user_id) and d.status in TERMINAL_DEAL_STATUSES
        )
        completed = [d for d in closed if d.status == DealStatus.COMPLETED]
        days_active = (now - user.created_utc).days if user.created_utc else 0
        return TrustHistory(
            completed_deals=len(completed),
            total_deals=len(closed),
            total_volume=sum((d.amount for d in completed), Decimal("0")),
            days_active=max(0, days_active),
        )

    def _audit(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        self._event_log.append(EventRecord.create(kind, actor_id, payload, timestamp_utc=now))

    def _audit_trust(self, update: TrustScoreUpdate, now: datetime) -> None:
        self._audit(EventKind.TRUST_UPDATED, update.adjusted_by or "system", {
            "update_id": update.update_id,
            "user_id": update.user_id,
            "previous_score": update.previous_score,
            "new_score": update.new_score,
            "reason": update.reason,
            "deal_id": update.deal_id,
        }, now)

    @staticmethod
    def _trust_notification(update: TrustScoreUpdate) -> tuple[NotificationEvent, dict[str, Any]]:
        return NotificationEvent.TRUST_SCORE_UPDATED, {
            "user_id": update.user_id,
            "previous_score": update.previous_score,
            "new_score": update.new_score,
            "reason": update.reason,
        }

    def _notify(self, notifications: list[tuple[NotificationEvent, dict[str, Any]]]) -> None:
        """Fire-and-forget delivery; failures are logged, never raised."""
        for event, payload in notifications:
            try:
                self._dispatcher.dispatch(event.value, payload)
            except Exception:
                logger.exception("Notification %s failed to dispatch", event.value)

    @staticmethod
    def _refuse(operation: str, error: SafeSwapError, deal_id: Optional[str] = None) -> ServiceResult:
        logger.warning(
            "%s refused%s: %s (%s)",
            operation, f" for deal {deal_id}" if deal_id else "", error.message, error.kind.value,
        )
        return ServiceResult.fail(error)
