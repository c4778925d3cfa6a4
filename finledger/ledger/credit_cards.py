"""
Credit-Card Billing Engine

Cards, their monthly invoices, charges and invoice payments.

CRITICAL: available_limit == credit_limit - unpaid charges. A charge takes
the amount off the limit and adds it to the current invoice; a payment
gives it back. Both are sagas, compensated on failure.

DESIGN DECISION: The engine only drives payment transitions of an invoice
(PARTIAL, PAID). Closing and overdue transitions belong to a scheduler
outside this package. Card debt lives on the invoice: neither charges nor
payments touch the balance of the card's shadow account.
"""

import calendar
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.errors import ConflictError, InsufficientFundsError, ValidationError
from finledger.ledger.accounts import AccountLedger
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.ledger.saga import MovementCoordinator
from finledger.models.billing import (
    CardBrand,
    CreditCard,
    CreditCardTransaction,
    Invoice,
    InvoiceStatus,
)
from finledger.models.ledger import AccountType, utcnow
from finledger.models.movement import Compensation, CompensationKind, MovementKind
from finledger.services.storage import (
    CreditCardStorageInterface,
    DuplicateRecordError,
    UserDirectoryInterface,
)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


class CreditCardEngine(LedgerService):
    """
    Card CRUD, invoices, charges and payments.
    """

    def __init__(
        self,
        cards: CreditCardStorageInterface,
        accounts: AccountLedger,
        movements: MovementCoordinator,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._cards = cards
        self._accounts = accounts
        self._movements = movements

    # =========================================================================
    # CARDS
    # =========================================================================

    @staticmethod
    def _check_day(value: int, field: str) -> int:
        if not 1 <= value <= 31:
            raise ValidationError(f"{field} must be between 1 and 31", field=field)
        return value

    async def create_credit_card(
        self,
        user_id: UUID,
        account_id: UUID,
        name: str,
        credit_limit: Decimal,
        closing_day: int,
        due_day: int,
        brand: CardBrand,
        last_four_digits: Optional[str] = None,
    ) -> CreditCard:
        """
        Create a card linked to an account, plus its CREDIT_CARD shadow
        account (excluded from the user's total).

        Raises:
            ValidationError: On bad input or if the linked account is a
                credit card
            ConflictError: If the linked account already has a card
        """
        await self.ensure_user_exists(user_id)
        linked = await self._accounts.get_account(account_id, user_id)
        if linked.is_credit_card:
            raise ValidationError(
                "a card cannot be linked to a credit card account",
                field="account_id",
            )
        with storage_errors("credit card"):
            existing = await self._cards.get_credit_card_by_account(account_id)
        if existing is not None:
            raise ConflictError(
                "account already has a credit card",
                {"account_id": str(account_id)},
            )
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        credit_limit = positive_amount(credit_limit, field="credit_limit")
        self._check_day(closing_day, "closing_day")
        self._check_day(due_day, "due_day")
        if last_four_digits and (len(last_four_digits) != 4 or not last_four_digits.isdigit()):
            raise ValidationError("last_four_digits must be 4 digits", field="last_four_digits")

        with model_errors("credit card"):
            card = CreditCard(
                user_id=user_id,
                account_id=account_id,
                name=name,
                credit_limit=credit_limit,
                available_limit=credit_limit,
                closing_day=closing_day,
                due_day=due_day,
                brand=brand,
                last_four_digits=last_four_digits,
            )

        async with self._movements.begin(
            MovementKind.CARD_CREATION,
            user_id,
            credit_card_id=card.id,
            account_id=account_id,
        ) as saga:
            created = await saga.step(
                "insert_card",
                lambda: self._insert_card(card),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_CREDIT_CARD,
                    target_id=card.id,
                    user_id=user_id,
                ),
            )
            shadow = await saga.step(
                "create_card_account",
                lambda: self._accounts.create_account(
                    user_id=user_id,
                    name=card.name,
                    account_type=AccountType.CREDIT_CARD,
                    icon="credit-card",
                    include_in_total=False,
                    credit_card_id=card.id,
                ),
                compensation=lambda account: Compensation(
                    kind=CompensationKind.DELETE_ACCOUNT,
                    target_id=account.id,
                    user_id=user_id,
                ),
            )

        self._logger.info(
            "credit_card_created",
            credit_card_id=str(created.id),
            user_id=str(user_id),
            shadow_account_id=str(shadow.id),
        )
        return created

    async def get_credit_card(self, card_id: UUID, user_id: UUID) -> CreditCard:
        with storage_errors("credit card"):
            card = await self._cards.get_credit_card(card_id)
        return self.check_owner(card, user_id, "credit card")

    async def list_credit_cards(self, user_id: UUID) -> list[CreditCard]:
        await self.ensure_user_exists(user_id)
        with storage_errors("credit card"):
            return await self._cards.list_credit_cards(user_id)

    async def update_credit_card(
        self,
        card_id: UUID,
        user_id: UUID,
        name: Optional[str] = None,
        credit_limit: Optional[Decimal] = None,
        closing_day: Optional[int] = None,
        due_day: Optional[int] = None,
        brand: Optional[CardBrand] = None,
        last_four_digits: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> CreditCard:
        """
        Change card details.

        A new credit limit shifts available_limit by the same difference.

        Raises:
            ValidationError: If the new limit is below what is already
                spent on the card
        """
        card = await self.get_credit_card(card_id, user_id)
        if name is not None:
            if not name.strip():
                raise ValidationError("name is required", field="name")
            card.name = name.strip()
        if closing_day is not None:
            card.closing_day = self._check_day(closing_day, "closing_day")
        if due_day is not None:
            card.due_day = self._check_day(due_day, "due_day")
        if brand is not None:
            card.brand = brand
        if last_four_digits is not None:
            if len(last_four_digits) != 4 or not last_four_digits.isdigit():
                raise ValidationError(
                    "last_four_digits must be 4 digits",
                    field="last_four_digits",
                )
            card.last_four_digits = last_four_digits
        if is_active is not None:
            card.is_active = is_active

        difference = Decimal("0")
        if credit_limit is not None:
            credit_limit = positive_amount(credit_limit, field="credit_limit")
            difference = credit_limit - card.credit_limit
            if card.available_limit + difference < 0:
                raise ValidationError(
                    "credit limit is below the amount already spent",
                    field="credit_limit",
                )
            card.credit_limit = credit_limit

        if difference == 0:
            with storage_errors("credit card"):
                return await self._cards.update_credit_card(card)

        async with self._movements.begin(
            MovementKind.CARD_LIMIT_CHANGE,
            user_id,
            credit_card_id=card_id,
        ) as saga:
            await saga.step(
                "shift_available_limit",
                lambda: self._shift_available(card_id, difference),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_AVAILABLE_LIMIT,
                    target_id=card_id,
                    user_id=user_id,
                    amount=-difference,
                ),
            )
            updated = await saga.step("update_card", lambda: self._update_card(card))
        return updated

    async def delete_credit_card(
        self,
        card_id: UUID,
        user_id: UUID,
        today: Optional[date] = None,
    ) -> None:
        """
        Remove a card and its shadow account.

        Raises:
            ValidationError: If the current invoice has charges
        """
        await self.get_credit_card(card_id, user_id)
        today = today or utcnow().date()
        with storage_errors("invoice"):
            current = await self._cards.get_invoice_by_reference(card_id, today.month, today.year)
        if current is not None and current.total_amount > 0:
            raise ValidationError(
                "card has an open invoice and cannot be removed",
                field="credit_card_id",
            )

        await self._accounts.delete_card_account(card_id, user_id)
        with storage_errors("credit card"):
            await self._cards.delete_credit_card(card_id)
        self._logger.info("credit_card_deleted", credit_card_id=str(card_id), user_id=str(user_id))

    # =========================================================================
    # INVOICES
    # =========================================================================

    @staticmethod
    def calculate_invoice_dates(
        closing_day: int,
        due_day: int,
        today: date,
    ) -> tuple[date, date]:
        """
        Closing and due dates of the invoice open on `today`.

        The closing day is clamped to the month's length; if it is today or
        already past, the invoice closes next month. The due date is the
        due_day of the closing month, or of the month after when it would
        fall before the closing date.

        Returns:
            (closing_date, due_date)
        """
        closing = _clamped(today.year, today.month, closing_day)
        if closing <= today:
            closing = _clamped(*_next_month(today.year, today.month), closing_day)

        due = _clamped(closing.year, closing.month, due_day)
        if due < closing:
            due = _clamped(*_next_month(closing.year, closing.month), due_day)
        return closing, due

    async def get_or_create_current_invoice(
        self,
        card: CreditCard,
        today: Optional[date] = None,
    ) -> Invoice:
        """The card's invoice for the current month, created OPEN if missing."""
        today = today or utcnow().date()
        with storage_errors("invoice"):
            invoice = await self._cards.get_invoice_by_reference(card.id, today.month, today.year)
        if invoice is not None:
            return invoice

        closing, due = self.calculate_invoice_dates(card.closing_day, card.due_day, today)
        invoice = Invoice(
            credit_card_id=card.id,
            user_id=card.user_id,
            reference_month=today.month,
            reference_year=today.year,
            opening_date=today,
            closing_date=closing,
            due_date=due,
        )
        with storage_errors("invoice"):
            try:
                created = await self._cards.create_invoice(invoice)
            except DuplicateRecordError:
                # Another request opened it first
                created = await self._cards.get_invoice_by_reference(
                    card.id, today.month, today.year
                )
        self._logger.info(
            "invoice_opened",
            invoice_id=str(created.id),
            credit_card_id=str(card.id),
            reference=f"{today.month:02d}/{today.year}",
        )
        return created

    async def get_current_invoice(
        self,
        card_id: UUID,
        user_id: UUID,
        today: Optional[date] = None,
    ) -> Invoice:
        card = await self.get_credit_card(card_id, user_id)
        return await self.get_or_create_current_invoice(card, today)

    async def get_invoice(self, invoice_id: UUID, user_id: UUID) -> Invoice:
        with storage_errors("invoice"):
            invoice = await self._cards.get_invoice(invoice_id)
        return self.check_owner(invoice, user_id, "invoice")

    async def list_invoices(self, card_id: UUID, user_id: UUID) -> list[Invoice]:
        await self.get_credit_card(card_id, user_id)
        with storage_errors("invoice"):
            return await self._cards.list_invoices(card_id)

    async def list_charges(
        self,
        card_id: UUID,
        user_id: UUID,
        invoice_id: Optional[UUID] = None,
    ) -> list[CreditCardTransaction]:
        await self.get_credit_card(card_id, user_id)
        with storage_errors("charge"):
            return await self._cards.list_charges(card_id, invoice_id=invoice_id)

    # =========================================================================
    # CHARGES AND PAYMENTS
    # =========================================================================

    async def create_charge(
        self,
        card_id: UUID,
        user_id: UUID,
        category_id: UUID,
        amount: Decimal,
        description: str = "",
        charged_on: Optional[date] = None,
        installments: int = 1,
        is_recurring: bool = False,
        today: Optional[date] = None,
    ) -> CreditCardTransaction:
        """
        Charge an amount to a card's current invoice.

        Steps: record the charge, add it to the invoice total, take it off
        the available limit.

        Raises:
            ValidationError: If the card is inactive, the amount is not
                positive or exceeds the available limit
        """
        await self.ensure_user_exists(user_id)
        card = await self.get_credit_card(card_id, user_id)
        if not card.is_active:
            raise ValidationError("credit card is not active", field="credit_card_id")
        amount = positive_amount(amount)
        if installments < 1:
            raise ValidationError("installments must be at least 1", field="installments")
        if card.available_limit < amount:
            raise ValidationError("insufficient available limit", field="amount")

        today = today or utcnow().date()
        invoice = await self.get_or_create_current_invoice(card, today)
        with model_errors("charge"):
            charge = CreditCardTransaction(
                credit_card_id=card_id,
                invoice_id=invoice.id,
                user_id=user_id,
                category_id=category_id,
                amount=amount,
                description=description,
                charged_on=charged_on or today,
                installments=installments,
                is_recurring=is_recurring,
            )

        async with self._movements.begin(
            MovementKind.CARD_CHARGE,
            user_id,
            credit_card_id=card_id,
            invoice_id=invoice.id,
            charge_id=charge.id,
        ) as saga:
            created = await saga.step(
                "record_charge",
                lambda: self._insert_charge(charge),
                compensation=Compensation(
                    kind=CompensationKind.DELETE_CHARGE,
                    target_id=charge.id,
                    user_id=user_id,
                ),
            )
            updated = await saga.step(
                "increment_invoice_total",
                lambda: self._shift_invoice_total(invoice.id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_INVOICE_TOTAL,
                    target_id=invoice.id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )
            if updated.status == InvoiceStatus.PAID:
                await saga.step(
                    "reopen_invoice",
                    lambda: self._reopen_invoice(updated),
                    compensation=Compensation(
                        kind=CompensationKind.RESTORE_INVOICE_PAYMENT,
                        target_id=invoice.id,
                        user_id=user_id,
                        payload={
                            "paid_amount": str(updated.paid_amount),
                            "status": updated.status.value,
                            "paid_at": updated.paid_at.isoformat() if updated.paid_at else None,
                        },
                    ),
                )
            await saga.step(
                "decrement_available_limit",
                lambda: self._shift_available(card_id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_AVAILABLE_LIMIT,
                    target_id=card_id,
                    user_id=user_id,
                    amount=amount,
                ),
            )

        self._logger.info(
            "card_charge_created",
            charge_id=str(created.id),
            credit_card_id=str(card_id),
            invoice_id=str(invoice.id),
            amount=str(amount),
        )
        return created

    async def pay_invoice(
        self,
        card_id: UUID,
        invoice_id: UUID,
        account_id: UUID,
        user_id: UUID,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Pay an invoice from an account.

        The amount is capped at what is still owed. Steps: debit the
        account, register the payment on the invoice, give the paid amount
        back to the available limit.

        Returns:
            The invoice after the payment

        Raises:
            ValidationError: If the invoice is paid or belongs to another
                card, nothing is owed, or the account is a credit card
            InsufficientFundsError: If the account can't cover the amount
        """
        amount = positive_amount(amount)
        await self.get_credit_card(card_id, user_id)
        invoice = await self.get_invoice(invoice_id, user_id)
        if invoice.credit_card_id != card_id:
            raise ValidationError("invoice does not belong to this card", field="invoice_id")
        if invoice.status == InvoiceStatus.PAID:
            raise ValidationError("invoice is already paid", field="invoice_id")
        account = await self._accounts.get_account(account_id, user_id)
        if account.is_credit_card:
            raise ValidationError(
                "invoices cannot be paid from a credit card account",
                field="account_id",
            )
        if not account.can_apply(-amount):
            raise InsufficientFundsError()

        amount = min(amount, invoice.remaining_amount)
        if amount <= 0:
            raise ValidationError("invoice has nothing left to pay", field="amount")

        previous = {
            "paid_amount": str(invoice.paid_amount),
            "status": invoice.status.value,
            "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
        }

        async with self._movements.begin(
            MovementKind.INVOICE_PAYMENT,
            user_id,
            credit_card_id=card_id,
            invoice_id=invoice_id,
            account_id=account_id,
        ) as saga:
            await saga.step(
                "debit_account",
                lambda: self._accounts.update_balance(account_id, user_id, -amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_ACCOUNT_BALANCE,
                    target_id=account_id,
                    user_id=user_id,
                    amount=amount,
                ),
            )
            paid = await saga.step(
                "apply_payment",
                lambda: self._apply_payment(invoice, amount, now),
                compensation=Compensation(
                    kind=CompensationKind.RESTORE_INVOICE_PAYMENT,
                    target_id=invoice_id,
                    user_id=user_id,
                    payload=previous,
                ),
            )
            await saga.step(
                "restore_available_limit",
                lambda: self._shift_available(card_id, amount),
                compensation=Compensation(
                    kind=CompensationKind.ADJUST_AVAILABLE_LIMIT,
                    target_id=card_id,
                    user_id=user_id,
                    amount=-amount,
                ),
            )

        await self._audit_logger.log_invoice_payment(
            invoice_id=invoice_id,
            user_id=user_id,
            amount=amount,
            status=paid.status.value,
            correlation_id=saga.movement_id,
        )
        return paid

    # -------------------------------------------------------------------------
    # Storage steps
    # -------------------------------------------------------------------------

    async def _insert_card(self, card: CreditCard) -> CreditCard:
        with storage_errors("credit card"):
            return await self._cards.create_credit_card(card)

    async def _update_card(self, card: CreditCard) -> CreditCard:
        with storage_errors("credit card"):
            return await self._cards.update_credit_card(card)

    async def _insert_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        with storage_errors("charge"):
            return await self._cards.create_charge(charge)

    async def _shift_invoice_total(self, invoice_id: UUID, delta: Decimal) -> Invoice:
        with storage_errors("invoice"):
            return await self._cards.increment_invoice_total(invoice_id, delta)

    async def _shift_available(self, card_id: UUID, delta: Decimal) -> CreditCard:
        with storage_errors("credit card", "insufficient available limit"):
            return await self._cards.increment_available_limit(card_id, delta)

    async def _reopen_invoice(self, invoice: Invoice) -> Invoice:
        invoice.reopen()
        with storage_errors("invoice"):
            return await self._cards.update_invoice(invoice)

    async def _apply_payment(
        self,
        invoice: Invoice,
        amount: Decimal,
        now: Optional[datetime],
    ) -> Invoice:
        invoice.apply_payment(amount, at=now)
        with storage_errors("invoice"):
            return await self._cards.update_invoice(invoice)

