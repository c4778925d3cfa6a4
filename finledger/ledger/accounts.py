"""
Account Ledger

Owns every change to Account.balance.

CRITICAL: A non-CREDIT_CARD balance never goes below zero. The check is
enforced twice: against the loaded account for a clear error, and by the
storage's guarded increment so a concurrent writer can't slip past it.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from finledger.audit import AuditLogger
from finledger.errors import (
    ConflictError,
    DatabaseError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from finledger.ledger.base import LedgerService, model_errors, positive_amount, storage_errors
from finledger.models.ledger import ZERO, Account, AccountType, quantize_money
from finledger.services.storage import (
    AccountStorageInterface,
    ConstraintViolationError,
    RecordNotFoundError,
    StorageError,
    UserDirectoryInterface,
)


class AccountLedger(LedgerService):
    """
    Account CRUD, balance deltas and transfers.
    """

    def __init__(
        self,
        accounts: AccountStorageInterface,
        users: UserDirectoryInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(users, audit_logger)
        self._accounts = accounts

    async def create_account(
        self,
        user_id: UUID,
        name: str,
        account_type: AccountType,
        balance: Decimal = ZERO,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        include_in_total: bool = True,
        credit_card_id: Optional[UUID] = None,
    ) -> Account:
        """
        Open an account with an initial balance.

        Raises:
            UserNotFoundError: If the user doesn't exist
            ValidationError: If the name is empty or the opening balance
                is negative on a non-credit-card account
        """
        await self.ensure_user_exists(user_id)
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        balance = quantize_money(Decimal(str(balance)))
        if balance < 0 and account_type != AccountType.CREDIT_CARD:
            raise ValidationError("opening balance cannot be negative", field="balance")

        with model_errors("account"):
            account = Account(
                user_id=user_id,
                name=name,
                type=account_type,
                balance=balance,
                color=color,
                icon=icon,
                include_in_total=include_in_total,
                credit_card_id=credit_card_id,
            )
        with storage_errors("account"):
            created = await self._accounts.create_account(account)
        self._logger.info(
            "account_created",
            account_id=str(created.id),
            user_id=str(user_id),
            type=created.type.value,
        )
        return created

    async def get_account(self, account_id: UUID, user_id: UUID) -> Account:
        with storage_errors("account"):
            account = await self._accounts.get_account(account_id)
        return self.check_owner(account, user_id, "account")

    async def list_accounts(self, user_id: UUID, active_only: bool = False) -> list[Account]:
        await self.ensure_user_exists(user_id)
        with storage_errors("account"):
            return await self._accounts.list_accounts(user_id, active_only=active_only)

    async def get_total_balance(self, user_id: UUID) -> Decimal:
        """Sum of active accounts flagged include_in_total."""
        accounts = await self.list_accounts(user_id, active_only=True)
        return sum(
            (a.balance for a in accounts if a.include_in_total),
            ZERO,
        )

    async def update_account(
        self,
        account_id: UUID,
        user_id: UUID,
        name: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        include_in_total: Optional[bool] = None,
        is_active: Optional[bool] = None,
    ) -> Account:
        """
        Change account details. The balance is never touched here.

        Raises:
            ValidationError: If the type would change to or from CREDIT_CARD
        """
        account = await self.get_account(account_id, user_id)

        if account_type is not None and account_type != account.type:
            if AccountType.CREDIT_CARD in (account_type, account.type):
                raise ValidationError(
                    "credit card accounts are managed through their card",
                    field="type",
                )
            if account_type != AccountType.CREDIT_CARD and account.balance < 0:
                raise ValidationError("account balance is negative", field="type")
            account.type = account_type
        if name is not None:
            if not name.strip():
                raise ValidationError("name is required", field="name")
            account.name = name.strip()
        if color is not None:
            account.color = color
        if icon is not None:
            account.icon = icon
        if include_in_total is not None:
            account.include_in_total = include_in_total
        if is_active is not None:
            account.is_active = is_active

        with storage_errors("account"):
            return await self._accounts.update_account(account)

    async def delete_account(self, account_id: UUID, user_id: UUID) -> None:
        """
        Remove an account.

        Raises:
            ValidationError: If the balance is not zero
            ConflictError: If the account is the shadow of a credit card
        """
        account = await self.get_account(account_id, user_id)
        if account.credit_card_id is not None:
            raise ConflictError("account belongs to a credit card; delete the card instead")
        if account.balance != 0:
            raise ValidationError("account balance must be zero to delete it", field="balance")
        with storage_errors("account"):
            await self._accounts.delete_account(account_id)
        self._logger.info("account_deleted", account_id=str(account_id), user_id=str(user_id))

    async def delete_card_account(self, credit_card_id: UUID, user_id: UUID) -> bool:
        """Remove the shadow account of a card being deleted."""
        with storage_errors("account"):
            account = await self._accounts.get_account_by_credit_card(credit_card_id)
            if account is None or account.user_id != user_id:
                return False
            return await self._accounts.delete_account(account.id)

    async def update_balance(self, account_id: UUID, user_id: UUID, delta: Decimal) -> Account:
        """
        Apply a signed delta to an account balance.

        Args:
            account_id: The account to change
            user_id: Owner of the account
            delta: Positive to credit, negative to debit

        Returns:
            The account after the change

        Raises:
            NotFoundError / ResourceNotOwnedError: If the account isn't the user's
            InsufficientFundsError: If a non-credit-card balance would go negative
        """
        delta = quantize_money(delta)
        account = await self.get_account(account_id, user_id)
        if not account.can_apply(delta):
            raise InsufficientFundsError()

        try:
            updated = await self._accounts.increment_balance(
                account_id,
                delta,
                floor=account.balance_floor,
            )
        except ConstraintViolationError as e:
            raise InsufficientFundsError() from e
        except RecordNotFoundError as e:
            raise NotFoundError("account", account_id) from e
        except StorageError as e:
            raise DatabaseError(f"storage failure on account: {e}") from e

        self._logger.debug(
            "balance_updated",
            account_id=str(account_id),
            delta=str(delta),
            balance=str(updated.balance),
        )
        return updated

    async def transfer(
        self,
        from_account_id: UUID,
        to_account_id: UUID,
        user_id: UUID,
        amount: Decimal,
    ) -> tuple[Account, Account]:
        """
        Move money between two accounts of the same user.

        Both legs run in one storage unit of work: either both balances
        change or neither does.

        Returns:
            (source account, destination account) after the transfer

        Raises:
            ValidationError: If amount <= 0 or both accounts are the same
            InsufficientFundsError: If the source can't cover the amount
        """
        amount = positive_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("cannot transfer to the same account", field="to_account_id")

        source = await self.get_account(from_account_id, user_id)
        await self.get_account(to_account_id, user_id)
        if not source.can_apply(-amount):
            raise InsufficientFundsError()

        async with self._accounts.atomic():
            debited = await self.update_balance(from_account_id, user_id, -amount)
            credited = await self.update_balance(to_account_id, user_id, amount)

        await self._audit_logger.log_transfer(
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            user_id=user_id,
            amount=amount,
        )
        return debited, credited
