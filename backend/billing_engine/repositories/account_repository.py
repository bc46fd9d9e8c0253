"""
Repository for Account records.

State changes driven by processor events must use compare_and_set_state so
that an out-of-order event cannot overwrite a newer state.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from billing_engine.errors import ConflictError
from billing_engine.models.account import Account, SubscriptionState
from billing_engine.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AccountRepository(BaseRepository[Account]):
    """Data access for accounts."""

    def _get_model_class(self) -> type:
        return Account

    def get_by_email(self, email: str) -> Optional[Account]:
        return self.db_session.query(Account).filter(
            Account.email == normalize_email(email)
        ).first()

    def get_by_external_subscription_id(self, subscription_id: str) -> Optional[Account]:
        return self.db_session.query(Account).filter(
            Account.external_subscription_id == subscription_id
        ).first()

    def get_by_external_customer_id(self, customer_id: str) -> Optional[Account]:
        return self.db_session.query(Account).filter(
            Account.external_customer_id == customer_id
        ).first()

    def list_with_open_subscriptions(self) -> List[Account]:
        """Accounts whose processor subscription may still change."""
        return self.db_session.query(Account).filter(
            Account.external_subscription_id.isnot(None),
            Account.subscription_state != SubscriptionState.CANCELED.value,
        ).all()

    def get_or_create(
        self,
        account_id: str,
        email: str,
        phone: Optional[str] = None,
    ) -> Tuple[Account, bool]:
        """
        Fetch an account by id, creating it on first reference.

        The insert is flushed, not committed; the caller owns the transaction.

        Returns:
            (account, created)

        Raises:
            ConflictError: email already belongs to a different account
        """
        email = normalize_email(email)
        account = self.get_by_id(account_id)
        if account:
            return account, False

        by_email = self.get_by_email(email)
        if by_email:
            raise ConflictError(
                "Email is already registered to another account",
                reason="AccountEmailConflict",
            )

        account = Account(
            id=account_id,
            email=email,
            phone=phone,
            subscription_tier="free",
            subscription_state=SubscriptionState.NONE.value,
            subscription_active=False,
            is_whitelisted=False,
            cancel_at_period_end=False,
        )
        try:
            with self.db_session.begin_nested():
                self.db_session.add(account)
        except IntegrityError:
            # Concurrent first reference created it; only the savepoint is undone
            account = self.get_by_id(account_id)
            if account is None:
                raise ConflictError(
                    "Email is already registered to another account",
                    reason="AccountEmailConflict",
                )
            return account, False

        logger.info("Account created", extra={"account_id": account_id})
        return account, True

    def set_external_customer_id_if_missing(self, account_id: str, customer_id: str) -> bool:
        """Bind a processor customer id unless one is already bound."""
        updated = self.db_session.query(Account).filter(
            Account.id == account_id,
            Account.external_customer_id.is_(None),
        ).update(
            {Account.external_customer_id: customer_id},
            synchronize_session="fetch",
        )
        return updated == 1

    def compare_and_set_state(
        self,
        account_id: str,
        expected_state: str,
        values: Dict[str, Any],
        expected_subscription_id: Optional[str] = None,
        check_subscription_id: bool = False,
    ) -> bool:
        """
        Apply values only if the row is still in expected_state.

        Args:
            account_id: Account to update
            expected_state: State the caller based its decision on
            values: Column name -> new value
            expected_subscription_id: Subscription id the caller read
            check_subscription_id: Also require external_subscription_id to match

        Returns:
            True if exactly one row was updated
        """
        query = self.db_session.query(Account).filter(
            Account.id == account_id,
            Account.subscription_state == expected_state,
        )
        if check_subscription_id:
            if expected_subscription_id is None:
                query = query.filter(Account.external_subscription_id.is_(None))
            else:
                query = query.filter(Account.external_subscription_id == expected_subscription_id)

        updated = query.update(
            {getattr(Account, key): value for key, value in values.items()},
            synchronize_session="fetch",
        )
        if updated != 1:
            logger.warning(
                "Account compare-and-set lost",
                extra={"account_id": account_id, "expected_state": expected_state}
            )
            return False
        return True
