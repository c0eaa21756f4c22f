"""
Database Infrastructure Package for the Billing Reconciler

Exports database utilities, models, and repositories.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session,
    get_session_context,
    init_db,
    close_db,
)

from app.infrastructure.db.dependencies import (
    SessionDep,
    get_subscription_repository,
    SubscriptionRepoDep,
)

from app.infrastructure.db.unit_of_work import (
    BillingUnitOfWork,
    billing_unit_of_work,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Dependencies
    "SessionDep",
    "get_subscription_repository",
    "SubscriptionRepoDep",
    # Unit of work
    "BillingUnitOfWork",
    "billing_unit_of_work",
]
