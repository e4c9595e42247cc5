# Overview: Transaction helpers for stock writes; row locks and optimistic-lock conflicts.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrentUpdate


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Products and lots also carry a version_id column, so a concurrent writer
    is still detected at flush time on SQLite.
    """
    return query.with_for_update()


def run_in_transaction(func, *, commit: bool = True):
    """
    Run one unit of stock work and commit it, or roll all of it back.

    Stock mutations are never retried here: replaying a deduction after a
    conflict risks applying it twice. Conflicts surface as ConcurrentUpdate so
    the caller can re-read current state and decide.
    """
    try:
        result = func()
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return result
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentUpdate(
            "stock was changed by another operation; reload and try again"
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        raise ConcurrentUpdate(
            "write rejected by a stock constraint; reload and try again",
            details={"constraint": str(exc.orig)},
        ) from exc
    except Exception:
        db.session.rollback()
        raise
