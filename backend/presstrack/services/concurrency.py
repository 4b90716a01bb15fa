# Overview: Transaction scoping and row locking shared by the workflow and ledger services.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PressTrackError, StaleState
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns and the ledger sequence constraint still
    catch a racing writer at flush time.
    """
    return query.with_for_update()


def run_in_transaction(func, *, entity: str, entity_id=None, operation: str):
    """
    Run a read-check-write operation as one storage transaction and commit it.

    - Domain errors roll back and propagate unchanged.
    - StaleDataError (version_id mismatch), IntegrityError (ledger sequence
      collision) and OperationalError (lock contention) roll back and surface
      as StaleState. Retrying is the caller's decision, never ours.
    """
    try:
        result = func()
        db.session.commit()
        return result
    except PressTrackError:
        db.session.rollback()
        raise
    except (StaleDataError, IntegrityError, OperationalError) as exc:
        db.session.rollback()
        current_app.logger.info(
            "Concurrent write rejected: %s %s during %s (%s)",
            entity, entity_id, operation, exc.__class__.__name__,
        )
        raise StaleState(
            f"{entity} {entity_id} was modified concurrently; re-read and retry",
            entity=entity,
            entity_id=entity_id,
            operation=operation,
        ) from exc
    except Exception:
        db.session.rollback()
        raise
