import logging
from typing import Any, Dict

from pymongo.database import Database

from . import giftcards, investment, orders
from .errors import InvalidInput
from .notifications import Mailer
from .payments import is_paid

logger = logging.getLogger(__name__)


def handle_event(db: Database, mailer: Mailer, event: Dict[str, Any]) -> Dict[str, bool]:
    """Apply a signature-checked gateway event. Every branch is safe to replay."""
    event_type = event.get("type")
    if event_type != "checkout.session.completed":
        logger.info("Ignoring gateway event %s", event_type)
        return {"received": True}

    session = (event.get("data") or {}).get("object") or {}
    if not session.get("id"):
        raise InvalidInput("Malformed event payload")
    if not is_paid(session):
        logger.info("Session %s completed without payment, waiting", session["id"])
        return {"received": True}

    kind = (session.get("metadata") or {}).get("kind", "order")
    if kind == "investment":
        investment.credit_purchase(db, session, mailer)
    elif kind == "giftcard":
        giftcards.fulfil_purchase(db, session, mailer)
    else:
        before = orders.mark_completed(db, session["id"])
        if before is None:
            logger.info("No open order for session %s", session["id"])
        else:
            logger.info("Order %s completed", before["_id"])
            if before["status"] == "Pending":
                # payment was never verified from the browser, so no confirmation went out yet
                orders.send_confirmation(db, mailer, before)
    return {"received": True}
