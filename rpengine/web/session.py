"""Local session storage for signed-in tickets."""

from __future__ import annotations

import logging
from typing import Any

from flask import session

from rpengine.core.oidc.properties import Ticket

logger = logging.getLogger(__name__)

# Session key holding the serialized ticket
TICKET_SESSION_KEY = "rpengine_ticket"


def load_ticket() -> Ticket | None:
    """Return the ticket of the current session, if any.

    A ticket that cannot be read is dropped from the session.
    """
    data: dict[str, Any] | None = session.get(TICKET_SESSION_KEY)
    if not data:
        return None
    try:
        return Ticket.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Discarding unreadable session ticket: {e}")
        session.pop(TICKET_SESSION_KEY, None)
        return None


def store_ticket(ticket: Ticket) -> None:
    session[TICKET_SESSION_KEY] = ticket.to_dict()
    logger.info(f"Signed in '{ticket.principal.name or ticket.find_first('sub')}' with scheme '{ticket.scheme}'")


def clear_ticket() -> None:
    if session.pop(TICKET_SESSION_KEY, None) is not None:
        logger.info("Signed out of the local session")
