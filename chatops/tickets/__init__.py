"""Support ticket lifecycle."""

from .service import TicketManager, TicketNotFoundError, TicketTransitionError
from .templates import render_template, template_variables

__all__ = [
    "TicketManager",
    "TicketNotFoundError",
    "TicketTransitionError",
    "render_template",
    "template_variables",
]
