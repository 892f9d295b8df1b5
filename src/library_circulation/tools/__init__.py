"""
MCP Tools for the Library Circulation Server.

Tools are the operations with side effects: borrowing, returning, renewing,
reserving and the staff maintenance runs. Read-only views live in
``resources``.

Each tool is a dictionary with its name, description, JSON input schema and
async handler; ``server.py`` registers everything in ``all_tools``.
"""

from .circulation import (
    borrow_book,
    cancel_reservation,
    expire_reservations,
    list_overdue_loans,
    mark_notifications_read,
    pay_fine,
    renew_loan,
    reserve_book,
    return_loan,
    send_due_reminders,
    send_overdue_notices,
    sweep_overdue,
)

all_tools = [
    borrow_book,
    return_loan,
    renew_loan,
    reserve_book,
    cancel_reservation,
    pay_fine,
    expire_reservations,
    sweep_overdue,
    send_due_reminders,
    send_overdue_notices,
    list_overdue_loans,
    mark_notifications_read,
]

__all__ = ["all_tools"]
