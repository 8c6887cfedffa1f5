"""Staff model type definitions for database operations."""

from typing import TypedDict


class Staff(TypedDict):
    """Staff table row representation.

    Only the columns the order core reads are listed.
    """

    id: str
    first_name: str
    last_name: str
    email_address: str
    is_active: bool
