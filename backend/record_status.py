"""
Canonical status values for the students.status and commissions.status columns.

Plain class constants (not Python Enum) so the values serialize to bare strings
for Supabase updates without .value unwrapping. students.status is enforced by
the students_status_check constraint.

Commission lifecycle:
    PENDING → CLAIMED  (claim)
    CLAIMED → PENDING  (unclaim; the invoice was sent, only the claim is undone)
"""


class StudentStatus:
    ACTIVE = "active"
    ENROLLED = "enrolled"
    PENDING = "pending"     # invoice sent to the school
    CLAIMED = "claimed"     # commission received
    CANCELLED = "cancelled"

    ALL = frozenset({ACTIVE, ENROLLED, PENDING, CLAIMED, CANCELLED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class CommissionStatus:
    PENDING = "pending"
    CLAIMED = "claimed"

    ALL = frozenset({PENDING, CLAIMED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL
