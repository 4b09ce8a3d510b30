"""
shared/exceptions.py
Domain error taxonomy. Services raise these; main.py renders them as
{"detail", "code", ...extra} JSON with the matching HTTP status.
"""

from typing import Any, Iterable, Optional


class DomainError(Exception):
    status_code: int = 400
    code: str = "error"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code, **self.extra}


# ── Validation ────────────────────────────────────────────────

class ValidationError(DomainError):
    """Malformed rule, date or amount. Rejected before touching the store."""
    status_code = 400
    code = "validation_error"


class InvalidRule(ValidationError):
    code = "invalid_rule"


class InsufficientBalance(ValidationError):
    code = "insufficient_balance"

    def __init__(self, available, requested):
        super().__init__(
            "Insufficient available balance",
            available=str(available),
            requested=str(requested),
        )


# ── Conflicts (caller must retry with fresh data) ─────────────

class ConflictError(DomainError):
    status_code = 409
    code = "conflict"


class SlotConflict(ConflictError):
    code = "slot_conflict"

    def __init__(self, detail: str = "One or more slots are no longer available", slot_ids: Iterable = ()):
        super().__init__(
            detail,
            slot_ids=[str(s) for s in slot_ids],
            refresh_availability=True,
        )


class HoldExpired(ConflictError):
    code = "hold_expired"

    def __init__(self, detail: str = "Your hold has expired. Please select your slots again"):
        super().__init__(detail, reselect_slots=True)


class HoldNotOwned(ConflictError):
    code = "hold_not_owned"

    def __init__(self, detail: str = "These slots are held by another client"):
        super().__init__(detail, reselect_slots=True)


class NonContiguousSelection(ConflictError):
    code = "non_contiguous_selection"

    def __init__(self, detail: str = "Selected slots must be back-to-back with no gaps"):
        super().__init__(detail)


# ── Access / lifecycle ────────────────────────────────────────

class AuthorizationError(DomainError):
    status_code = 403
    code = "forbidden"


class StateError(DomainError):
    """Transition attempted from an illegal current state."""
    status_code = 409
    code = "invalid_state"

    def __init__(self, detail: str, current_status: Optional[str] = None):
        super().__init__(detail, current_status=current_status)


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"
