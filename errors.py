from money import format_amount


class BudgetError(ValueError):
    status_code = 400


class ValidationError(BudgetError):
    status_code = 400


class InsufficientBudget(ValidationError):
    def __init__(self, name: str, remaining_cents: int, requested_cents: int) -> None:
        self.name = name
        self.remaining_cents = remaining_cents
        self.requested_cents = requested_cents
        super().__init__(
            f'Insufficient budget for sub-activity "{name}" '
            f"(remaining: {format_amount(remaining_cents)}, "
            f"requested: {format_amount(requested_cents)})"
        )


class NotFoundError(BudgetError):
    status_code = 404


class InvalidStateError(BudgetError):
    status_code = 400
