"""
Error taxonomy for demo case operations.

Service functions raise these; the JSON views turn them into responses using
``status_code``.
"""


class DemoKitError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(DemoKitError):
    """A required field is missing or malformed. Nothing was written."""
    status_code = 400


class DuplicateError(DemoKitError):
    """Article reference or team member email already taken."""
    status_code = 409


class PolicyViolation(DemoKitError):
    """Case-bound item lent outside a full-case loan."""
    status_code = 403


class OutOfStock(DemoKitError):
    status_code = 409


class InvalidState(DemoKitError):
    """Operation not allowed in the record's current state."""
    status_code = 409


class StoreError(DemoKitError):
    """The database rejected or failed a read or write."""
    status_code = 500
