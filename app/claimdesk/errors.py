"""
Domain errors raised by the service layer.

Blueprints catch these at the request boundary and turn them into flashed
messages / re-rendered forms. Nothing here is retried.
"""
from __future__ import annotations


class ClaimDeskError(Exception):
    pass


class ValidationError(ClaimDeskError):
    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DuplicateUsername(ClaimDeskError):
    def __init__(self, username: str):
        self.username = username
        super().__init__(f"Username '{username}' is already taken.")


class InvalidCredentials(ClaimDeskError):
    def __init__(self) -> None:
        super().__init__("Invalid username or password.")


class ClaimNotFound(ClaimDeskError):
    def __init__(self, claim_id: int):
        self.claim_id = claim_id
        super().__init__(f"Claim {claim_id} not found.")


class InvalidStatusTransition(ClaimDeskError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from '{current}' to '{requested}'")


class StorageError(RuntimeError):
    pass
