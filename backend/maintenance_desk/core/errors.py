"""
Domain errors raised by the announcement workflow.

The API layer maps each class to an HTTP status via ``status_code``; the
service layer never deals with HTTP itself.
"""


class MaintenanceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(MaintenanceError):
    status_code = 404


class InvalidTransition(MaintenanceError):
    status_code = 409


class InvalidState(MaintenanceError):
    status_code = 409


class ApprovalExpired(InvalidState):
    status_code = 410


class ValidationError(MaintenanceError):
    status_code = 422


class DependencyFailure(MaintenanceError):
    status_code = 502
