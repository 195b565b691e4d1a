from typing import Dict, Optional


class HostforgeError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(HostforgeError):
    """Rejected before any state change. Errors are keyed by field name."""

    status_code = 422

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        super().__init__("; ".join(self.errors.values()))

    def to_dict(self) -> dict:
        return {"detail": self.message, "errors": self.errors}


class StateConflictError(HostforgeError):
    status_code = 409


class AuthorizationError(HostforgeError):
    status_code = 403


class NotFoundError(HostforgeError):
    status_code = 404


class TransportError(HostforgeError):
    """A remote command exited non-zero, timed out, or could not be run."""

    status_code = 502

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = "", hint: Optional[str] = None):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.hint = hint
        super().__init__(f"Command failed ({exit_code}): {command}")

    def error_log(self) -> str:
        parts = []
        if self.hint:
            parts.append(self.hint)
        parts.append(f"Failed to execute command: {self.command}")
        parts.append(f"Exit code: {self.exit_code}")
        if self.stderr:
            parts.append(f"Error Output:\n{self.stderr}")
        if self.stdout:
            parts.append(f"Standard Output:\n{self.stdout}")
        return "\n\n".join(parts)
