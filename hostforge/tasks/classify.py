from typing import Callable, Optional

from hostforge.core.errors import TransportError
from hostforge.transport.base import CommandResult

MIGRATION_HINT = "Database migration failed. Check your migration files and database connection settings."
DEPENDENCY_HINT = "Dependency installation failed. Check your composer.json / package.json and that the runtime versions match."
NGINX_TEST_HINT = "Nginx configuration test failed. The generated site configuration is invalid."
NGINX_WRITE_HINT = "Could not write the Nginx site configuration."
GIT_HINT = "Git clone failed. Check the repository URL, the branch name and that the server's deploy key has access."
PERMISSION_HINT = "Permission denied. The remote user lacks the rights this command needs."

# (substring of command, hint). First match wins.
_COMMAND_HINTS = (
    ("artisan migrate", MIGRATION_HINT),
    ("composer install", DEPENDENCY_HINT),
    ("npm install", DEPENDENCY_HINT),
    ("npm ci", DEPENDENCY_HINT),
    ("nginx -t", NGINX_TEST_HINT),
    ("sites-available", NGINX_WRITE_HINT),
    ("sites-enabled", NGINX_WRITE_HINT),
    ("git clone", GIT_HINT),
)


def hint_for(command: str, stderr: str = "") -> Optional[str]:
    for needle, hint in _COMMAND_HINTS:
        if needle in command:
            return hint
    if " migrate" in command:
        return MIGRATION_HINT
    if "Permission denied" in (stderr or ""):
        return PERMISSION_HINT
    return None


def to_error(result: CommandResult, extra: Optional[Callable[[str, str], Optional[str]]] = None) -> TransportError:
    """Turn a failed result into a :class:`TransportError` with the best hint we have."""
    hint = extra(result.command, result.stderr) if extra else None
    if hint is None:
        hint = hint_for(result.command, result.stderr)
    return TransportError(result.command, result.exit_code, stdout=result.stdout, stderr=result.stderr, hint=hint)
