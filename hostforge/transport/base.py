# hostforge/transport/base.py
from typing import List, Optional, Sequence, Union

from pydantic import BaseModel

TIMEOUT_EXIT_CODE = 124


class Command(BaseModel):
    text: str
    # Failure is recorded but does not stop the sequence (e.g. optional mkdir).
    best_effort: bool = False
    timeout: Optional[int] = None


class CommandResult(BaseModel):
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    best_effort: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


CommandLike = Union[str, Command]


def as_command(c: CommandLike) -> Command:
    return c if isinstance(c, Command) else Command(text=c)


def best_effort(text: str) -> Command:
    return Command(text=text, best_effort=True)


class Transport:
    """Runs an ordered command list on one server, one command at a time.

    The sequence stops at the first non-zero exit of a command that is not
    best-effort. There is no rollback, callers that need one design for it.
    """

    def run_one(self, server, command: Command) -> CommandResult:
        raise NotImplementedError

    def execute(self, server, commands: Sequence[CommandLike]) -> List[CommandResult]:
        results = []
        for c in commands:
            cmd = as_command(c)
            res = self.run_one(server, cmd)
            res.best_effort = cmd.best_effort
            results.append(res)
            if not res.ok and not cmd.best_effort:
                break
        return results


def first_failure(results: Sequence[CommandResult]) -> Optional[CommandResult]:
    for r in results:
        if not r.ok and not r.best_effort:
            return r
    return None


def joined_output(results: Sequence[CommandResult]) -> str:
    return "\n".join(r.stdout for r in results if r.stdout)


def joined_errors(results: Sequence[CommandResult]) -> str:
    return "\n".join(r.stderr for r in results if r.stderr)
