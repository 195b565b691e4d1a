import threading
from typing import List, Optional, Tuple

from hostforge.transport.base import Command, CommandResult, Transport


class RecordingTransport(Transport):
    """Transport that never leaves the process.

    Every command succeeds with empty output unless a scripted response
    matches it (first registered substring wins). All calls are recorded.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rules: List[Tuple[str, int, str, str]] = []
        self.calls: List[Tuple[str, str]] = []

    def respond(self, match: str, exit_code: int = 0, stdout: str = "", stderr: str = ""):
        with self._lock:
            self._rules.append((match, exit_code, stdout, stderr))
        return self

    def fail_on(self, match: str, stderr: str = "error", exit_code: int = 1, stdout: str = ""):
        return self.respond(match, exit_code=exit_code, stdout=stdout, stderr=stderr)

    def reset(self):
        with self._lock:
            self._rules = []
            self.calls = []

    def _rule_for(self, text: str) -> Optional[Tuple[str, int, str, str]]:
        for rule in self._rules:
            if rule[0] in text:
                return rule
        return None

    def run_one(self, server, command: Command) -> CommandResult:
        with self._lock:
            self.calls.append((server.id, command.text))
            rule = self._rule_for(command.text)
        if rule is None:
            return CommandResult(command=command.text, exit_code=0)
        _, exit_code, stdout, stderr = rule
        return CommandResult(command=command.text, exit_code=exit_code, stdout=stdout, stderr=stderr)

    @property
    def commands(self) -> List[str]:
        return [c for _, c in self.calls]

    def commands_for(self, server_id: str) -> List[str]:
        return [c for sid, c in self.calls if sid == server_id]
