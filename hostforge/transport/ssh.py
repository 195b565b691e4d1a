# hostforge/transport/ssh.py
import subprocess
from typing import List

from hostforge.core.logging import log
from hostforge.transport.base import TIMEOUT_EXIT_CODE, Command, CommandResult, Transport


class SshTransport(Transport):
    """Drives the system ``ssh`` client, one subprocess per command."""

    def __init__(self, timeout_seconds: int = 300, strict_host_key_checking: bool = False):
        self.timeout_seconds = timeout_seconds
        self.strict_host_key_checking = strict_host_key_checking

    def _ssh_cmd(self, server, cmd: str) -> List[str]:
        opts = ["-p", str(server.ssh_port), "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]
        if not self.strict_host_key_checking:
            opts += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        target = f"{server.ssh_user}@{server.public_ip}"
        if server.key_path:
            return ["ssh", "-i", server.key_path, *opts, target, cmd]
        return ["ssh", *opts, target, cmd]

    def run_one(self, server, command: Command) -> CommandResult:
        timeout = command.timeout or self.timeout_seconds
        try:
            p = subprocess.run(
                self._ssh_cmd(server, command.text),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            log(f"server-{server.id}", f"timeout after {timeout}s: {command.text[:200]}", level="warning")
            return CommandResult(command=command.text, exit_code=TIMEOUT_EXIT_CODE, stderr=f"timeout after {timeout}s")
        except OSError as e:
            return CommandResult(command=command.text, exit_code=255, stderr=f"{type(e).__name__}: {e}")
        return CommandResult(command=command.text, exit_code=p.returncode, stdout=p.stdout or "", stderr=p.stderr or "")
