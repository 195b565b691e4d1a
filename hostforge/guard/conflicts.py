"""Validation that runs before any record changes.

Nothing here writes. Every check returns a dict of ``{field: message}``;
callers raise :class:`ValidationError` when it is non-empty.
"""
import re
from typing import Dict, List, Optional, Tuple

from hostforge.core.errors import ValidationError
from hostforge.core.store import Store
from hostforge.deploy.models import Site
from hostforge.servers.models import Resource, ResourceKind
from hostforge.tasks.kinds import spec_for
from hostforge.tasks.status import TaskStatus

MAX_COMMAND_LENGTH = 1000

_PORT_RE = re.compile(r"^\d{1,5}(-\d{1,5})?$")

_INACTIVE = (TaskStatus.FAILED, TaskStatus.REMOVING)

_CATEGORY_LABEL = {"database": "database", "cache": "cache/queue service"}


def _dangerous_patterns(app_user: str) -> List[re.Pattern]:
    home = re.escape(f"/home/{app_user}")
    user = re.escape(app_user)
    raw = [
        rf"\brm\s+-rf\s+/(?!{home[1:]})",
        r"\b(mkfs|fdisk|parted|dd\s+if=.*of=/dev)",
        r"\b(reboot|shutdown|poweroff|halt)\b",
        rf"\b(userdel|usermod|groupdel|groupmod)\b(?!.*{user})",
        rf"\b(passwd|chpasswd)\b(?!.*{user})",
        rf"\b(chmod|chown|chgrp)\s+(?!.*{home})",
        r"\b(nmap|masscan|hping|tcpdump)\b",
        r"\b(nc|netcat)\s+.*-[el]",
        r"\b(bash|sh|python|perl|ruby|php)\s+.*-[ic]\s+.*/dev/tcp",
        r"/dev/tcp/[\d.]+/\d+",
        r"\b(cat|grep|find|locate)\b.*/(\.ssh|\.aws|\.kube|\.docker|\.npm|\.gem)",
        r"\b(cat|grep|find)\b.*/(shadow|passwd|sudoers)",
        r"(curl|wget)\s+.*\|\s*(bash|sh|python|perl|ruby|php)",
        r"\b(insmod|rmmod|modprobe)\b",
        r"\bsysctl\b",
        r"\bcrontab\b",
        r"\b(systemctl|service)\s+(stop|disable|mask)\b.*\b(nginx|php|mysql|postgresql)",
        r"[;&|`$()]",
    ]
    return [re.compile(p, re.IGNORECASE) for p in raw]


def parse_port(value, allow_range: bool = False) -> Tuple[Optional[Tuple[int, int]], Optional[str]]:
    """Return ``((start, end), None)`` or ``(None, message)``."""
    text = str(value).strip()
    if not _PORT_RE.match(text) or ("-" in text and not allow_range):
        if allow_range:
            return None, "The port must be a valid port number (1-65535) or range (e.g., 3000-3005)."
        return None, "Port number must be between 1 and 65535."
    if "-" in text:
        a, b = (int(x) for x in text.split("-"))
        if a >= b:
            return None, "Port range start must be less than end."
        if a < 1 or b > 65535:
            return None, "Port numbers must be between 1 and 65535."
        return (a, b), None
    p = int(text)
    if p < 1 or p > 65535:
        return None, "Port number must be between 1 and 65535."
    return (p, p), None


class ConflictGuard:
    def __init__(self, store: Store, app_user: str = "hostforge"):
        self.store = store
        self.app_user = app_user
        self._patterns = _dangerous_patterns(app_user)

    # ---------------- install ----------------
    def _live(self, server_id: str, exclude_id: Optional[str] = None) -> List[Resource]:
        return [
            r for r in self.store.resources(server_id)
            if r.status not in _INACTIVE and r.id != exclude_id
        ]

    def check_install(self, server_id: str, kind: ResourceKind, version: Optional[str] = None,
                      port=None, exclude_id: Optional[str] = None) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        spec = spec_for(kind)
        live = self._live(server_id, exclude_id)

        if spec.category:
            taken = [r for r in live if spec_for(r.kind).category == spec.category]
            if taken:
                label = _CATEGORY_LABEL[spec.category]
                errors["type"] = (
                    f"This server already has a {label} installed. "
                    f"Please uninstall the existing {label} before installing a new one."
                )

        if kind in (ResourceKind.PHP, ResourceKind.NODE) and version:
            if any(r.kind == kind and r.version == str(version) for r in live):
                errors["version"] = f"{spec.label} {version} is already installed on this server."

        if port not in (None, ""):
            msg = self.check_port(server_id, kind, port, exclude_id)
            if msg:
                errors["port"] = msg
        return errors

    def check_port(self, server_id: str, kind: ResourceKind, port, exclude_id: Optional[str] = None) -> Optional[str]:
        is_rule = kind == ResourceKind.FIREWALL_RULE
        _, msg = parse_port(port, allow_range=is_rule)
        if msg:
            return msg
        value = str(port).strip()
        for r in self._live(server_id, exclude_id):
            if not r.port:
                continue
            if is_rule:
                if r.kind == ResourceKind.FIREWALL_RULE and r.port == value:
                    return "A firewall rule for this port already exists on this server."
            elif r.kind != ResourceKind.FIREWALL_RULE and r.port == value:
                return "This port is already in use by another service on this server."
        return None

    def next_available_port(self, server_id: str, kind: ResourceKind) -> Optional[int]:
        start = spec_for(kind).default_port
        if start is None:
            return None
        used = {
            r.port for r in self._live(server_id)
            if r.port and r.kind != ResourceKind.FIREWALL_RULE
        }
        port = start
        while str(port) in used and port < 65535:
            port += 1
        return port

    # ---------------- dependents ----------------
    def dependents(self, resource: Resource) -> List[Site]:
        sites = self.store.sites(resource.server_id)
        if spec_for(resource.kind).category == "database":
            return [s for s in sites if s.database_id == resource.id]
        if resource.kind == ResourceKind.NODE:
            return [s for s in sites if s.node_id == resource.id]
        if resource.kind == ResourceKind.PHP:
            return [s for s in sites if s.php_version == resource.version]
        return []

    def dependents_message(self, resource: Resource, sites: List[Site]) -> str:
        label = spec_for(resource.kind).label
        word = "site" if len(sites) == 1 else "sites"
        domains = ", ".join(s.domain for s in sites)
        if spec_for(resource.kind).category == "database":
            return (
                f"Cannot uninstall {label} database. {len(sites)} {word} currently depend on it: {domains}. "
                "To proceed, either delete these sites or migrate them to a different database."
            )
        return f"Cannot remove {label} {resource.version}. {len(sites)} {word} currently depend on it: {domains}."

    # ---------------- protected ----------------
    def protected(self, resource: Resource, verb: str) -> Dict[str, str]:
        label = spec_for(resource.kind).label
        if resource.kind == ResourceKind.DATABASE_USER and resource.is_root:
            return {"user": "Root user cannot be deleted." if verb == "remove" else "Root user cannot be modified."}
        if resource.kind == ResourceKind.PHP:
            if resource.is_cli_default:
                return {"php": f"Cannot {verb} PHP {resource.version} as it is the CLI default version"}
            if resource.is_site_default:
                return {"php": f"Cannot {verb} PHP {resource.version} as it is the Site default version"}
        if resource.kind == ResourceKind.NODE and resource.is_default:
            return {"node": f"Cannot {verb} {label} {resource.version} as it is the default version"}
        if resource.kind == ResourceKind.FIREWALL and resource.is_default:
            return {"firewall": "The default firewall cannot be modified."}
        return {}

    def check_remove(self, resource: Resource) -> Dict[str, str]:
        errors = self.protected(resource, "remove")
        if errors:
            return errors
        sites = self.dependents(resource)
        if sites:
            field = "database" if spec_for(resource.kind).category == "database" else resource.kind.value
            errors[field] = self.dependents_message(resource, sites)
        return errors

    def check_update(self, resource: Resource) -> Dict[str, str]:
        errors = self.protected(resource, "update")
        if not errors and not spec_for(resource.kind).supports_update:
            errors["type"] = f"{spec_for(resource.kind).label.capitalize()} cannot be updated automatically yet."
        return errors

    # ---------------- commands ----------------
    def check_command(self, command) -> Optional[str]:
        if not isinstance(command, str) or not command.strip():
            return "The command must be a valid command string."
        if len(command) > MAX_COMMAND_LENGTH:
            return f"The command exceeds maximum length of {MAX_COMMAND_LENGTH} characters."
        if "\0" in command:
            return "The command contains invalid characters."
        for p in self._patterns:
            if p.search(command):
                return (
                    "The command contains potentially dangerous commands or syntax. "
                    "Please contact support if you need to run system-level operations."
                )
        if re.search(r"\bsudo\b", command, re.IGNORECASE):
            return "The command should not use sudo. Commands run with appropriate privileges automatically."
        return None


def raise_if(errors: Dict[str, str]):
    if errors:
        raise ValidationError(errors)


