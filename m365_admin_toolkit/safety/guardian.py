"""
The change guardian sits in front of every outbound request.
Runs dry by default: writes are recorded as planned changes and never sent
unless the guardian was created with apply=True. Destructive device and
credential actions are blocked in every mode.
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from ..config import ToolkitError

logger = logging.getLogger("m365_admin_toolkit.safety")

# ─── HTTP Methods ────────────────────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}
WRITE_METHODS = {"POST", "PUT", "PATCH", "MERGE", "DELETE"}

# Known read-only POST endpoints (Graph and SharePoint use POST for some queries)
SAFE_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),                                  # Batch read requests
    re.compile(r"/microsoft\.graph\.getByIds$"),               # Resolve IDs
    re.compile(r"/SPO\.Tenant/GetSitePropertiesByUrl$", re.IGNORECASE),
]

# Destructive actions this toolkit never issues
BLOCKED_URL_PATTERNS = [
    re.compile(r"/resetPassword$", re.IGNORECASE),
    re.compile(r"/revokeSignInSessions$", re.IGNORECASE),
    re.compile(r"/addPassword$", re.IGNORECASE),
    re.compile(r"/removePassword$", re.IGNORECASE),
    re.compile(r"/wipe$", re.IGNORECASE),
    re.compile(r"/retire$", re.IGNORECASE),
    re.compile(r"/cleanWindowsDevice$", re.IGNORECASE),
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SafetyViolation(ToolkitError):
    """Raised when a blocked operation is attempted."""
    pass


class ChangeGuardian:
    """
    Validates every outbound HTTP request and keeps the change audit trail.

    validate_request() returns True when the request may be sent and False
    when it was only recorded (dry run). Blocked requests raise.
    """

    def __init__(self, apply: bool = False, allow_delete: bool = False):
        self.apply = apply
        self.allow_delete = allow_delete
        self.changes: list[dict] = []
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _now()

    @property
    def mode(self) -> str:
        return "APPLY" if self.apply else "DRY-RUN"

    def _refusal(self, method: str, url: str) -> Optional[str]:
        if any(p.search(url) for p in BLOCKED_URL_PATTERNS):
            return "Blocked destructive action"
        if method == "DELETE" and not self.allow_delete:
            return "DELETE not enabled"
        if method not in WRITE_METHODS:
            return "Unknown HTTP method"
        return None

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        self.checks_performed += 1
        method = method.upper()

        if method in READ_METHODS:
            return True
        if method == "POST" and any(p.search(url) for p in SAFE_POST_ENDPOINTS):
            return True

        reason = self._refusal(method, url)
        if reason:
            self.violations.append({"timestamp": _now(), "method": method, "url": url, "reason": reason})
            logger.critical(f"Refused {method} {url}: {reason}")
            raise SafetyViolation(f"SAFETY VIOLATION: {reason}: {method} {url}")

        status = "applied" if self.apply else "planned"
        self.changes.append({"timestamp": _now(), "method": method, "url": url, "body": body, "status": status})
        logger.info(f"{'Sending' if self.apply else 'Dry run, not sent'}: {method} {url}")
        return self.apply

    @property
    def planned_changes(self) -> list[dict]:
        return [c for c in self.changes if c["status"] == "planned"]

    @property
    def applied_changes(self) -> list[dict]:
        return [c for c in self.changes if c["status"] == "applied"]

    def get_audit_record(self) -> dict:
        """Return the full change audit record."""
        return {
            "change_guardian": {
                "mode": self.mode,
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "planned_changes": len(self.planned_changes),
                "applied_changes": len(self.applied_changes),
                "violations_detected": len(self.violations),
                "changes": self.changes,
                "violations": self.violations,
            }
        }

    def print_banner(self):
        """Print the dry-run / apply banner."""
        enc = getattr(sys.stdout, "encoding", "") or ""
        unicode_ok = (
            sys.stdout.isatty()
            and enc.lower().replace("-", "") in ("utf8", "utf16", "utf32")
        )
        rule = "═" * 70 if unicode_ok else "=" * 70

        print(rule)
        if self.apply:
            print("  APPLY MODE -- changes WILL be written to the tenant")
        else:
            print("  DRY RUN -- no changes will be written (pass --apply to write)")
            print("  * Reads run normally; every write is recorded as a planned change")
        print("  * Device wipe/retire and credential resets are always blocked")
        print(rule)
