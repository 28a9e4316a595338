"""
Intune corporate device identifiers — validation, CSV loading and bulk import.

Every record is validated before anything is sent; an identity type outside
ALLOWED_IDENTITY_TYPES never reaches the network.
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from ..config import ToolkitError, DEVICE_IMPORT_CHUNK_SIZE
from ..graph.client import GraphClient

logger = logging.getLogger("m365_admin_toolkit.devices")

IMPORTED_IDENTITIES = "deviceManagement/importedDeviceIdentities"
IMPORT_ACTION = f"{IMPORTED_IDENTITIES}/importDeviceIdentityList"

ALLOWED_IDENTITY_TYPES = ("imei", "serialNumber", "manufacturerModelSerial")
_CANONICAL_TYPES = {t.lower(): t for t in ALLOWED_IDENTITY_TYPES}

_IMEI = re.compile(r"^\d{15}$")

# Accepted CSV header spellings → field
_HEADER_ALIASES = {
    "identifier": "identifier",
    "deviceidentifier": "identifier",
    "importeddeviceidentifier": "identifier",
    "type": "identity_type",
    "identitytype": "identity_type",
    "importeddeviceidentitytype": "identity_type",
    "description": "description",
}


class DeviceIdentityError(ToolkitError):
    """Raised when a device identity record is invalid."""
    pass


def normalize_identity_type(value: str) -> str:
    canonical = _CANONICAL_TYPES.get((value or "").strip().lower())
    if not canonical:
        raise DeviceIdentityError(
            f"Invalid identity type '{value}'. "
            f"Allowed: {', '.join(ALLOWED_IDENTITY_TYPES)}"
        )
    return canonical


def normalize_identifier(identifier: str, identity_type: str) -> str:
    value = (identifier or "").strip()
    if not value:
        raise DeviceIdentityError("Identifier is empty")

    if identity_type == "imei":
        digits = re.sub(r"[\s-]", "", value)
        if not _IMEI.match(digits):
            raise DeviceIdentityError(f"IMEI must be 15 digits: '{value}'")
        return digits

    if identity_type == "manufacturerModelSerial":
        parts = [p.strip() for p in value.split(",")]
        if len(parts) != 3 or not all(parts):
            raise DeviceIdentityError(
                f"Expected 'manufacturer,model,serial' but got '{value}'"
            )
        return ",".join(parts)

    if "," in value:
        raise DeviceIdentityError(f"Serial number may not contain commas: '{value}'")
    return value


@dataclass(frozen=True)
class DeviceIdentity:
    """One corporate device identifier ready for import."""
    identifier: str
    identity_type: str
    description: str = ""

    @classmethod
    def validated(cls, identifier: str, identity_type: str, description: str = "") -> "DeviceIdentity":
        canonical = normalize_identity_type(identity_type)
        return cls(
            identifier=normalize_identifier(identifier, canonical),
            identity_type=canonical,
            description=(description or "").strip(),
        )

    @property
    def key(self) -> tuple[str, str]:
        return self.identity_type, self.identifier.lower()

    def to_graph(self) -> dict:
        return {
            "@odata.type": "#microsoft.graph.importedDeviceIdentity",
            "importedDeviceIdentifier": self.identifier,
            "importedDeviceIdentityType": self.identity_type,
            "description": self.description,
        }


@dataclass
class DeviceImportBatch:
    """Parsed CSV: valid identities plus per-line errors."""
    identities: list[DeviceIdentity] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    duplicates: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def dedupe(identities: Iterable[DeviceIdentity]) -> tuple[list[DeviceIdentity], int]:
    seen: set[tuple[str, str]] = set()
    unique, dropped = [], 0
    for identity in identities:
        if identity.key in seen:
            dropped += 1
            continue
        seen.add(identity.key)
        unique.append(identity)
    return unique, dropped


def load_identities_csv(path: Path, default_type: str = "") -> DeviceImportBatch:
    """
    Read identifier,type,description rows. Header names are case-insensitive;
    default_type fills a missing type column.
    """
    batch = DeviceImportBatch()
    parsed: list[DeviceIdentity] = []

    with open(path, "r", encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        mapping = {
            name: _HEADER_ALIASES.get(name.strip().lower().replace(" ", ""))
            for name in (reader.fieldnames or [])
        }
        if "identifier" not in mapping.values():
            raise DeviceIdentityError(f"{path}: no identifier column in header {reader.fieldnames}")
        if "identity_type" not in mapping.values() and not default_type:
            raise DeviceIdentityError(f"{path}: no type column and no default type given")

        for line_no, row in enumerate(reader, start=2):
            record = {mapping[k]: v for k, v in row.items() if k is not None and mapping.get(k)}
            try:
                parsed.append(DeviceIdentity.validated(
                    record.get("identifier", ""),
                    record.get("identity_type") or default_type,
                    record.get("description", ""),
                ))
            except DeviceIdentityError as e:
                batch.errors.append({"line": line_no, "error": str(e)})

    batch.identities, batch.duplicates = dedupe(parsed)
    if batch.duplicates:
        logger.warning(f"{path}: {batch.duplicates} duplicate identifier row(s) ignored")
    return batch


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DeviceIdentityImporter:
    """Bulk import and listing of Intune imported device identities (beta)."""

    def __init__(self, graph: GraphClient, chunk_size: int = DEVICE_IMPORT_CHUNK_SIZE):
        self.graph = graph
        self.chunk_size = chunk_size

    async def import_identities(
        self,
        identities: list[DeviceIdentity],
        overwrite: bool = False,
    ) -> list[dict]:
        """Import in chunks. Returns one outcome row per identity."""
        outcomes = []
        for chunk in _chunks(list(identities), self.chunk_size):
            body = {
                "importedDeviceIdentities": [d.to_graph() for d in chunk],
                "overwriteImportedDeviceIdentities": overwrite,
            }
            response = await self.graph.post(IMPORT_ACTION, body, beta=True)

            if response.get("_dry_run"):
                outcomes.extend(self._outcome(d, "planned") for d in chunk)
                continue

            results = {
                (r.get("importedDeviceIdentifier") or "").lower(): r
                for r in response.get("value", [])
            }
            for identity in chunk:
                r = results.get(identity.identifier.lower())
                if r is None:
                    outcomes.append(self._outcome(identity, "unknown"))
                elif r.get("status"):
                    outcomes.append(self._outcome(identity, "imported"))
                else:
                    outcomes.append(self._outcome(identity, "failed"))

        failed = sum(1 for o in outcomes if o["status"] == "failed")
        if failed:
            logger.warning(f"{failed} of {len(outcomes)} device identities were not imported")
        return outcomes

    @staticmethod
    def _outcome(identity: DeviceIdentity, status: str) -> dict:
        return {
            "identifier": identity.identifier,
            "type": identity.identity_type,
            "description": identity.description,
            "status": status,
        }

    async def list_identities(self) -> list[dict]:
        items = await self.graph.get_all_pages(IMPORTED_IDENTITIES, beta=True, skip_top=True)
        return [
            {
                "id": i.get("id"),
                "identifier": i.get("importedDeviceIdentifier"),
                "type": i.get("importedDeviceIdentityType"),
                "enrollmentState": i.get("enrollmentState"),
                "platform": i.get("platform"),
                "description": i.get("description"),
                "lastContactedDateTime": i.get("lastContactedDateTime"),
            }
            for i in items
        ]
