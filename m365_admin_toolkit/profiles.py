"""
Tenant profiles — saved credentials-by-reference for multi-tenant admins.

Stored as JSON in ``~/.m365_admin_toolkit/profiles.json`` (or under
``$M365_ADMIN_TOOLKIT_HOME``). A profile never holds a secret: only ids,
the credential mode and the path to the certificate file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from .config import AUTH_MODES, ConfigError, ToolkitConfig

logger = logging.getLogger("m365_admin_toolkit.profiles")

HOME_ENV = "M365_ADMIN_TOOLKIT_HOME"
PROFILES_FILE = "profiles.json"


def profiles_path() -> Path:
    home = os.environ.get(HOME_ENV)
    base = Path(home) if home else Path.home() / ".m365_admin_toolkit"
    return base / PROFILES_FILE


@dataclass
class TenantProfile:
    name: str
    tenant_id: str
    client_id: str
    auth_mode: str = "certificate"
    cert_path: str = "./base64.txt"    # base64-encoded PFX, relative to cwd
    tenant_name: str = ""              # "contoso" → contoso.sharepoint.com
    tenant_display_name: str = ""
    notes: str = ""

    def __post_init__(self):
        if self.auth_mode not in AUTH_MODES:
            raise ConfigError(
                f"Profile '{self.name}': unknown auth mode '{self.auth_mode}'. "
                f"Expected one of: {', '.join(AUTH_MODES)}"
            )

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "TenantProfile":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "name"}
        return cls(name=name, **known)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        return data

    def resolve_cert_path(self) -> str:
        path = Path(self.cert_path).expanduser()
        return str(path if path.is_absolute() else Path.cwd() / path)

    def apply_to(self, config: ToolkitConfig) -> ToolkitConfig:
        """Copy this profile's identity settings into a configuration."""
        config.auth.tenant_id = self.tenant_id
        config.auth.client_id = self.client_id
        config.auth.mode = self.auth_mode
        config.auth.certificate_path = self.resolve_cert_path()
        config.tenant.tenant_name = self.tenant_name
        config.tenant.display_name = self.tenant_display_name
        return config


@dataclass
class ProfileStore:
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    path: Optional[Path] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """Read the store; a missing or unreadable file yields an empty one."""
        path = Path(path) if path else profiles_path()
        store = cls(path=path)
        if not path.exists():
            return store
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            for name, entry in data.get("profiles", {}).items():
                store.profiles[name] = TenantProfile.from_dict(name, entry)
            store.default_profile = data.get("default_profile", "")
        except (json.JSONDecodeError, TypeError, AttributeError, ConfigError) as e:
            logger.warning(f"Ignoring unreadable profile store {path}: {e}")
            return cls(path=path)
        return store

    def save(self) -> Path:
        path = self.path or profiles_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in sorted(self.profiles.items())},
        }
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return path

    def _key(self, name: str) -> Optional[str]:
        wanted = name.lower()
        return next((k for k in self.profiles if k.lower() == wanted), None)

    def add(self, profile: TenantProfile, set_default: bool = False):
        existing = self._key(profile.name)
        if existing and existing != profile.name:
            del self.profiles[existing]
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        key = self._key(name)
        if key is None:
            return False
        del self.profiles[key]
        if self.default_profile == key:
            self.default_profile = next(iter(sorted(self.profiles)), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        key = self._key(name)
        return self.profiles[key] if key else None

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile in self.profiles:
            return self.profiles[self.default_profile]
        return next(iter(self.list_profiles()), None)

    def set_default(self, name: str) -> bool:
        key = self._key(name)
        if key is None:
            return False
        self.default_profile = key
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name.lower())


def resolve_profile(profile_name: Optional[str] = None) -> Optional[TenantProfile]:
    """Named profile, else the default one, else None."""
    store = ProfileStore.load()
    return store.get(profile_name) if profile_name else store.get_default()
