from .identities import (
    ALLOWED_IDENTITY_TYPES,
    DeviceIdentity,
    DeviceIdentityError,
    DeviceIdentityImporter,
    DeviceImportBatch,
    load_identities_csv,
    normalize_identity_type,
)

__all__ = [
    "ALLOWED_IDENTITY_TYPES",
    "DeviceIdentity",
    "DeviceIdentityError",
    "DeviceIdentityImporter",
    "DeviceImportBatch",
    "load_identities_csv",
    "normalize_identity_type",
]
