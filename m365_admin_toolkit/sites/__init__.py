from .exporter import ExportResult, SiteExporter, MANIFEST_FILE, SITE_INFO_FILE
from .deployer import DeploymentError, DeploymentResult, ListDeployment, SiteDeployer, read_manifest
from .tracking import provision_tracking_list, TRACKING_COLUMNS, DEFAULT_TRACKING_TITLE

__all__ = [
    "ExportResult",
    "SiteExporter",
    "MANIFEST_FILE",
    "SITE_INFO_FILE",
    "DeploymentError",
    "DeploymentResult",
    "ListDeployment",
    "SiteDeployer",
    "read_manifest",
    "provision_tracking_list",
    "TRACKING_COLUMNS",
    "DEFAULT_TRACKING_TITLE",
]
