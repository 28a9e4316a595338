"""Reporting package — JSON/CSV artifact output."""

from .json_export import export_json, load_json, artifact_metadata, ArtifactError
from .csv_export import export_csv, collect_fieldnames

__all__ = [
    "export_json",
    "load_json",
    "artifact_metadata",
    "ArtifactError",
    "export_csv",
    "collect_fieldnames",
]
