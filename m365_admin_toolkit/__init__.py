"""
M365 Admin Toolkit
==================
Administration tooling for Microsoft 365 tenants: Entra ID custom roles,
SharePoint site export/deploy, Intune corporate device identifiers and
SharePoint site conditional access (directly or through Azure Automation).

Every command runs as a dry run unless --apply is passed.
"""

__version__ = "1.0.0"
__author__ = "M365 Admin Toolkit"
