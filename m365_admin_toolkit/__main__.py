"""
M365 Admin Toolkit — Command-line entry point

Usage:
    python -m m365_admin_toolkit roles clone "SharePoint Administrator" --name "SPO Operator"
    python -m m365_admin_toolkit sites export https://contoso.sharepoint.com/sites/hr -o ./hr
    python -m m365_admin_toolkit sites deploy ./hr/DeploymentManifest.json https://contoso.sharepoint.com/sites/hr2
    python -m m365_admin_toolkit devices import ./devices.csv
    python -m m365_admin_toolkit site-access set https://contoso.sharepoint.com/sites/hr --context "Sensitive"
    python -m m365_admin_toolkit automation deploy --runbook-auth managed-identity

Every command is a dry run unless --apply is given.

Profile management:
    python -m m365_admin_toolkit profile add <name> --tenant-id ... --client-id ...
    python -m m365_admin_toolkit profile list
    python -m m365_admin_toolkit profile remove <name>
    python -m m365_admin_toolkit profile set-default <name>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

# ---------------------------------------------------------------------------
# Toolkit imports
# ---------------------------------------------------------------------------
from . import __version__
from .config import (
    AUTH_MODES,
    AUTOMATION_API_VERSION,
    REQUIRED_PERMISSIONS,
    AutomationConfig,
    ConfigError,
    ToolkitConfig,
    ToolkitError,
)
from .safety.guardian import ChangeGuardian
from .auth.authenticator import Authenticator
from .graph.client import ArmClient, GraphAPIError, GraphClient, SharePointClient
from .profiles import ProfileStore, TenantProfile, resolve_profile
from .reporting import export_csv, export_json, artifact_metadata
from .roles import DEFAULT_DENYLIST, RoleManager, load_denylist_file, role_actions
from .sites import SiteDeployer, SiteExporter, provision_tracking_list, DEFAULT_TRACKING_TITLE
from .devices import DeviceIdentityError, DeviceIdentityImporter, load_identities_csv
from .conditional_access import (
    AutomationStrategy,
    ConditionalAccessApplier,
    GraphStrategy,
    SharePointRestStrategy,
    SiteAccessRequest,
    STRATEGY_CHOICES,
    list_authentication_contexts,
    read_site_access,
    resolve_authentication_context,
    strategy_order,
)
from .automation import (
    AUTOMATION_CONFIG_FILE,
    AutomationDeployer,
    JobPoller,
    RUNBOOK_AUTH_MODES,
    WebhookTrigger,
    grant_sharepoint_access,
    render_runbook,
)

logger = logging.getLogger("m365_admin_toolkit")


# ---------------------------------------------------------------------------
# Offline sub-commands: profile, permissions
# ---------------------------------------------------------------------------

def _print_profiles(store: ProfileStore) -> int:
    rows = store.list_profiles()
    if not rows:
        print("No tenant profiles saved yet. Create one with:\n")
        print("  m365-admin-toolkit profile add <name> --tenant-id <GUID> --client-id <GUID> --tenant-name contoso")
        return 0
    header = ("Profile", "Tenant ID", "Client ID", "Credential", "")
    print("\n  {:<24s} {:<38s} {:<38s} {:<17s} {}".format(*header))
    for p in rows:
        label = f"{p.name} ({p.tenant_display_name})" if p.tenant_display_name else p.name
        marker = "default" if p.name == store.default_profile else ""
        print(f"  {label:<24s} {p.tenant_id:<38s} {p.client_id:<38s} {p.auth_mode:<17s} {marker}")
    print()
    return 0


def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    store = ProfileStore.load()
    action = args.profile_action

    if action == "add":
        replacing = store.get(args.profile_name) is not None
        store.add(
            TenantProfile(
                name=args.profile_name,
                tenant_id=args.tenant_id,
                client_id=args.client_id,
                auth_mode=args.auth_mode,
                cert_path=args.cert_path or "./base64.txt",
                tenant_name=args.tenant_name or "",
                tenant_display_name=args.display_name or "",
                notes=args.notes or "",
            ),
            set_default=args.set_default,
        )
        verb = "updated" if replacing else "saved"
        suffix = " (default)" if store.default_profile == args.profile_name else ""
        print(f"  ✅ Profile '{args.profile_name}' {verb}{suffix}.")
        return 0

    if action in ("remove", "set-default"):
        changed = store.remove(args.profile_name) if action == "remove" else store.set_default(args.profile_name)
        if not changed:
            print(f"  ❌ No profile named '{args.profile_name}'.")
            return 1
        done = "removed" if action == "remove" else "is now the default"
        print(f"  ✅ Profile '{args.profile_name}' {done}.")
        return 0

    return _print_profiles(store)


def _cmd_permissions(args: argparse.Namespace) -> int:
    families = [args.family] if args.family else list(REQUIRED_PERMISSIONS)
    for family in families:
        print(f"\n  {family}")
        for perm, reason in REQUIRED_PERMISSIONS[family].items():
            print(f"    {perm:<45s} {reason}")
    print()
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", "-p", default=None,
                        help="Tenant profile name to use (run 'profile list' to see available)")
    common.add_argument("--config", "-c", type=Path,
                        help="Path to JSON configuration file (AppConfig.json)")
    common.add_argument("--auth-mode", choices=AUTH_MODES, default=None,
                        help="Credential mode (overrides profile/config)")
    common.add_argument("--tenant-id", default=None, help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", default=None, help="Client ID (overrides profile)")
    common.add_argument("--cert-path", type=Path,
                        help="Path to base64-encoded PFX certificate (overrides profile)")
    common.add_argument("--tenant-name", default=None,
                        help="SharePoint tenant name, e.g. 'contoso' (overrides profile)")
    common.add_argument("--output-dir", "-o", type=Path, default=None,
                        help="Directory for artifacts (default: ./m365_admin_output)")
    common.add_argument("--apply", action="store_true",
                        help="Write changes to the tenant (default is a dry run)")
    common.add_argument("--verbose", "-v", action="count", default=0,
                        help="-v for INFO logging, -vv for DEBUG")
    return common


def _context_args(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--context", help="Authentication context display name or id (c1…c99)")
    group.add_argument("--clear", action="store_true",
                       help="Remove the authentication context (AllowFullAccess)")


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="m365_admin_toolkit",
        description="Microsoft 365 / Entra ID / SharePoint / Intune admin toolkit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--auth-mode", choices=AUTH_MODES, default="certificate")
    add_p.add_argument("--cert-path", default="./base64.txt",
                       help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--tenant-name", help="SharePoint tenant name (contoso)")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    # --- permissions ---
    perm_p = subparsers.add_parser("permissions", help="List the API permissions each command needs")
    perm_p.add_argument("family", nargs="?", choices=list(REQUIRED_PERMISSIONS))

    # --- roles ---
    roles_p = subparsers.add_parser("roles", help="Entra directory roles")
    roles_sub = roles_p.add_subparsers(dest="action")
    rl = roles_sub.add_parser("list", parents=[common], help="List role definitions")
    kind = rl.add_mutually_exclusive_group()
    kind.add_argument("--builtin", action="store_true", help="Built-in roles only")
    kind.add_argument("--custom", action="store_true", help="Custom roles only")
    rs = roles_sub.add_parser("show", parents=[common], help="Show a role and its actions")
    rs.add_argument("role", help="Role display name or id")
    ra = roles_sub.add_parser("assignments", parents=[common], help="List assignments of a role")
    ra.add_argument("role", help="Role display name or id")
    rc = roles_sub.add_parser("clone", parents=[common], help="Create a custom role from a built-in one")
    rc.add_argument("source", help="Source role display name or id")
    rc.add_argument("--name", required=True, help="Display name for the new custom role")
    rc.add_argument("--description", default="")
    rc.add_argument("--exclude", nargs="+", default=[], metavar="ACTION",
                    help="Extra actions to remove (trailing * matches a prefix)")
    rc.add_argument("--exclude-file", type=Path, help="File with one action per line to remove")
    rc.add_argument("--no-default-denylist", action="store_true",
                    help="Do not remove the default privileged actions")
    rc.add_argument("--strict", action="store_true",
                    help="Refuse when any action falls outside microsoft.directory")
    rc.add_argument("--skip-existing", action="store_true",
                    help="Succeed without changes when the role already exists")

    # --- sites ---
    sites_p = subparsers.add_parser("sites", help="SharePoint site export/deploy")
    sites_sub = sites_p.add_subparsers(dest="action")
    se = sites_sub.add_parser("export", parents=[common], help="Export site lists and rows")
    se.add_argument("site_url")
    se.add_argument("--lists", nargs="+", help="Only these list display names")
    se.add_argument("--include-hidden", action="store_true", help="Include hidden and system lists")
    sd = sites_sub.add_parser("deploy", parents=[common], help="Replay an export onto a site")
    sd.add_argument("manifest", type=Path, help="DeploymentManifest.json from `sites export`")
    sd.add_argument("site_url", help="Target site URL")
    sd.add_argument("--skip-existing-lists", action="store_true",
                    help="Leave lists that already exist (and their rows) untouched")
    sd.add_argument("--stop-on-error", action="store_true", help="Abort on the first failure")
    st = sites_sub.add_parser("tracking-list", parents=[common], help="Provision the request tracking list")
    st.add_argument("site_url")
    st.add_argument("--title", default=DEFAULT_TRACKING_TITLE)

    # --- devices ---
    dev_p = subparsers.add_parser("devices", help="Intune corporate device identifiers")
    dev_sub = dev_p.add_subparsers(dest="action")
    di = dev_sub.add_parser("import", parents=[common], help="Bulk import identifiers from CSV")
    di.add_argument("csv", type=Path, help="CSV with identifier,type,description columns")
    di.add_argument("--type", dest="default_type", default="",
                    help="Identity type for rows without one (imei, serialNumber, manufacturerModelSerial)")
    di.add_argument("--overwrite", action="store_true", help="Overwrite existing identifiers")
    dev_sub.add_parser("list", parents=[common], help="List imported identifiers")

    # --- site-access ---
    sa_p = subparsers.add_parser("site-access", help="SharePoint site conditional access")
    sa_sub = sa_p.add_subparsers(dest="action")
    sa_sub.add_parser("contexts", parents=[common], help="List authentication contexts")
    sas = sa_sub.add_parser("show", parents=[common], help="Show a site's conditional access state")
    sas.add_argument("site_url")
    sa_set = sa_sub.add_parser("set", parents=[common], help="Set a site's authentication context")
    sa_set.add_argument("site_url")
    _context_args(sa_set)
    sa_set.add_argument("--strategy", choices=STRATEGY_CHOICES, default="auto")
    sa_set.add_argument("--automation-config", type=Path, default=None,
                        help="automation-config.json enabling the automation strategy "
                             "(default: the one automation deploy wrote to the output dir)")

    # --- automation ---
    au_p = subparsers.add_parser("automation", help="Azure Automation runbook + webhook")
    au_sub = au_p.add_subparsers(dest="action")
    automation_common = argparse.ArgumentParser(add_help=False)
    automation_common.add_argument("--automation-config", type=Path, default=None,
                                   help="automation-config.json (default: <output-dir>/automation-config.json)")
    automation_common.add_argument("--subscription-id")
    automation_common.add_argument("--resource-group")
    automation_common.add_argument("--account-name")
    ad = au_sub.add_parser("deploy", parents=[common, automation_common],
                           help="Deploy automation account, runbook and webhook")
    ad.add_argument("--runbook-auth", choices=RUNBOOK_AUTH_MODES, default="managed-identity")
    ad.add_argument("--runbook-client-id", default="", help="App ID for certificate runbook auth")
    ad.add_argument("--tenant-domain", default="", help="contoso.onmicrosoft.com, for certificate runbook auth")
    ad.add_argument("--location")
    ad.add_argument("--grant-access", action="store_true",
                    help="Grant the account's managed identity Sites.FullControl.All")
    at = au_sub.add_parser("trigger", parents=[common, automation_common],
                           help="Call the webhook for one site")
    at.add_argument("site_url")
    _context_args(at)
    at.add_argument("--wait", action="store_true", help="Poll the job until it finishes")
    aj = au_sub.add_parser("job", parents=[common, automation_common], help="Show a job's status")
    aj.add_argument("job_id")

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace) -> ToolkitConfig:
    """Build configuration from profile, CLI args, or config file."""
    config = ToolkitConfig.from_file(args.config) if args.config else ToolkitConfig()

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigError(
                f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    if profile:
        profile.apply_to(config)

    # CLI flags override profile and file values
    if args.tenant_id:
        config.auth.tenant_id = args.tenant_id
    if args.client_id:
        config.auth.client_id = args.client_id
    if args.auth_mode:
        config.auth.mode = args.auth_mode
    if args.cert_path:
        config.auth.certificate_path = str(args.cert_path)
    if args.tenant_name:
        config.tenant.tenant_name = args.tenant_name
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    config.apply = args.apply
    config.verbose = max(config.verbose, args.verbose)

    if config.auth.mode != "managed_identity" and not (config.auth.tenant_id and config.auth.client_id):
        raise ConfigError(
            "No tenant credentials found. Use one of:\n"
            "   • --profile <name>             (from saved profiles)\n"
            "   • --tenant-id X --client-id Y  (ad-hoc)\n"
            "   • --config AppConfig.json      (JSON config file)"
        )
    return config


def automation_config_path(args: argparse.Namespace, config: ToolkitConfig) -> Path:
    """Where automation deploy saves its settings and trigger/site-access read them."""
    return getattr(args, "automation_config", None) or config.output.run_dir / AUTOMATION_CONFIG_FILE


def build_automation_config(args: argparse.Namespace, config: ToolkitConfig) -> AutomationConfig:
    path = automation_config_path(args, config)
    automation = AutomationConfig.from_file(path) if path.exists() else config.automation
    for attr in ("subscription_id", "resource_group", "account_name", "location"):
        value = getattr(args, attr, None)
        if value:
            setattr(automation, attr, value)
    return automation


def tenant_name_for(config: ToolkitConfig, site_url: str = "") -> str:
    """Configured tenant name, else derived from a *.sharepoint.com URL."""
    if config.tenant.tenant_name:
        return config.tenant.tenant_name
    host = urlparse(site_url).hostname or ""
    if host.endswith(".sharepoint.com"):
        return host.split(".")[0].removesuffix("-admin")
    raise ConfigError("SharePoint tenant name unknown. Pass --tenant-name (e.g. contoso).")


def configure_logging(verbose: int):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Session: guardian + authenticator + client factories
# ---------------------------------------------------------------------------

class Session:
    """Per-invocation state shared by the command handlers."""

    def __init__(self, config: ToolkitConfig):
        self.config = config
        self.guardian = ChangeGuardian(apply=config.apply)
        self.authenticator = Authenticator(config.auth)
        self.output_dir = config.output.run_dir

    async def graph(self) -> GraphClient:
        token = await self.authenticator.acquire_token("graph")
        return GraphClient(access_token=token, guardian=self.guardian)

    async def sharepoint_admin(self, site_url: str = "") -> SharePointClient:
        self.config.tenant.tenant_name = tenant_name_for(self.config, site_url)
        admin_url = self.config.tenant.sharepoint_admin_url
        token = await self.authenticator.acquire_token(admin_url)
        return SharePointClient(admin_url, access_token=token, guardian=self.guardian)

    async def arm(self) -> ArmClient:
        token = await self.authenticator.acquire_token("arm")
        return ArmClient(token, self.guardian, api_version=AUTOMATION_API_VERSION)

    def write_audit(self, command: str) -> Optional[Path]:
        if not self.guardian.changes and not self.guardian.violations:
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        record = {"metadata": artifact_metadata(command), **self.guardian.get_audit_record()}
        path = export_json(record, self.output_dir, f"change_audit_{stamp}.json")
        print(f"  📄 Audit:      {path}")
        return path

    def print_change_summary(self):
        planned = len(self.guardian.planned_changes)
        applied = len(self.guardian.applied_changes)
        if planned:
            print(f"\n  ⚠  {planned} change(s) planned, none written. Re-run with --apply to write.")
        if applied:
            print(f"\n  ✅ {applied} change(s) written.")


# ---------------------------------------------------------------------------
# roles
# ---------------------------------------------------------------------------

async def cmd_roles(args: argparse.Namespace, session: Session) -> int:
    async with (await session.graph()) as graph:
        manager = RoleManager(graph)

        if args.action == "list":
            builtin = True if args.builtin else (False if args.custom else None)
            roles = await manager.list_definitions(builtin_only=builtin)
            for r in sorted(roles, key=lambda r: r.get("displayName") or ""):
                marker = "built-in" if r.get("isBuiltIn") else "custom"
                print(f"  {r.get('displayName', ''):<50s} {marker:<9s} {r.get('id')}")
            print(f"\n  {len(roles)} role(s)")
            return 0

        if args.action == "show":
            role = await manager.get_definition(args.role)
            actions = role_actions(role)
            print(f"\n  {role.get('displayName')} ({role.get('id')})")
            print(f"  {role.get('description') or ''}")
            print(f"  Built-in: {role.get('isBuiltIn')}   Actions: {len(actions)}\n")
            for action in actions:
                print(f"    {action}")
            return 0

        if args.action == "assignments":
            rows = await manager.list_assignments(args.role)
            for a in rows:
                who = a["principalUpn"] or a["principalDisplayName"] or a["principalId"]
                print(f"  {who:<50s} {a['principalType']:<18s} scope {a['directoryScopeId']}")
            print(f"\n  {len(rows)} assignment(s)")
            return 0

        # clone
        denylist = [] if args.no_default_denylist else list(DEFAULT_DENYLIST)
        denylist.extend(args.exclude)
        if args.exclude_file:
            denylist.extend(load_denylist_file(args.exclude_file))

        plan = await manager.plan_custom_role(
            args.source, args.name, denylist=denylist,
            description=args.description, strict=args.strict,
        )
        print(f"\n  Source role:        {plan.source_name}")
        print(f"  Actions removed:    {plan.filtered.removed_count}")
        print(f"  Supported kept:     {len(plan.supported)}")
        print(f"  Unsupported (drop): {len(plan.unsupported)}")
        for action in plan.unsupported[:10]:
            print(f"      ⚠  {action}")
        if len(plan.unsupported) > 10:
            print(f"      … {len(plan.unsupported) - 10} more")

        path = export_json(
            {"metadata": artifact_metadata("roles clone"), "plan": plan.to_dict()},
            session.output_dir,
            f"role_plan_{plan.display_name.replace(' ', '_')}.json",
        )
        print(f"  📄 Plan:       {path}")

        created = await manager.create_custom_role(plan, skip_existing=args.skip_existing)
        if not created.get("_dry_run"):
            print(f"  ✅ Custom role '{created.get('displayName')}' ({created.get('id')})")
    return 0


# ---------------------------------------------------------------------------
# sites
# ---------------------------------------------------------------------------

async def cmd_sites(args: argparse.Namespace, session: Session) -> int:
    async with (await session.graph()) as graph:
        if args.action == "export":
            exporter = SiteExporter(graph, session.output_dir)
            result = await exporter.export(args.site_url, args.lists, args.include_hidden)
            for entry in result.lists:
                print(f"  ✅ {entry['displayName']:<40s} {entry['itemCount']:>6d} rows")
            print(f"\n  📄 Manifest:   {result.manifest_path}")
            print(f"  {len(result.lists)} list(s), {result.item_count} row(s) exported")
            return 0

        if args.action == "deploy":
            deployer = SiteDeployer(
                graph,
                skip_existing_lists=args.skip_existing_lists,
                stop_on_error=args.stop_on_error,
            )
            result = await deployer.deploy(args.manifest, args.site_url)
            for d in result.lists:
                glyph = "❌" if d.action == "failed" or d.items_failed else "✅"
                print(f"  {glyph} {d.name:<40s} {d.action:<8s} "
                      f"created {d.items_created}, planned {d.items_planned}, "
                      f"skipped {d.items_skipped}, failed {d.items_failed}")
                for err in d.errors[:5]:
                    print(f"      ⚠  {err}")
            path = export_json(result.to_dict(), session.output_dir, "DeploymentResult.json")
            print(f"\n  📄 Result:     {path}")
            return 0 if result.succeeded else 1

        # tracking-list
        outcome = await provision_tracking_list(graph, args.site_url, args.title)
        print(f"  ✅ Tracking list '{args.title}': {outcome['status']}")
        return 0


# ---------------------------------------------------------------------------
# devices
# ---------------------------------------------------------------------------

async def cmd_devices(args: argparse.Namespace, session: Session) -> int:
    if args.action == "import":
        # Validate everything before touching the network
        batch = load_identities_csv(args.csv, default_type=args.default_type)
        for err in batch.errors:
            print(f"  ❌ line {err['line']}: {err['error']}")
        if not batch.ok:
            raise DeviceIdentityError(f"{len(batch.errors)} invalid row(s) in {args.csv}; nothing imported")
        print(f"  {len(batch.identities)} identifier(s) validated"
              + (f", {batch.duplicates} duplicate(s) ignored" if batch.duplicates else ""))

    async with (await session.graph()) as graph:
        importer = DeviceIdentityImporter(graph)

        if args.action == "list":
            rows = await importer.list_identities()
            for r in rows:
                print(f"  {r['identifier']:<40s} {r['type']:<25s} {r['enrollmentState'] or ''}")
            print(f"\n  {len(rows)} identifier(s)")
            return 0

        outcomes = await importer.import_identities(batch.identities, overwrite=args.overwrite)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        path = export_csv(outcomes, session.output_dir, f"device_import_{stamp}.csv",
                          fieldnames=["identifier", "type", "description", "status"])
        counts: dict[str, int] = {}
        for o in outcomes:
            counts[o["status"]] = counts.get(o["status"], 0) + 1
        print(f"  {counts}")
        print(f"  📊 CSV:        {path}")
        return 1 if counts.get("failed") else 0


# ---------------------------------------------------------------------------
# site-access
# ---------------------------------------------------------------------------

async def _context_name(graph: GraphClient, args: argparse.Namespace) -> str:
    if args.clear:
        return ""
    context = await resolve_authentication_context(graph, args.context)
    return context["displayName"]


async def cmd_site_access(args: argparse.Namespace, session: Session) -> int:
    async with (await session.graph()) as graph:
        if args.action == "contexts":
            for c in await list_authentication_contexts(graph):
                state = "published" if c["isAvailable"] else "not published"
                print(f"  {c['id']:<5s} {c['displayName'] or '':<40s} {state}")
            return 0

        async with (await session.sharepoint_admin(args.site_url)) as admin:
            if args.action == "show":
                state = await read_site_access(admin, args.site_url)
                print(f"  Site:                      {state.site_url}")
                print(f"  ConditionalAccessPolicy:   {state.policy}")
                print(f"  AuthenticationContextName: {state.context_name or '(none)'}")
                return 0

            request = SiteAccessRequest(args.site_url, await _context_name(graph, args))
            automation = build_automation_config(args, session.config)
            names = strategy_order(args.strategy, automation_available=bool(automation.webhook_url))

            use_arm = "automation" in names and automation.is_configured
            async with (await session.arm()) if use_arm else _NoClient() as arm:
                strategies = []
                for name in names:
                    if name == "sharepoint-rest":
                        strategies.append(SharePointRestStrategy(admin))
                    elif name == "graph":
                        strategies.append(GraphStrategy(graph, verifier=admin))
                    else:
                        strategies.append(AutomationStrategy(
                            WebhookTrigger(session.guardian),
                            automation.webhook_url,
                            poller=JobPoller(arm, automation) if automation.is_configured else None,
                        ))

                report = await ConditionalAccessApplier(strategies, reader=admin).apply(request)

            for attempt in report.attempts:
                print(f"  → {attempt.strategy:<16s} {attempt.outcome:<12s} {attempt.detail}")
            print(f"\n  Outcome: {report.outcome}")
            export_json(report.to_dict(), session.output_dir, "site_access_result.json")
            return 0 if report.outcome in ("applied", "already_set", "planned") else 1


class _NoClient:
    async def __aenter__(self):
        return None

    async def __aexit__(self, *args):
        return None


# ---------------------------------------------------------------------------
# automation
# ---------------------------------------------------------------------------

async def cmd_automation(args: argparse.Namespace, session: Session) -> int:
    automation = build_automation_config(args, session.config)

    if args.action == "trigger":
        async with (await session.graph()) as graph:
            request = SiteAccessRequest(args.site_url, await _context_name(graph, args))
        job_ids = await WebhookTrigger(session.guardian).trigger(automation.webhook_url, request.payload())
        if not job_ids:
            return 0
        print(f"  ✅ Job queued: {job_ids[0]}")
        if not args.wait:
            return 0
        async with (await session.arm()) as arm:
            job = await JobPoller(arm, automation).wait(
                job_ids[0], on_status=lambda s: print(f"     … {s}")
            )
        print(f"  Status: {job['status']}")
        if job.get("output"):
            print(job["output"])
        return 0 if job["status"] == "Completed" else 1

    async with (await session.arm()) as arm:
        if args.action == "job":
            job = await JobPoller(arm, automation).get_job(args.job_id)
            for k, v in job.items():
                print(f"  {k:<15s} {v}")
            return 0

        # deploy
        admin_url = f"https://{tenant_name_for(session.config)}-admin.sharepoint.com"
        content = render_runbook(
            admin_url,
            auth=args.runbook_auth,
            client_id=args.runbook_client_id,
            tenant_domain=args.tenant_domain,
        )
        result = await AutomationDeployer(arm, automation).deploy(
            content,
            output_dir=session.output_dir,
            config_path=automation_config_path(args, session.config),
        )
        print(f"  Account:  {result.account}")
        print(f"  Runbook:  {result.runbook}")
        print(f"  Webhook:  {result.webhook}")
        for f in result.files:
            print(f"  📄 {f}")

    if args.grant_access and result.principal_id:
        async with (await session.graph()) as graph:
            status = await grant_sharepoint_access(graph, result.principal_id)
        print(f"  Sites.FullControl.All for managed identity: {status}")
    return 0


COMMANDS = {
    "roles": cmd_roles,
    "sites": cmd_sites,
    "devices": cmd_devices,
    "site-access": cmd_site_access,
    "automation": cmd_automation,
}


async def main_async(argv: Optional[list[str]] = None) -> int:
    """Async entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "profile":
        return _cmd_profile(args)
    if args.command == "permissions":
        return _cmd_permissions(args)
    if args.command not in COMMANDS or not getattr(args, "action", None):
        parser.print_help()
        return 2

    configure_logging(args.verbose)
    command = f"{args.command} {args.action}"

    try:
        config = build_config(args)
        session = Session(config)
        session.guardian.print_banner()
        print(f"\n📋 Command: {command}")
        print(f"🏢 Tenant:  {config.tenant.display_name or config.auth.tenant_id or 'managed identity'}")
        print(f"🔐 Auth:    {config.auth.mode}\n")

        rc = await COMMANDS[args.command](args, session)
        session.print_change_summary()
        session.write_audit(command)
        return rc
    except GraphAPIError as e:
        print(f"\n❌ {e}")
        if e.hint:
            print(f"   {e.hint}")
        return 1
    except ToolkitError as e:
        print(f"\n❌ {e}")
        return 1


def main():
    """Synchronous entry point for `python -m m365_admin_toolkit`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
