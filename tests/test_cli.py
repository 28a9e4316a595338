import json

import httpx
import pytest

from conftest import graph_error
from m365_admin_toolkit import __main__ as cli
from m365_admin_toolkit import profiles
from m365_admin_toolkit.config import ConfigError, ToolkitConfig
from m365_admin_toolkit.graph.client import ArmClient, GraphClient


@pytest.fixture(autouse=True)
def profile_home(tmp_path, monkeypatch):
    monkeypatch.setenv(profiles.HOME_ENV, str(tmp_path / "home"))


def test_parser_defaults_to_dry_run() -> None:
    args = cli.parse_args(["roles", "list", "--tenant-id", "t", "--client-id", "c"])
    assert args.apply is False
    assert args.verbose == 0
    args = cli.parse_args(["site-access", "set", "https://x", "--clear", "--apply", "-vv"])
    assert args.apply and args.clear and args.verbose == 2
    assert args.strategy == "auto"


def test_context_or_clear_is_required() -> None:
    with pytest.raises(SystemExit) as exc:
        cli.parse_args(["site-access", "set", "https://x"])
    assert exc.value.code == 2


def test_build_config_precedence(tmp_path) -> None:
    store = profiles.ProfileStore.load()
    store.add(profiles.TenantProfile("prod", "t1", "c1", auth_mode="client_secret", tenant_name="contoso"))

    config = cli.build_config(cli.parse_args(["roles", "list"]))
    assert (config.auth.tenant_id, config.auth.mode, config.tenant.tenant_name) == ("t1", "client_secret", "contoso")

    config = cli.build_config(cli.parse_args([
        "roles", "list", "--profile", "prod", "--client-id", "override", "--output-dir", str(tmp_path), "--apply",
    ]))
    assert config.auth.client_id == "override"
    assert config.output.run_dir == tmp_path
    assert config.apply

    with pytest.raises(ConfigError, match="not found"):
        cli.build_config(cli.parse_args(["roles", "list", "--profile", "nope"]))


def test_build_config_needs_credentials() -> None:
    with pytest.raises(ConfigError, match="No tenant credentials"):
        cli.build_config(cli.parse_args(["roles", "list"]))
    config = cli.build_config(cli.parse_args(["roles", "list", "--auth-mode", "managed_identity"]))
    assert config.auth.mode == "managed_identity"


def test_tenant_name_for() -> None:
    config = ToolkitConfig()
    assert cli.tenant_name_for(config, "https://fabrikam.sharepoint.com/sites/hr") == "fabrikam"
    assert cli.tenant_name_for(config, "https://fabrikam-admin.sharepoint.com") == "fabrikam"
    with pytest.raises(ConfigError):
        cli.tenant_name_for(config, "https://example.com")
    config.tenant.tenant_name = "contoso"
    assert cli.tenant_name_for(config, "https://fabrikam.sharepoint.com") == "contoso"


@pytest.mark.asyncio
async def test_profile_and_permissions_commands(capsys) -> None:
    assert await cli.main_async(["profile", "add", "prod", "--tenant-id", "t", "--client-id", "c"]) == 0
    assert await cli.main_async(["profile", "list"]) == 0
    assert "prod" in capsys.readouterr().out
    assert await cli.main_async(["profile", "remove", "missing"]) == 1
    assert await cli.main_async(["permissions", "devices"]) == 0
    assert "DeviceManagementServiceConfig.ReadWrite.All" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_no_action_prints_help(capsys) -> None:
    assert await cli.main_async(["roles"]) == 2


@pytest.mark.asyncio
async def test_invalid_device_csv_fails_before_network(tmp_path, capsys) -> None:
    csv_path = tmp_path / "devices.csv"
    csv_path.write_text("identifier,type\n123,imei\n", encoding="utf-8")
    rc = await cli.main_async([
        "devices", "import", str(csv_path), "--tenant-id", "t", "--client-id", "c", "-o", str(tmp_path / "out"),
    ])
    out = capsys.readouterr().out
    assert rc == 1
    assert "line 2" in out
    assert "❌" in out
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_roles_clone_dry_run_writes_plan_and_audit(tmp_path, tenant, monkeypatch, capsys) -> None:
    source = {
        "id": "r1",
        "displayName": "SharePoint Administrator",
        "rolePermissions": [{"allowedResourceActions": [
            "microsoft.directory/groups.unified/create",
            "microsoft.directory/users/password/update",
        ]}],
    }
    tenant.on("GET", "/roleDefinitions", {"value": [source]})

    async def fake_graph(self):
        return GraphClient("token", self.guardian, transport=tenant.transport)

    monkeypatch.setattr(cli.Session, "graph", fake_graph)
    out_dir = tmp_path / "out"
    rc = await cli.main_async([
        "roles", "clone", "SharePoint Administrator", "--name", "SPO Operator",
        "--tenant-id", "t", "--client-id", "c", "-o", str(out_dir),
    ])

    assert rc == 0
    assert tenant.calls("POST") == []
    plan = json.loads((out_dir / "role_plan_SPO_Operator.json").read_text(encoding="utf-8"))["plan"]
    assert plan["supported_actions"] == ["microsoft.directory/groups.unified/create"]
    audit_file, = out_dir.glob("change_audit_*.json")
    audit = json.loads(audit_file.read_text(encoding="utf-8"))
    assert audit["change_guardian"]["mode"] == "DRY-RUN"
    assert audit["change_guardian"]["planned_changes"] == 1
    assert "--apply" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_api_errors_exit_with_hint(tmp_path, tenant, monkeypatch, capsys) -> None:
    tenant.on("GET", "/roleDefinitions", graph_error(403, "Authorization_RequestDenied", "Insufficient privileges"))

    async def fake_graph(self):
        return GraphClient("token", self.guardian, transport=tenant.transport)

    monkeypatch.setattr(cli.Session, "graph", fake_graph)
    rc = await cli.main_async(["roles", "list", "--tenant-id", "t", "--client-id", "c", "-o", str(tmp_path)])
    out = capsys.readouterr().out
    assert rc == 1
    assert "Insufficient privileges" in out
    assert "admin consent" in out


WEBHOOK = "https://abc.webhook.we.azure-automation.net/webhooks?token=s3cret"
AUTOMATION_FLAGS = ["--subscription-id", "sub", "--resource-group", "rg", "--tenant-id", "t", "--client-id", "c"]


@pytest.mark.asyncio
async def test_automation_deploy_then_trigger_share_config(tmp_path, tenant, monkeypatch) -> None:
    account = "/subscriptions/sub/resourceGroups/rg/providers/Microsoft.Automation/automationAccounts/spo-conditional-access"
    runbook = account + "/runbooks/Set-SiteConditionalAccess"
    tenant.on("PUT", account, {"identity": {"principalId": "mi-1"}})
    tenant.on("PUT", runbook, {"name": "rb"})
    tenant.on("PUT", runbook + "/draft/content", httpx.Response(202))
    tenant.on("POST", runbook + "/publish", httpx.Response(202))
    tenant.on("POST", account + "/webhooks/generateUri", httpx.Response(200, json=WEBHOOK))
    tenant.on("PUT", account + "/webhooks/Set-SiteConditionalAccess-Webhook", {"name": "wh"})

    async def fake_arm(self):
        return ArmClient("token", self.guardian, api_version="2023-11-01", transport=tenant.transport)

    monkeypatch.setattr(cli.Session, "arm", fake_arm)
    out_dir = tmp_path / "out"
    rc = await cli.main_async([
        "automation", "deploy", "--tenant-name", "contoso", "-o", str(out_dir), "--apply", *AUTOMATION_FLAGS,
    ])
    assert rc == 0

    for argv in (
        ["automation", "trigger", "https://contoso.sharepoint.com/sites/hr", "--clear", "-o", str(out_dir)],
        ["site-access", "set", "https://contoso.sharepoint.com/sites/hr", "--clear", "-o", str(out_dir)],
    ):
        args = cli.parse_args([*argv, "--tenant-id", "t", "--client-id", "c"])
        config = cli.build_config(args)
        assert cli.automation_config_path(args, config) == out_dir / "automation-config.json"
        assert cli.build_automation_config(args, config).webhook_url == WEBHOOK


def test_automation_deploy_honours_config_path(tmp_path) -> None:
    args = cli.parse_args([
        "automation", "deploy", "--automation-config", str(tmp_path / "cfg" / "a.json"), *AUTOMATION_FLAGS,
    ])
    assert cli.automation_config_path(args, cli.build_config(args)) == tmp_path / "cfg" / "a.json"


@pytest.mark.asyncio
async def test_certificate_runbook_without_ids_is_a_clean_error(tmp_path, tenant, monkeypatch, capsys) -> None:
    async def fake_arm(self):
        return ArmClient("token", self.guardian, api_version="2023-11-01", transport=tenant.transport)

    monkeypatch.setattr(cli.Session, "arm", fake_arm)
    rc = await cli.main_async([
        "automation", "deploy", "--runbook-auth", "certificate", "--tenant-name", "contoso",
        "-o", str(tmp_path), *AUTOMATION_FLAGS,
    ])
    out = capsys.readouterr().out
    assert rc == 1
    assert "❌" in out
    assert "--runbook-client-id" in out
    assert tenant.calls("PUT") == []
