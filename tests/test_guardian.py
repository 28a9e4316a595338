import pytest

from m365_admin_toolkit.safety.guardian import ChangeGuardian, SafetyViolation

GRAPH = "https://graph.microsoft.com/v1.0"


def test_reads_always_pass() -> None:
    guardian = ChangeGuardian()
    assert guardian.validate_request("GET", f"{GRAPH}/users")
    assert guardian.changes == []
    assert guardian.checks_performed == 1


def test_dry_run_records_planned_change() -> None:
    guardian = ChangeGuardian()
    assert guardian.mode == "DRY-RUN"
    assert not guardian.validate_request("POST", f"{GRAPH}/groups", {"displayName": "x"})
    assert guardian.planned_changes == guardian.changes
    assert guardian.changes[0]["method"] == "POST"
    assert guardian.applied_changes == []


def test_apply_allows_writes() -> None:
    guardian = ChangeGuardian(apply=True)
    assert guardian.mode == "APPLY"
    assert guardian.validate_request("patch", f"{GRAPH}/sites/abc", {})
    assert guardian.validate_request("MERGE", "https://contoso-admin.sharepoint.com/_api/SPO.Tenant/sites('x')")
    assert [c["status"] for c in guardian.changes] == ["applied", "applied"]


@pytest.mark.parametrize(
    "url",
    [
        f"{GRAPH}/$batch",
        f"{GRAPH}/directoryObjects/microsoft.graph.getByIds",
        "https://contoso-admin.sharepoint.com/_api/SPO.Tenant/GetSitePropertiesByUrl",
    ],
)
def test_read_only_posts_are_not_changes(url: str) -> None:
    guardian = ChangeGuardian()
    assert guardian.validate_request("POST", url)
    assert guardian.changes == []


@pytest.mark.parametrize(
    "url",
    [
        f"{GRAPH}/deviceManagement/managedDevices/1/wipe",
        f"{GRAPH}/deviceManagement/managedDevices/1/retire",
        f"{GRAPH}/users/1/revokeSignInSessions",
        f"{GRAPH}/applications/1/addPassword",
    ],
)
def test_destructive_actions_blocked_even_when_applying(url: str) -> None:
    guardian = ChangeGuardian(apply=True)
    with pytest.raises(SafetyViolation):
        guardian.validate_request("POST", url)
    assert guardian.violations[0]["url"] == url
    assert guardian.changes == []


def test_delete_needs_opt_in() -> None:
    with pytest.raises(SafetyViolation):
        ChangeGuardian(apply=True).validate_request("DELETE", f"{GRAPH}/groups/1")
    guardian = ChangeGuardian(apply=True, allow_delete=True)
    assert guardian.validate_request("DELETE", f"{GRAPH}/groups/1")


def test_unknown_method_blocked() -> None:
    with pytest.raises(SafetyViolation):
        ChangeGuardian(apply=True).validate_request("TRACE", f"{GRAPH}/users")


def test_audit_record() -> None:
    guardian = ChangeGuardian()
    guardian.validate_request("GET", f"{GRAPH}/users")
    guardian.validate_request("PUT", f"{GRAPH}/x", {"a": 1})
    record = guardian.get_audit_record()["change_guardian"]
    assert record["mode"] == "DRY-RUN"
    assert record["checks_performed"] == 2
    assert record["planned_changes"] == 1
    assert record["violations_detected"] == 0
    assert record["changes"][0]["body"] == {"a": 1}


def test_banner(capsys) -> None:
    ChangeGuardian().print_banner()
    assert "DRY RUN" in capsys.readouterr().out
    ChangeGuardian(apply=True).print_banner()
    assert "APPLY MODE" in capsys.readouterr().out
