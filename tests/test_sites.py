import json

import httpx
import pytest

from conftest import graph_error
from m365_admin_toolkit.sites import (
    DeploymentError,
    SiteDeployer,
    SiteExporter,
    provision_tracking_list,
    read_manifest,
)
from m365_admin_toolkit.sites.schema import (
    clean_column,
    creatable_columns,
    filter_item_fields,
    is_exportable_list,
    safe_filename,
    writable_field_names,
)

SITE_URL = "https://contoso.sharepoint.com/sites/hr"
SITE = {"id": "contoso.sharepoint.com,aaa,bbb", "displayName": "HR", "webUrl": SITE_URL}
SITE_PATH = "/v1.0/sites/contoso.sharepoint.com:/sites/hr"
LISTS_PATH = f"/v1.0/sites/{SITE['id']}/lists"

TITLE = {"name": "Title", "displayName": "Title", "text": {}}
DEPARTMENT = {"name": "Department", "displayName": "Department", "choice": {"choices": ["HR", "IT"]}}
MANAGER = {"name": "Manager", "displayName": "Manager", "personOrGroup": {}}
MODIFIED = {"name": "Modified", "readOnly": True, "dateTime": {}}
LOOKUP = {"name": "Office", "lookup": {"listId": "x"}}

EMPLOYEES = {
    "id": "list-1",
    "displayName": "Employees",
    "list": {"template": "genericList", "hidden": False},
    "columns": [TITLE, DEPARTMENT, MANAGER, MODIFIED, LOOKUP],
}
HIDDEN = {"id": "list-2", "displayName": "Workflow Tasks", "list": {"hidden": True}, "columns": []}
SYSTEM = {"id": "list-3", "displayName": "User Information List", "system": {}, "list": {}, "columns": []}


def test_schema_helpers() -> None:
    assert is_exportable_list(EMPLOYEES)
    assert not is_exportable_list(HIDDEN)
    assert not is_exportable_list(SYSTEM)
    assert is_exportable_list(SYSTEM, include_hidden=True)

    assert clean_column(LOOKUP) is None
    assert clean_column(DEPARTMENT) == DEPARTMENT
    assert [c["name"] for c in creatable_columns(EMPLOYEES["columns"])] == ["Department", "Manager"]

    writable = writable_field_names(EMPLOYEES["columns"])
    assert writable == {"Title", "Department", "Manager", "ManagerLookupId", "Office", "OfficeLookupId"}
    assert filter_item_fields(
        {"Title": "Ann", "Department": "HR", "Modified": "2024", "id": "7", "ManagerLookupId": None},
        writable,
    ) == {"Title": "Ann", "Department": "HR"}

    assert safe_filename("Q1 / Budget: draft") == "Q1___Budget__draft"


@pytest.mark.asyncio
async def test_export_writes_manifest_and_list_files(tenant, guardian, make_graph, tmp_path) -> None:
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": [EMPLOYEES, HIDDEN, SYSTEM]})
    tenant.on("GET", f"{LISTS_PATH}/list-1/items", {"value": [
        {"id": "1", "fields": {"@odata.etag": "e", "Title": "Ann", "Department": "HR", "Tags": ["a", "b"]}},
        {"id": "2", "fields": {"Title": "Bob", "Department": "IT"}},
    ]})

    async with make_graph(guardian) as graph:
        result = await SiteExporter(graph, tmp_path).export(SITE_URL)

    assert result.item_count == 2
    assert [e["displayName"] for e in result.lists] == ["Employees"]

    assert json.loads((tmp_path / "SiteInfo.json").read_text())["id"] == SITE["id"]
    manifest = json.loads((tmp_path / "DeploymentManifest.json").read_text())
    assert manifest["formatVersion"] == 1
    assert manifest["lists"][0]["dataFile"] == "Lists/Employees.json"
    assert manifest["lists"][0]["columns"] == EMPLOYEES["columns"]

    rows = json.loads((tmp_path / "Lists" / "Employees.json").read_text())
    assert rows[0] == {"Title": "Ann", "Department": "HR", "Tags": ["a", "b"]}
    csv_text = (tmp_path / "Lists" / "Employees.csv").read_text(encoding="utf-8-sig")
    assert csv_text.splitlines()[0] == "Title,Department,Tags"
    assert '"[""a"", ""b""]"' in csv_text

    lists_request = tenant.calls("GET", LISTS_PATH)[0]
    assert lists_request.url.params["$expand"] == "columns"
    # the export is read-only
    assert guardian.changes == []


@pytest.mark.asyncio
async def test_export_named_lists_include_hidden(tenant, guardian, make_graph, tmp_path) -> None:
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": [EMPLOYEES, HIDDEN]})
    tenant.on("GET", f"{LISTS_PATH}/list-2/items", {"value": []})

    async with make_graph(guardian) as graph:
        result = await SiteExporter(graph, tmp_path).export(SITE_URL, list_names=["workflow tasks", "Missing"])

    assert [e["displayName"] for e in result.lists] == ["Workflow Tasks"]
    assert (tmp_path / "Lists" / "Workflow_Tasks.csv").exists()


def write_export(tmp_path, rows) -> object:
    lists_dir = tmp_path / "Lists"
    lists_dir.mkdir()
    (lists_dir / "Employees.json").write_text(json.dumps(rows), encoding="utf-8")
    manifest = {
        "formatVersion": 1,
        "lists": [{
            "displayName": "Employees",
            "template": "genericList",
            "columns": EMPLOYEES["columns"],
            "dataFile": "Lists/Employees.json",
        }],
    }
    path = tmp_path / "DeploymentManifest.json"
    path.write_text(json.dumps(manifest), encoding="utf-8")
    return path


ROWS = [
    {"id": "1", "Title": "Ann", "Department": "HR", "Modified": "2024-01-01"},
    {"id": "2", "Title": "Bob", "Department": "IT"},
    {"id": "3", "Modified": "2024-01-01"},
]


@pytest.mark.asyncio
async def test_deploy_creates_list_and_items(tenant, guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS)
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})
    tenant.on("POST", LISTS_PATH, httpx.Response(201, json={"id": "new-list"}))
    tenant.on("POST", f"{LISTS_PATH}/new-list/items", httpx.Response(201, json={"id": "i"}))

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)

    deployment = result.lists[0]
    assert deployment.action == "created"
    assert deployment.items_created == 2
    assert deployment.items_skipped == 1
    assert result.succeeded

    create_body = tenant.body(tenant.calls("POST", LISTS_PATH)[0])
    assert [c["name"] for c in create_body["columns"]] == ["Department", "Manager"]
    assert create_body["list"] == {"template": "genericList"}
    item_body = tenant.body(tenant.calls("POST", "/items")[0])
    assert item_body == {"fields": {"Title": "Ann", "Department": "HR"}}


@pytest.mark.asyncio
async def test_deploy_reuses_existing_list(tenant, guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS[:1])
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": [{"id": "existing", "displayName": "employees"}]})
    tenant.on("GET", f"{LISTS_PATH}/existing/columns", {"value": [TITLE]})
    tenant.on("POST", f"{LISTS_PATH}/existing/items", httpx.Response(201, json={"id": "i"}))

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)

    assert result.lists[0].action == "reused"
    # only columns the target list has are written
    assert tenant.body(tenant.calls("POST", "/items")[0]) == {"fields": {"Title": "Ann"}}


@pytest.mark.asyncio
async def test_deploy_skip_existing(tenant, guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS)
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": [{"id": "existing", "displayName": "Employees"}]})

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph, skip_existing_lists=True).deploy(manifest, SITE_URL)

    assert result.lists[0].action == "skipped"
    assert tenant.calls("POST") == []


@pytest.mark.asyncio
async def test_deploy_dry_run_plans_everything(tenant, dry_guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS)
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})

    async with make_graph(dry_guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)

    deployment = result.lists[0]
    assert deployment.action == "planned"
    assert deployment.items_planned == 2
    assert tenant.calls("POST") == []
    assert len(dry_guardian.planned_changes) == 1


@pytest.mark.asyncio
async def test_deploy_row_failures(tenant, guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS)
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})
    tenant.on("POST", LISTS_PATH, httpx.Response(201, json={"id": "new-list"}))
    tenant.on(
        "POST",
        f"{LISTS_PATH}/new-list/items",
        graph_error(400, "invalidRequest", "Field 'Department' is invalid"),
        httpx.Response(201, json={"id": "i"}),
    )

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)
    assert result.lists[0].items_failed == 1
    assert result.lists[0].items_created == 1
    assert not result.succeeded
    assert "Row 1" in result.lists[0].errors[0]

    tenant.on("POST", f"{LISTS_PATH}/new-list/items", graph_error(400, "invalidRequest", "nope"))
    async with make_graph(guardian) as graph:
        with pytest.raises(DeploymentError):
            await SiteDeployer(graph, stop_on_error=True).deploy(manifest, SITE_URL)


def test_read_manifest_rejects_bad_files(tmp_path) -> None:
    path = tmp_path / "m.json"
    path.write_text(json.dumps({"formatVersion": 1}), encoding="utf-8")
    with pytest.raises(DeploymentError):
        read_manifest(path)
    path.write_text(json.dumps({"formatVersion": 9, "lists": []}), encoding="utf-8")
    with pytest.raises(DeploymentError, match="format version"):
        read_manifest(path)


@pytest.mark.asyncio
async def test_tracking_list(tenant, guardian, dry_guardian, make_graph) -> None:
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})
    tenant.on("POST", LISTS_PATH, httpx.Response(201, json={"id": "t"}))

    async with make_graph(dry_guardian) as graph:
        assert (await provision_tracking_list(graph, SITE_URL))["status"] == "planned"
    async with make_graph(guardian) as graph:
        assert (await provision_tracking_list(graph, SITE_URL))["status"] == "created"

    body = tenant.body(tenant.calls("POST", LISTS_PATH)[0])
    assert body["displayName"] == "Request Tracking"
    status = next(c for c in body["columns"] if c["name"] == "Status")
    assert "Approved" in status["choice"]["choices"]

    tenant.on("GET", LISTS_PATH, {"value": [{"id": "t", "displayName": "request tracking"}]})
    async with make_graph(guardian) as graph:
        assert (await provision_tracking_list(graph, SITE_URL))["status"] == "exists"


@pytest.mark.asyncio
async def test_deploy_new_list_writes_only_created_columns(tenant, guardian, make_graph, tmp_path) -> None:
    hidden = {"name": "Secret", "hidden": True, "text": {}}
    (tmp_path / "Lists").mkdir()
    (tmp_path / "Lists" / "Staff.json").write_text(
        json.dumps([{"Title": "Ann", "OfficeLookupId": "3", "Office": "HQ", "Secret": "x", "Department": "HR"}]),
        encoding="utf-8",
    )
    manifest = tmp_path / "DeploymentManifest.json"
    manifest.write_text(json.dumps({"formatVersion": 1, "lists": [{
        "displayName": "Staff",
        "columns": [TITLE, LOOKUP, hidden, DEPARTMENT],
        "dataFile": "Lists/Staff.json",
    }]}), encoding="utf-8")
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})
    tenant.on("POST", LISTS_PATH, httpx.Response(201, json={"id": "new-list"}))
    tenant.on("POST", f"{LISTS_PATH}/new-list/items", httpx.Response(201, json={"id": "i"}))

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)

    assert result.lists[0].items_created == 1
    assert [c["name"] for c in tenant.body(tenant.calls("POST", LISTS_PATH)[0])["columns"]] == ["Department"]
    assert tenant.body(tenant.calls("POST", "/items")[0]) == {"fields": {"Title": "Ann", "Department": "HR"}}


def test_hidden_columns_are_not_writable() -> None:
    assert writable_field_names([{"name": "Secret", "hidden": True, "text": {}}]) == {"Title"}


@pytest.mark.asyncio
async def test_deploy_missing_data_file_fails_that_list_only(tenant, guardian, make_graph, tmp_path) -> None:
    manifest = write_export(tmp_path, ROWS[:1])
    data = json.loads(manifest.read_text(encoding="utf-8"))
    data["lists"].insert(0, {"displayName": "Broken", "columns": [], "dataFile": "Lists/Broken.json"})
    manifest.write_text(json.dumps(data), encoding="utf-8")
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": []})
    tenant.on("POST", LISTS_PATH, httpx.Response(201, json={"id": "new-list"}))
    tenant.on("POST", f"{LISTS_PATH}/new-list/items", httpx.Response(201, json={"id": "i"}))

    async with make_graph(guardian) as graph:
        result = await SiteDeployer(graph).deploy(manifest, SITE_URL)

    broken, employees = result.lists
    assert broken.action == "failed"
    assert "Broken.json" in broken.errors[0]
    assert employees.action == "created"
    assert employees.items_created == 1
    # the broken list was never created
    assert [tenant.body(r)["displayName"] for r in tenant.calls("POST", LISTS_PATH) if "/items" not in r.url.path] == [
        "Employees"
    ]

    async with make_graph(guardian) as graph:
        with pytest.raises(DeploymentError, match="Broken"):
            await SiteDeployer(graph, stop_on_error=True).deploy(manifest, SITE_URL)


def test_read_manifest_format_version_coercion(tmp_path) -> None:
    path = tmp_path / "m.json"
    path.write_text(json.dumps({"formatVersion": "1", "lists": []}), encoding="utf-8")
    assert read_manifest(path)["lists"] == []
    path.write_text(json.dumps({"formatVersion": "v1", "lists": []}), encoding="utf-8")
    with pytest.raises(DeploymentError, match="formatVersion"):
        read_manifest(path)


@pytest.mark.asyncio
async def test_export_colliding_list_names_get_distinct_files(tenant, guardian, make_graph, tmp_path) -> None:
    first = {"id": "a", "displayName": "A/B", "list": {}, "columns": []}
    second = {"id": "b", "displayName": "A:B", "list": {}, "columns": []}
    tenant.on("GET", SITE_PATH, SITE)
    tenant.on("GET", LISTS_PATH, {"value": [first, second]})
    tenant.on("GET", f"{LISTS_PATH}/a/items", {"value": [{"fields": {"Title": "from a"}}]})
    tenant.on("GET", f"{LISTS_PATH}/b/items", {"value": [{"fields": {"Title": "from b"}}]})

    async with make_graph(guardian) as graph:
        result = await SiteExporter(graph, tmp_path).export(SITE_URL)

    assert [e["dataFile"] for e in result.lists] == ["Lists/A_B.json", "Lists/A_B_2.json"]
    assert json.loads((tmp_path / "Lists" / "A_B.json").read_text())[0]["Title"] == "from a"
    assert json.loads((tmp_path / "Lists" / "A_B_2.json").read_text())[0]["Title"] == "from b"
