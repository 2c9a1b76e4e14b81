"""项目文件接口的集成测试：认证、访问守卫、状态码映射与响应结构。"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.packages import DEFAULT_PACKAGE, get_active_package


def _files_url(project_id: str, suffix: str = "") -> str:
    return f"/api/v1/projects/{project_id}/files{suffix}"


def _create(client: TestClient, headers: dict, project_id: str, **body) -> dict:
    resp = client.post(_files_url(project_id), headers=headers, json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["file"]


def test_health(client: TestClient):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"msg": "OK", "data": {"status": "healthy"}, "code": 200}
    assert resp.headers.get("X-Request-ID")


def test_active_package_selection(monkeypatch):
    monkeypatch.delenv("APP_ACTIVE_PACKAGE", raising=False)
    assert get_active_package().name == DEFAULT_PACKAGE == "workspace"
    with pytest.raises(RuntimeError):
        get_active_package("missing")

    built = TestClient(create_app(get_active_package()))
    assert built.get("/health").json()["data"] == {"status": "healthy"}
    # 文件路由已挂载：未认证返回 401 而不是 404
    assert built.get(_files_url("any-project")).status_code == 401


def test_request_id_is_echoed(client: TestClient):
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_missing_or_invalid_token_is_401(client: TestClient, project_id: str):
    assert client.get(_files_url(project_id)).status_code == 401
    resp = client.get(_files_url(project_id), headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["code"] == 401


def test_non_member_gets_404(client: TestClient, project_id: str, outsider_headers: dict):
    resp = client.get(_files_url(project_id), headers=outsider_headers)
    assert resp.status_code == 404
    assert resp.json()["msg"] == "Project not found or access denied"


def test_unknown_project_gets_404(client: TestClient, member_headers: dict):
    resp = client.get(_files_url("no-such-project"), headers=member_headers)
    assert resp.status_code == 404
    assert resp.json()["msg"] == "Project not found or access denied"


def test_full_file_lifecycle(client: TestClient, project_id: str, member_headers: dict):
    src = _create(client, member_headers, project_id, name="src", type="folder")
    index = _create(client, member_headers, project_id, name="index.ts", type="file", parent_id=src["id"], content="1")
    assert index["path"] == "src/index.ts"
    assert index["size_bytes"] == 1
    assert index["created_by"] == "user-member"
    assert "storage_key" not in index
    assert "content" not in index

    listing = client.get(_files_url(project_id), headers=member_headers)
    assert listing.status_code == 200
    assert [f["path"] for f in listing.json()["data"]["files"]] == ["src", "src/index.ts"]

    renamed = client.patch(_files_url(project_id, f"/{src['id']}"), headers=member_headers, json={"name": "lib"})
    assert renamed.status_code == 200
    assert renamed.json()["data"]["file"]["path"] == "lib"

    write = client.put(
        _files_url(project_id, f"/{index['id']}/content"), headers=member_headers, json={"content": "hello ✓"}
    )
    assert write.status_code == 200
    assert write.json()["data"]["file"]["path"] == "lib/index.ts"
    assert write.json()["data"]["file"]["size_bytes"] == len("hello ✓".encode("utf-8"))

    read = client.get(_files_url(project_id, f"/{index['id']}/content"), headers=member_headers)
    assert read.status_code == 200
    assert read.json()["data"] == {"content": "hello ✓"}

    deleted = client.delete(_files_url(project_id, f"/{src['id']}"), headers=member_headers)
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"deletedPath": "lib"}

    listing = client.get(_files_url(project_id), headers=member_headers)
    assert listing.json()["data"]["files"] == []


def test_patch_distinguishes_null_parent_from_omitted(client: TestClient, project_id: str, member_headers: dict):
    docs = _create(client, member_headers, project_id, name="docs", type="folder")
    a = _create(client, member_headers, project_id, name="a.txt", type="file", parent_id=docs["id"])

    renamed = client.patch(_files_url(project_id, f"/{a['id']}"), headers=member_headers, json={"name": "b.txt"})
    assert renamed.json()["data"]["file"]["path"] == "docs/b.txt"

    to_root = client.patch(_files_url(project_id, f"/{a['id']}"), headers=member_headers, json={"parent_id": None})
    assert to_root.json()["data"]["file"]["path"] == "b.txt"
    assert to_root.json()["data"]["file"]["parent_id"] is None

    empty = client.patch(_files_url(project_id, f"/{a['id']}"), headers=member_headers, json={})
    assert empty.status_code == 400


def test_error_status_mapping(client: TestClient, project_id: str, member_headers: dict):
    folder = _create(client, member_headers, project_id, name="src", type="folder")
    _create(client, member_headers, project_id, name="a.txt", type="file")

    duplicate = client.post(_files_url(project_id), headers=member_headers, json={"name": "a.txt", "type": "file"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == 409

    blank = client.post(_files_url(project_id), headers=member_headers, json={"name": "  ", "type": "file"})
    assert blank.status_code == 400

    bad_type = client.post(_files_url(project_id), headers=member_headers, json={"name": "x", "type": "link"})
    assert bad_type.status_code == 400

    read_folder = client.get(_files_url(project_id, f"/{folder['id']}/content"), headers=member_headers)
    assert read_folder.status_code == 400

    missing = client.delete(_files_url(project_id, "/does-not-exist"), headers=member_headers)
    assert missing.status_code == 404

    into_self = client.patch(
        _files_url(project_id, f"/{folder['id']}"), headers=member_headers, json={"parent_id": folder["id"]}
    )
    assert into_self.status_code == 409

    not_string = client.put(
        _files_url(project_id, f"/{folder['id']}/content"), headers=member_headers, json={"content": 5}
    )
    assert not_string.status_code == 400


def test_unencodable_text_is_400(client: TestClient, project_id: str, member_headers: dict):
    # 原样发送 JSON 转义，使服务端解析出孤立的代理字符
    headers = {**member_headers, "Content-Type": "application/json"}
    resp = client.post(
        _files_url(project_id), headers=headers, content='{"name": "a.txt", "type": "file", "content": "\\ud800"}'
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == 400

    a = _create(client, member_headers, project_id, name="b.txt", type="file", content="ok")
    write = client.put(
        _files_url(project_id, f"/{a['id']}/content"), headers=headers, content='{"content": "x\\udc00"}'
    )
    assert write.status_code == 400
    read = client.get(_files_url(project_id, f"/{a['id']}/content"), headers=member_headers)
    assert read.json()["data"] == {"content": "ok"}


def test_request_body_validation_uses_envelope(client: TestClient, project_id: str, member_headers: dict):
    resp = client.post(
        _files_url(project_id), headers=member_headers, json={"name": "x", "type": "file", "parent_id": {"id": 1}}
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == 422
    assert body["msg"] == "请求参数验证失败"


def test_store_unavailable_is_503_without_details(client: TestClient, project_id: str, member_headers: dict, blob_store):
    blob_store.fail_ops.add("upload")
    resp = client.post(
        _files_url(project_id), headers=member_headers, json={"name": "a.txt", "type": "file", "content": "x"}
    )
    assert resp.status_code == 503
    assert resp.json() == {"msg": "存储服务暂不可用，请稍后重试", "data": None, "code": 503}


def test_reconcile_endpoint(client: TestClient, project_id: str, member_headers: dict):
    _create(client, member_headers, project_id, name="src", type="folder")
    resp = client.post(_files_url(project_id, "/reconcile"), headers=member_headers)
    assert resp.status_code == 200
    assert resp.json()["data"] == {
        "paths_fixed": 0,
        "conflicts": [],
        "orphans": [],
        "blobs_removed": 0,
        "blobs_failed": 0,
    }


def test_projects_are_isolated(client: TestClient, project_id: str, member_headers: dict):
    a = _create(client, member_headers, project_id, name="a.txt", type="file", content="x")
    resp = client.get(_files_url("another-project", f"/{a['id']}/content"), headers=member_headers)
    assert resp.status_code == 404
