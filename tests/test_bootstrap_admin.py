import pytest

from inkwell.service.runtime import get_runtime
from scripts.bootstrap_admin import bootstrap_admin, main


@pytest.fixture
def runtime(hasher):
    rt = get_runtime()
    rt.store.create_user("root", "root@example.com", "Root", hasher.hash("x"), role="admin")
    rt.store.create_user("alice", "alice@example.com", "Alice", hasher.hash("x"))
    return rt


async def test_promotes_by_email(runtime):
    result = await bootstrap_admin("alice@example.com", runtime=runtime)
    assert result["status"] == "promoted"
    assert runtime.store.get_user(result["user_id"]).role == "admin"


async def test_dry_run_changes_nothing(runtime):
    result = await bootstrap_admin("alice", dry_run=True, runtime=runtime)
    assert result["status"] == "dry_run"
    assert runtime.store.get_user(result["user_id"]).role == "user"


async def test_already_admin(runtime):
    assert (await bootstrap_admin("root", runtime=runtime))["status"] == "already_admin"


async def test_unknown_login(runtime):
    result = await bootstrap_admin("ghost", runtime=runtime)
    assert result == {"user_id": None, "login": "ghost", "status": "not_found"}


def test_cli_requires_login(monkeypatch):
    monkeypatch.delenv("ADMIN_LOGIN", raising=False)
    monkeypatch.setattr("sys.argv", ["bootstrap_admin.py"])
    with pytest.raises(SystemExit) as excinfo:
        main()
    assert excinfo.value.code == 1
