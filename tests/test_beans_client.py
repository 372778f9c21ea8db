"""Tests for the beans CLI client, with subprocess mocked out."""

import json
from unittest.mock import MagicMock, patch

import pytest

from talos.integrations.beans import BeanFilter, BeansCliError, BeansClient, bean_from_dict

RAW_BEAN = {
    "id": "talos-ab12",
    "slug": "add-login",
    "title": "Add login",
    "status": "todo",
    "type": "feature",
    "priority": "high",
    "tags": ["frontend"],
    "body": "Body",
    "parentId": "talos-ep01",
    "blockingIds": ["talos-cd34"],
    "createdAt": "2025-01-02T03:04:05Z",
    "updatedAt": None,
}


def completed(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.returncode = returncode
    result.stderr = stderr
    return result


@pytest.fixture
def run():
    with patch("talos.integrations.beans.subprocess.run") as mock_run:
        yield mock_run


@pytest.fixture
def client(tmp_path):
    return BeansClient(tmp_path)


class TestBeanFromDict:
    def test_maps_fields(self):
        bean = bean_from_dict(RAW_BEAN)
        assert bean.id == "talos-ab12"
        assert bean.parent_id == "talos-ep01"
        assert bean.blocking_ids == ["talos-cd34"]
        assert bean.created_at.year == 2025
        assert bean.updated_at is None

    def test_minimal(self):
        bean = bean_from_dict({"id": "x"})
        assert (bean.status, bean.type, bean.priority) == ("todo", "task", "normal")
        assert bean.parent_id is None


class TestFilter:
    def test_empty(self):
        assert BeanFilter().to_graphql() == ""

    def test_fields(self):
        document = BeanFilter(
            status=["todo"], exclude_tags=["blocked", "failed"], search="Err"
        ).to_graphql()
        assert document == (
            '(filter: { status: ["todo"], excludeTags: ["blocked", "failed"], search: "Err" })'
        )


class TestReads:
    def test_get_bean(self, client, run, tmp_path):
        run.return_value = completed(json.dumps({"data": {"bean": RAW_BEAN}}))

        bean = client.get_bean("talos-ab12")

        assert bean.title == "Add login"
        args, kwargs = run.call_args
        assert args[0] == ["beans", "query", "--json"]
        assert kwargs["cwd"] == tmp_path
        assert 'bean(id: "talos-ab12")' in kwargs["input"]

    def test_get_bean_missing(self, client, run):
        run.return_value = completed(json.dumps({"bean": None}))
        assert client.get_bean("nope") is None

    def test_list_beans(self, client, run):
        run.return_value = completed(json.dumps({"beans": [RAW_BEAN, {"id": "y"}]}))
        beans = client.list_beans(BeanFilter(status=["in-progress"]))
        assert [b.id for b in beans] == ["talos-ab12", "y"]
        assert 'status: ["in-progress"]' in run.call_args.kwargs["input"]

    def test_get_blocked_by_excludes_terminal(self, client, run):
        run.return_value = completed(json.dumps({"bean": {"blockedBy": [RAW_BEAN]}}))
        blockers = client.get_blocked_by("talos-cd34")
        assert [b.id for b in blockers] == ["talos-ab12"]
        assert 'excludeStatus: ["completed", "scrapped"]' in run.call_args.kwargs["input"]

    def test_get_bean_with_children(self, client, run):
        raw = {**RAW_BEAN, "children": [{"id": "c1"}, {"id": "c2"}]}
        run.return_value = completed(json.dumps({"bean": raw}))
        bean = client.get_bean_with_children("talos-ab12")
        assert [c.id for c in bean.children] == ["c1", "c2"]


class TestErrors:
    def test_nonzero_exit(self, client, run):
        run.return_value = completed(returncode=1, stderr="no such bean")
        with pytest.raises(BeansCliError, match="no such bean") as excinfo:
            client.get_bean("x")
        assert excinfo.value.command == "beans query --json"

    def test_invalid_json(self, client, run):
        run.return_value = completed("not json")
        with pytest.raises(BeansCliError, match="parse"):
            client.get_bean("x")

    def test_missing_executable(self, tmp_path):
        client = BeansClient(tmp_path, executable="definitely-not-beans-xyz")
        with pytest.raises(BeansCliError, match="spawn"):
            client.list_beans()


class TestWrites:
    def test_create_bean(self, client, run):
        run.return_value = completed(json.dumps(RAW_BEAN))

        bean = client.create_bean(
            "Crash: Task",
            type="bug",
            status="todo",
            priority="high",
            parent="talos-ep01",
            blocking=["talos-t1"],
            body="## Exit Code\n1",
        )

        assert bean.id == "talos-ab12"
        args, kwargs = run.call_args
        assert args[0] == [
            "beans", "create", "Crash: Task",
            "-t", "bug", "-s", "todo", "-p", "high",
            "--parent", "talos-ep01", "--blocking", "talos-t1",
            "-d", "-", "--json",
        ]
        assert kwargs["input"] == "## Exit Code\n1"

    def test_create_bean_without_body(self, client, run):
        run.return_value = completed(json.dumps(RAW_BEAN))
        client.create_bean("Title", tags=["a"])
        args, kwargs = run.call_args
        assert args[0] == ["beans", "create", "Title", "--tag", "a", "--json"]
        assert kwargs["input"] is None

    def test_update_tags_refetches(self, client, run):
        run.side_effect = [
            completed(""),
            completed(json.dumps({"bean": {**RAW_BEAN, "tags": ["failed"]}})),
        ]
        bean = client.update_tags("talos-ab12", add=["failed"], remove=["blocked"])
        assert bean.tags == ["failed"]
        first = run.call_args_list[0].args[0]
        assert first == ["beans", "update", "talos-ab12", "--tag", "failed", "--remove-tag", "blocked"]

    def test_update_status(self, client, run):
        run.return_value = completed(json.dumps({"updateBean": {**RAW_BEAN, "status": "completed"}}))
        assert client.update_status("talos-ab12", "completed").status == "completed"
        assert 'status: "completed"' in run.call_args.kwargs["input"]

    def test_update_body_via_stdin(self, client, run):
        run.return_value = completed(json.dumps({**RAW_BEAN, "body": "new `body` $(x)"}))
        bean = client.update_body("talos-ab12", "new `body` $(x)")
        assert bean.body == "new `body` $(x)"
        assert run.call_args.args[0] == ["beans", "update", "talos-ab12", "--body", "-", "--json"]
        assert run.call_args.kwargs["input"] == "new `body` $(x)"

    def test_add_blocking(self, client, run):
        run.return_value = completed(json.dumps({"addBlocking": RAW_BEAN}))
        client.add_blocking("talos-c1", "talos-e1")
        document = run.call_args.kwargs["input"]
        assert 'addBlocking(id: "talos-c1", targetId: "talos-e1")' in document

    def test_set_parent_to_none(self, client, run):
        run.return_value = completed(json.dumps({"setParent": RAW_BEAN}))
        client.set_parent("talos-ab12", None)
        assert "parentId: null" in run.call_args.kwargs["input"]
