"""Tests for hierarchical bean branches and type-aware merges."""

import subprocess
from unittest.mock import patch

import pytest

from conftest import commit_file, git
from talos.config import BranchConfig
from talos.core.branches import BEAN_FILES_COMMIT_MESSAGE, BranchManager
from talos.integrations import git as gitops
from talos.integrations.git import DirtyWorkingTreeError, branch_exists, get_current_branch
from talos.models import Bean


@pytest.fixture
def manager(git_repo):
    return BranchManager(BranchConfig(enabled=True), git_repo)


def fetcher(*beans):
    by_id = {b.id: b for b in beans}
    return by_id.get


def log_subjects(repo, ref="main"):
    return git(repo, "log", ref, "--format=%s").splitlines()


class TestNaming:
    def test_merge_target_for_root_bean(self, manager):
        assert manager.get_merge_target(Bean(id="t1")) == "main"

    def test_merge_target_for_child_bean(self, manager):
        assert manager.get_merge_target(Bean(id="t1", parent_id="e1")) == "bean/e1"

    def test_default_strategies(self, manager):
        assert manager.get_merge_strategy("task") == "squash"
        assert manager.get_merge_strategy("bug") == "squash"
        assert manager.get_merge_strategy("feature") == "merge"
        assert manager.get_merge_strategy("epic") == "merge"
        assert manager.get_merge_strategy("milestone") == "merge"

    def test_unknown_type_merges(self, git_repo):
        manager = BranchManager(BranchConfig(enabled=True, merge_strategy={}), git_repo)
        assert manager.get_merge_strategy("task") == "merge"


class TestAncestorChain:
    def test_root_first(self, manager):
        root = Bean(id="m1", type="milestone")
        epic = Bean(id="e1", type="epic", parent_id="m1")
        task = Bean(id="t1", parent_id="e1")
        chain = manager.build_ancestor_chain(task, fetcher(root, epic))
        assert [b.id for b in chain] == ["m1", "e1"]

    def test_stops_at_missing_parent(self, manager):
        task = Bean(id="t1", parent_id="gone")
        assert manager.build_ancestor_chain(task, fetcher()) == []

    def test_cycle_is_cut(self, manager):
        a = Bean(id="a", parent_id="b")
        b = Bean(id="b", parent_id="a")
        chain = manager.build_ancestor_chain(a, fetcher(a, b))
        assert [x.id for x in chain] == ["b"]


class TestEnsureBranch:
    def test_creates_chain_in_order_and_checks_out(self, manager, git_repo):
        root = Bean(id="root", type="milestone")
        parent = Bean(id="parent", type="epic", parent_id="root")
        child = Bean(id="child", parent_id="parent")

        with patch("talos.core.branches.create_branch", wraps=gitops.create_branch) as spy:
            branch = manager.ensure_branch(child, fetcher(root, parent))

        assert branch == "bean/child"
        assert [c.args[1:] for c in spy.call_args_list] == [
            ("bean/root", "main"),
            ("bean/parent", "bean/root"),
            ("bean/child", "bean/parent"),
        ]
        assert get_current_branch(git_repo) == "bean/child"

    def test_existing_branch_is_checked_out(self, manager, git_repo):
        task = Bean(id="t1")
        manager.ensure_branch(task, fetcher())
        git(git_repo, "checkout", "main")

        with patch("talos.core.branches.create_branch") as create:
            manager.ensure_branch(task, fetcher())
        create.assert_not_called()
        assert get_current_branch(git_repo) == "bean/t1"

    def test_dirty_tree_raises(self, manager, git_repo):
        (git_repo / "README.md").write_text("uncommitted\n")
        with pytest.raises(DirtyWorkingTreeError):
            manager.ensure_branch(Bean(id="t1"), fetcher())
        assert not branch_exists(git_repo, "bean/t1")
        assert get_current_branch(git_repo) == "main"

    def test_bean_files_are_committed_first(self, manager, git_repo):
        beans_dir = git_repo / ".beans"
        beans_dir.mkdir()
        (beans_dir / "t1--task.md").write_text("---\ntitle: Task\n---\n")

        manager.ensure_branch(Bean(id="t1"), fetcher())

        assert log_subjects(git_repo)[0] == BEAN_FILES_COMMIT_MESSAGE
        assert get_current_branch(git_repo) == "bean/t1"
        assert (git_repo / ".beans" / "t1--task.md").exists()

    def test_ancestor_branches_leave_tree_alone(self, manager, git_repo):
        (git_repo / "README.md").write_text("dirty but fine\n")
        parent = Bean(id="e1", type="epic")
        target = manager.ensure_ancestor_branches(Bean(id="t1", parent_id="e1"), fetcher(parent))
        assert target == "bean/e1"
        assert branch_exists(git_repo, "bean/e1")
        assert get_current_branch(git_repo) == "main"


class TestMergeBranch:
    def _work_on(self, manager, git_repo, bean, commits=3):
        manager.ensure_branch(bean, fetcher())
        for i in range(commits):
            commit_file(git_repo, f"file{i}.txt", f"{i}\n", f"wip {i}")

    def test_squash_creates_single_commit(self, manager, git_repo):
        task = Bean(id="t1", type="task", title="Task")
        self._work_on(manager, git_repo, task)
        before = int(git(git_repo, "rev-list", "--count", "main"))

        result = manager.merge_branch(task, "chore: do the task")

        assert result.success
        assert not result.conflict
        assert int(git(git_repo, "rev-list", "--count", "main")) == before + 1
        assert log_subjects(git_repo)[0] == "chore: do the task"
        assert not any(s.startswith("wip") for s in log_subjects(git_repo))
        assert result.commit_sha == git(git_repo, "rev-parse", "main")
        assert get_current_branch(git_repo) == "main"
        assert not branch_exists(git_repo, "bean/t1")

    def test_merge_commit_preserves_history(self, manager, git_repo):
        feature = Bean(id="f1", type="feature", title="Feature")
        self._work_on(manager, git_repo, feature)

        result = manager.merge_branch(feature, "feat: the feature")

        assert result.success
        subjects = log_subjects(git_repo)
        assert subjects[0] == "feat: the feature"
        assert {"wip 0", "wip 1", "wip 2"} <= set(subjects)
        parents = git(git_repo, "rev-list", "--parents", "-n", "1", "main").split()
        assert len(parents) == 3

    def test_child_merges_into_parent_branch(self, manager, git_repo):
        epic = Bean(id="e1", type="epic")
        task = Bean(id="t1", type="task", parent_id="e1")
        manager.ensure_branch(task, fetcher(epic))
        commit_file(git_repo, "a.txt", "a\n", "wip")

        result = manager.merge_branch(task, "chore(e1): task")

        assert result.success
        assert get_current_branch(git_repo) == "bean/e1"
        assert log_subjects(git_repo, "bean/e1")[0] == "chore(e1): task"
        assert log_subjects(git_repo, "main") == ["init"]

    def test_keep_branch_when_configured(self, git_repo):
        manager = BranchManager(BranchConfig(enabled=True, delete_after_merge=False), git_repo)
        task = Bean(id="t1", type="task")
        self._work_on(manager, git_repo, task, commits=1)
        assert manager.merge_branch(task, "chore: task").success
        assert branch_exists(git_repo, "bean/t1")

    @pytest.mark.parametrize("bean_type", ["task", "feature"])
    def test_conflict_is_contained(self, manager, git_repo, bean_type):
        bean = Bean(id="c1", type=bean_type)
        manager.ensure_branch(bean, fetcher())
        commit_file(git_repo, "README.md", "branch side\n", "branch edit")
        git(git_repo, "checkout", "main")
        commit_file(git_repo, "README.md", "main side\n", "main edit")

        result = manager.merge_branch(bean, "chore: conflicting")

        assert not result.success
        assert result.conflict
        assert result.error
        assert git(git_repo, "status", "--porcelain") == ""
        assert not gitops.has_merge_head(git_repo)
        assert get_current_branch(git_repo) == "main"
        assert (git_repo / "README.md").read_text() == "main side\n"
        assert branch_exists(git_repo, "bean/c1")


class TestRecovery:
    def test_nothing_to_recover(self, manager):
        assert manager.recover_git_state() is False

    def test_aborts_interrupted_merge(self, manager, git_repo):
        git(git_repo, "checkout", "-b", "side")
        commit_file(git_repo, "README.md", "side\n", "side edit")
        git(git_repo, "checkout", "main")
        commit_file(git_repo, "README.md", "main\n", "main edit")
        with pytest.raises(subprocess.CalledProcessError):
            git(git_repo, "merge", "side")
        assert gitops.has_merge_head(git_repo)

        assert manager.recover_git_state() is True
        assert not gitops.has_merge_head(git_repo)
        assert git(git_repo, "status", "--porcelain") == ""
        assert manager.recover_git_state() is False
