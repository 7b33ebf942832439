"""
Tests for the git-spice stack backend.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskstack.errors import StackToolError
from taskstack.parallel.stack_backend import (
    GitSpiceBackend,
    StackBranch,
    StackState,
    extract_result_urls,
)


class TestUrlExtraction:

    def test_marker_lines(self):
        output = (
            "INF Created #12: Pull Request: https://github.com/acme/app/pull/12\n"
            "PR: https://gitlab.com/acme/app/-/merge_requests/7\n"
        )
        assert extract_result_urls(output) == [
            "https://github.com/acme/app/pull/12",
            "https://gitlab.com/acme/app/-/merge_requests/7",
        ]
        print("[PASS] Marker lines parsed")

    def test_bare_hosted_urls(self):
        output = "Updated https://bitbucket.org/acme/app/pull-requests/3 (draft)"
        assert extract_result_urls(output) == ["https://bitbucket.org/acme/app/pull-requests/3"]

    def test_duplicates_removed_in_first_seen_order(self):
        print("\n=== Test: URL De-duplication ===")
        output = "\n".join([
            "Pull Request: https://github.com/acme/app/pull/2",
            "created https://github.com/acme/app/pull/1.",
            "see https://github.com/acme/app/pull/2",
            "(https://github.com/acme/app/pull/1)",
        ])
        assert extract_result_urls(output) == [
            "https://github.com/acme/app/pull/2",
            "https://github.com/acme/app/pull/1",
        ]
        print("[PASS] Each URL reported once")

    def test_no_urls(self):
        assert extract_result_urls("") == []
        assert extract_result_urls("nothing to submit\nhttps://example.com/docs") == []


class TestStackState:

    def test_roots_and_children(self):
        state = StackState(trunk="main")
        state.add(StackBranch(name="a", parent="main"))
        state.add(StackBranch(name="b", parent="a"))
        state.add(StackBranch(name="c", parent="main"))

        assert [b.name for b in state.roots()] == ["a", "c"]
        assert [b.name for b in state.children("a")] == ["b"]
        assert state.get("b").parent == "a"
        assert state.get("missing") is None

    def test_re_adding_replaces(self):
        state = StackState(trunk="main")
        state.add(StackBranch(name="a", parent="main", commit_hash="1"))
        state.add(StackBranch(name="a", parent="main", commit_hash="2"))

        assert len(state.branches) == 1
        assert state.get("a").commit_hash == "2"


class TestGitSpiceCommands:

    async def test_submit_arguments_and_urls(self):
        print("\n=== Test: Stack Submit ===")
        backend = GitSpiceBackend()
        with patch.object(backend, '_run', new_callable=AsyncMock) as mock_run:
            mock_run.return_value = (
                "Pull Request: https://github.com/acme/app/pull/5\n"
                "Pull Request: https://github.com/acme/app/pull/5\n"
            )
            urls = await backend.submit_stack(Path("/repo"), branch="taskstack/T1", draft=True)

        args = mock_run.call_args.args[0]
        assert args == ['stack', 'submit', '--fill', '--draft', '--branch', 'taskstack/T1']
        assert urls == ["https://github.com/acme/app/pull/5"]
        print(f"[PASS] {urls}")

    async def test_track_and_init(self):
        backend = GitSpiceBackend()
        with patch.object(backend, '_run', new_callable=AsyncMock) as mock_run:
            mock_run.return_value = ""
            await backend.initialize(Path("/repo"), "main")
            await backend.track_branch("taskstack/T2", "taskstack/T1", Path("/repo"))

        calls = [c.args[0] for c in mock_run.call_args_list]
        assert calls == [
            ['repo', 'init', '--trunk', 'main'],
            ['branch', 'track', 'taskstack/T2', '--base', 'taskstack/T1'],
        ]

    async def test_create_branch_arguments(self):
        backend = GitSpiceBackend()
        with patch.object(backend, '_run', new_callable=AsyncMock) as mock_run:
            mock_run.return_value = ""
            await backend.create_branch("taskstack/T1", "Add T1", Path("/repo"))

        assert mock_run.call_args.args[0] == ['branch', 'create', 'taskstack/T1', '-m', 'Add T1']
        assert mock_run.call_args.args[1] == Path("/repo")

    async def test_availability_is_cached(self):
        backend = GitSpiceBackend()
        with patch.object(backend, '_run', new_callable=AsyncMock) as mock_run:
            mock_run.side_effect = StackToolError("not found")
            assert await backend.is_available(Path("/repo")) is False
            assert await backend.is_available(Path("/repo")) is False

        assert mock_run.call_count == 1

    async def test_missing_binary_raises(self, tmp_path):
        backend = GitSpiceBackend(binary="taskstack-no-such-stack-tool")
        with pytest.raises(StackToolError):
            await backend.restack(tmp_path)
