"""Tests for the CLI, run against a temporary database without network access."""

from __future__ import annotations

import asyncio

import pytest
from click.testing import CliRunner

from newsdesk.pipeline.cli import cli
from newsdesk.storage.db import ArticleStore
from newsdesk.storage.models import Article


@pytest.fixture
def paths(tmp_path):
    return {
        "db": str(tmp_path / "data" / "cli.db"),
        "config": str(tmp_path / "missing.yaml"),
    }


def invoke(paths, *args, input=None):
    runner = CliRunner()
    return runner.invoke(cli, ["--db", paths["db"], "--config", paths["config"], *args], input=input)


def seed(db_path: str, offline_titles=(), pages=None, actions=0):
    async def _run():
        store = ArticleStore(db_path)
        await store.initialize()
        try:
            articles = [
                Article(id=f"id{i}", title=t, url=f"https://example.com/{i}")
                for i, t in enumerate(offline_titles)
            ]
            await store.save_articles(articles, saved_offline=True)
            for page_num, page in (pages or {}).items():
                await store.put_page("latest", page_num, page)
            for i in range(actions):
                await store.enqueue_action("bookmark", {"n": i})
        finally:
            await store.close()

    asyncio.run(_run())


def pending_actions(db_path: str):
    async def _run():
        store = ArticleStore(db_path)
        await store.initialize()
        try:
            return await store.list_pending()
        finally:
            await store.close()

    return asyncio.run(_run())


class TestCLI:
    def test_cli_imports(self):
        from newsdesk.pipeline.cli import cli, main
        assert cli is not None
        assert main is not None

    def test_cli_commands(self):
        for name in ("fetch", "search", "status", "drain", "download", "auto-download", "purge", "clear-cache", "bookmark"):
            assert name in cli.commands

    def test_status_on_empty_db(self, paths):
        result = invoke(paths, "status")
        assert result.exit_code == 0
        assert "Storage Status" in result.output

    def test_fetch_offline_without_data(self, paths):
        result = invoke(paths, "fetch", "--offline")
        assert result.exit_code == 1
        assert "No articles available" in result.output

    def test_fetch_offline_uses_saved_articles(self, paths):
        seed(paths["db"], offline_titles=["Saved story"])
        result = invoke(paths, "fetch", "--offline")
        assert result.exit_code == 0
        assert "offline" in result.output
        assert "Saved story" in result.output

    def test_fetch_offline_uses_page_cache(self, paths):
        page = [Article(id="p1", title="Cached headline", url="https://example.com/p1")]
        seed(paths["db"], pages={1: page})
        result = invoke(paths, "fetch", "--offline")
        assert result.exit_code == 0
        assert "Cached headline" in result.output

    def test_search_offline(self, paths):
        seed(paths["db"], offline_titles=["Climate summit", "Football"])
        result = invoke(paths, "search", "climate", "--offline")
        assert result.exit_code == 0
        assert "Climate summit" in result.output
        assert "Football" not in result.output

    def test_search_offline_no_results(self, paths):
        result = invoke(paths, "search", "nothing", "--offline")
        assert result.exit_code == 0
        assert "No results" in result.output

    def test_drain_without_api_key_leaves_actions_pending(self, paths):
        seed(paths["db"], actions=2)
        result = invoke(paths, "drain")
        assert result.exit_code == 1
        assert "Authentication failed" in result.output
        assert len(pending_actions(paths["db"])) == 2

    def test_bookmark_offline_queues(self, paths):
        seed(paths["db"], offline_titles=["Keep me"])
        result = invoke(paths, "bookmark", "id0", "--offline")
        assert result.exit_code == 0
        assert "Bookmarked" in result.output

    def test_download_declined(self, paths):
        result = invoke(paths, "download", "--pages", "2", input="n\n")
        assert result.exit_code == 0
        assert "declined" in result.output

    def test_purge_and_clear_cache(self, paths):
        seed(paths["db"], pages={1: [Article(id="p1", title="t", url="u")]})
        assert invoke(paths, "purge").exit_code == 0
        result = invoke(paths, "clear-cache")
        assert result.exit_code == 0
        assert "Removed 1 cached pages" in result.output

    def test_reset_schema_drops_data(self, paths):
        seed(paths["db"], offline_titles=["Old"], actions=1)
        result = invoke(paths, "clear-cache", "--reset-schema", input="y\n")
        assert result.exit_code == 0
        assert "Schema rebuilt at v3" in result.output
        assert pending_actions(paths["db"]) == []
        assert "No articles available" in invoke(paths, "fetch", "--offline").output

    def test_reset_schema_declined_keeps_data(self, paths):
        seed(paths["db"], actions=1)
        result = invoke(paths, "clear-cache", "--reset-schema", input="n\n")
        assert result.exit_code == 0
        assert len(pending_actions(paths["db"])) == 1
