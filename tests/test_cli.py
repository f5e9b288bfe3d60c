"""
Tests for the CLI module.
"""
import json

import pytest

from contentscout.cli import (
    build_settings,
    cmd_create_project,
    cmd_delete_project,
    cmd_list_projects,
    cmd_show,
    main,
    parse_args,
)
from contentscout.db.database import Database
from contentscout.discovery.models import AnalysisResult


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def _seed_filtering_project(db_path, make_candidate, count=4):
    with Database(db_path) as db:
        project = db.create_project(name="seeded", niche_query="espresso", status="filtering")
        db.replace_candidates(project.project_id, [
            make_candidate(f"v{i}", combined_score=50.0 - i) for i in range(count)
        ])
        return project.project_id


class TestParseArgs:
    def test_create_project(self):
        args = parse_args([
            "--db-path", "x.db", "create-project", "--niche", "espresso",
            "--limit", "25", "--window", "7d", "--remove-outliers",
        ])
        assert args.command == "create-project"
        assert args.niche_query == "espresso"
        assert args.candidate_limit == 25
        assert args.time_window == "7d"
        assert args.remove_outliers is True
        assert args.country_code is None

    def test_create_requires_niche(self):
        with pytest.raises(SystemExit):
            parse_args(["create-project"])

    def test_filter(self):
        args = parse_args(["--json", "filter", "3", "--exclude", "a", "b", "--sort", "views"])
        assert args.project_id == 3
        assert args.exclude == ["a", "b"]
        assert args.sort == "views"
        assert args.json is True

    def test_settings_overrides(self):
        args = parse_args([
            "--db-path", "x.db", "--llm-model", "llama3",
            "--embedding-backend", "sentence-transformers",
            "--embedding-model", "all-MiniLM-L6-v2", "list-projects",
        ])
        config = build_settings(args)
        assert config.DB_PATH == "x.db"
        assert config.LLM_MODEL == "llama3"
        assert config.EMBEDDING_BACKEND == "sentence-transformers"
        assert config.SENTENCE_TRANSFORMER_MODEL == "all-MiniLM-L6-v2"


class TestProjectCommands:
    def test_create_list_show_delete(self, temp_db):
        args = parse_args(["create-project", "--niche", "espresso", "--name", "Coffee"])
        created = cmd_create_project(temp_db, args)
        project_id = created["project"]["id"]
        assert created["project"]["stage"] == "config"
        assert created["project"]["remove_outliers"] is False

        listed = cmd_list_projects(temp_db, parse_args(["list-projects"]))
        assert listed["count"] == 1
        assert listed["projects"][0]["name"] == "Coffee"

        shown = cmd_show(temp_db, parse_args(["show", str(project_id)]))
        assert shown["candidates"] == []
        assert shown["concept"] is None
        assert shown["analyses"] == 0

        deleted = cmd_delete_project(temp_db, parse_args(["delete-project", str(project_id)]))
        assert deleted["deleted"] is True

    def test_show_missing_project(self, temp_db):
        with pytest.raises(KeyError):
            cmd_show(temp_db, parse_args(["show", "42"]))


class TestMain:
    @pytest.mark.asyncio
    async def test_create_project_json(self, db_path, capsys):
        code = await main(["--db-path", db_path, "--json", "create-project", "--niche", "espresso"])
        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["command"] == "create-project"
        assert output["project"]["status"] == "draft"

    @pytest.mark.asyncio
    async def test_missing_project_returns_error(self, db_path, capsys):
        code = await main(["--db-path", db_path, "--json", "show", "99"])
        assert code == 1
        assert "error" in json.loads(capsys.readouterr().out)

    @pytest.mark.asyncio
    async def test_filter_review_and_apply(self, db_path, capsys, make_candidate):
        pid = _seed_filtering_project(db_path, make_candidate)

        code = await main(["--db-path", db_path, "--json", "filter", str(pid),
                           "--exclude", "v1", "--review"])
        assert code == 0
        review = json.loads(capsys.readouterr().out)["review"]
        assert [r["video_id"] for r in review if r["excluded"]] == ["v1"]

        code = await main(["--db-path", db_path, "--json", "filter", str(pid), "--exclude", "v1"])
        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["remaining"] == 3
        assert result["phase"] == "done"

        with Database(db_path) as db:
            assert db.get_project(pid).status == "embedding"
            assert [c.video_id for c in db.get_candidates(pid)] == ["v0", "v2", "v3"]

    @pytest.mark.asyncio
    async def test_filter_unknown_id(self, db_path, capsys, make_candidate):
        pid = _seed_filtering_project(db_path, make_candidate)
        code = await main(["--db-path", db_path, "--json", "filter", str(pid), "--exclude", "zzz"])
        assert code == 1

    @pytest.mark.asyncio
    async def test_stage_error_exit_code(self, db_path, capsys, make_candidate):
        pid = _seed_filtering_project(db_path, make_candidate, count=1)
        code = await main(["--db-path", db_path, "--json", "filter", str(pid), "--exclude", "v0"])
        assert code == 1
        result = json.loads(capsys.readouterr().out)
        assert result["phase"] == "error"
        assert result["error_kind"] == "EmptyResultError"

    @pytest.mark.asyncio
    async def test_concept_and_results(self, db_path, capsys, make_candidate):
        pid = _seed_filtering_project(db_path, make_candidate)

        code = await main(["--db-path", db_path, "--json", "concept", str(pid),
                           "--title", "My video", "--tags", "a, b"])
        assert code == 0
        concept = json.loads(capsys.readouterr().out)["concept"]
        assert concept["tags"] == ["a", "b"]

        code = await main(["--db-path", db_path, "--json", "results", str(pid)])
        assert code == 0
        assert json.loads(capsys.readouterr().out)["analysis"] is None

        with Database(db_path) as db:
            db.save_analysis(pid, AnalysisResult(
                top_video_ids=["v0"], pattern_summary={}, gaps=["title: too long"],
                gap_scores={"title": 40.0}, title_variants=["Shorter"],
                optimized_description="", suggested_tags=[], validation_score=40.0,
            ))

        code = await main(["--db-path", db_path, "results", str(pid)])
        assert code == 0
        out = capsys.readouterr().out
        assert "Validation score: 40.0" in out
        assert "title: too long" in out
