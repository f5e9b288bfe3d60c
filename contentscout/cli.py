#!/usr/bin/env python3
"""
CLI for the competitor research pipeline.

Usage:
    python -m contentscout.cli create-project --niche "home espresso" --name Espresso
    python -m contentscout.cli list-projects
    python -m contentscout.cli show 1
    python -m contentscout.cli search 1 [--window 90d] [--limit 50]
    python -m contentscout.cli filter 1 --exclude VIDEO_ID [VIDEO_ID ...]
    python -m contentscout.cli filter 1 --review --sort views
    python -m contentscout.cli embed 1 [--force]
    python -m contentscout.cli concept 1 --title "..." --description "..." --tags a,b,c
    python -m contentscout.cli analyze 1 [--force]
    python -m contentscout.cli results 1
    python -m contentscout.cli delete-project 1
"""
import argparse
import asyncio
import io
import json
import logging
import sys
from typing import Optional

from .config import Settings, settings
from .db.database import Database
from .discovery.models import AnalysisResult, Candidate, ResearchProject
from .errors import ContentScoutError
from .workflow.controller import REVIEW_SORT_KEYS, StagePhase, WorkflowController
from .workflow.stages import Stage, stage_for_status

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Competitor content discovery and ranking"
    )
    parser.add_argument(
        "--db-path",
        default=settings.DB_PATH,
        help=f"Path to SQLite database (default: {settings.DB_PATH})"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON"
    )
    parser.add_argument(
        "--llm-model",
        default=None,
        help=f"Ollama model for analysis (default: {settings.LLM_MODEL})"
    )
    parser.add_argument(
        "--embedding-backend",
        choices=["ollama", "sentence-transformers"],
        default=None,
        help=f"Embedding backend (default: {settings.EMBEDDING_BACKEND})"
    )
    parser.add_argument(
        "--embedding-model",
        default=None,
        help="Embedding model name for the chosen backend"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config_options(sub, creating: bool = False):
        sub.add_argument("--name", default=None, help="Project name")
        sub.add_argument("--niche", dest="niche_query", required=creating, default=None,
                         help="Niche phrase to search for")
        sub.add_argument("--country", dest="country_code", default=None,
                         help="Region code, e.g. US")
        sub.add_argument("--limit", dest="candidate_limit", type=int, default=None,
                         help="Number of candidates to keep")
        sub.add_argument("--window", dest="time_window", default=None,
                         help="Time window: 7d, 30d, 90d, 1y, all, or <N>h/<N>d")
        sub.add_argument("--source-video", dest="source_video_id", default=None,
                         help="Reference video URL or id whose tags seed the search")
        sub.add_argument("--remove-outliers", dest="remove_outliers",
                         action="store_true", default=None,
                         help="Drop view-count outliers before ranking")

    create_parser = subparsers.add_parser("create-project", help="Create a research project")
    add_config_options(create_parser, creating=True)

    subparsers.add_parser("list-projects", help="List projects, newest first")

    show_parser = subparsers.add_parser("show", help="Show a project and its candidates")
    show_parser.add_argument("project_id", type=int)

    delete_parser = subparsers.add_parser("delete-project", help="Delete a project")
    delete_parser.add_argument("project_id", type=int)

    search_parser = subparsers.add_parser(
        "search",
        help="Search, resolve details and score candidates"
    )
    search_parser.add_argument("project_id", type=int)
    add_config_options(search_parser)

    filter_parser = subparsers.add_parser(
        "filter",
        help="Review candidates or drop excluded ones and advance to embedding"
    )
    filter_parser.add_argument("project_id", type=int)
    filter_parser.add_argument("--exclude", nargs="*", default=[], help="Video ids to drop")
    filter_parser.add_argument("--review", action="store_true",
                               help="Only list candidates; do not apply the filter")
    filter_parser.add_argument("--sort", choices=sorted(REVIEW_SORT_KEYS), default="score",
                               help="Review order (default: score)")

    embed_parser = subparsers.add_parser("embed", help="Embed candidates")
    embed_parser.add_argument("project_id", type=int)
    embed_parser.add_argument("--force", action="store_true",
                              help="Regenerate embeddings that already exist")

    concept_parser = subparsers.add_parser("concept", help="Save your video concept")
    concept_parser.add_argument("project_id", type=int)
    concept_parser.add_argument("--title", required=True)
    concept_parser.add_argument("--description", default="")
    concept_parser.add_argument("--tags", default="", help="Comma-separated tags")

    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Match the concept to competitors and run the AI analysis"
    )
    analyze_parser.add_argument("project_id", type=int)
    analyze_parser.add_argument("--force", action="store_true",
                                help="Run again even if an analysis exists")

    results_parser = subparsers.add_parser("results", help="Show the latest analysis")
    results_parser.add_argument("project_id", type=int)

    return parser.parse_args(argv)


def build_settings(args) -> Settings:
    """Apply per-invocation overrides to the loaded settings."""
    overrides = {"DB_PATH": args.db_path}
    if args.llm_model:
        overrides["LLM_MODEL"] = args.llm_model
    if args.embedding_backend:
        overrides["EMBEDDING_BACKEND"] = args.embedding_backend
    if args.embedding_model:
        if (args.embedding_backend or settings.EMBEDDING_BACKEND) == "sentence-transformers":
            overrides["SENTENCE_TRANSFORMER_MODEL"] = args.embedding_model
        else:
            overrides["EMBEDDING_MODEL"] = args.embedding_model
    return settings.model_copy(update=overrides)


def config_fields(args) -> dict:
    names = ["name", "niche_query", "country_code", "candidate_limit",
             "time_window", "source_video_id", "remove_outliers"]
    return {n: getattr(args, n) for n in names if getattr(args, n, None) is not None}


def project_to_dict(project: ResearchProject) -> dict:
    return {
        "id": project.project_id,
        "name": project.name,
        "niche_query": project.niche_query,
        "country_code": project.country_code,
        "candidate_limit": project.candidate_limit,
        "time_window": project.time_window,
        "status": project.status,
        "stage": stage_for_status(project.status).label,
        "source_video_id": project.source_video_id,
        "remove_outliers": project.remove_outliers,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "updated_at": project.updated_at.isoformat() if project.updated_at else None,
    }


def candidate_to_dict(c: Candidate) -> dict:
    return {
        "video_id": c.video_id,
        "title": c.title,
        "channel": c.channel_title,
        "views": c.views,
        "engagement_rate": round(c.engagement_rate, 3),
        "view_velocity": round(c.view_velocity, 1),
        "tag_overlap_score": round(c.tag_overlap_score, 1),
        "category_match": c.category_match,
        "combined_score": round(c.combined_score, 2),
        "has_embedding": c.has_embedding,
    }


def analysis_to_dict(result: AnalysisResult) -> dict:
    return {
        "analysis_id": result.analysis_id,
        "created_at": result.created_at.isoformat() if result.created_at else None,
        "top_video_ids": result.top_video_ids,
        "validation_score": round(result.validation_score, 1),
        "gap_scores": result.gap_scores,
        "gaps": result.gaps,
        "title_variants": result.title_variants,
        "optimized_description": result.optimized_description,
        "suggested_tags": result.suggested_tags,
        "pattern_summary": result.pattern_summary,
        "extended_insights": result.extended_insights,
    }


def stage_outcome(controller: WorkflowController, stage: Stage, result: dict) -> dict:
    """Attach the stage's final phase and any error to a command result."""
    state = controller.stage_state(stage)
    result["stage"] = stage.label
    result["phase"] = state.phase.value
    if state.phase == StagePhase.ERROR:
        result["error"] = state.error
        result["error_kind"] = state.error_kind
    return result


def log_progress(stage: Stage, state) -> None:
    if state.phase == StagePhase.RUNNING:
        logger.info("[%s] %d%% %s", stage.label, state.progress, state.status_text)


def enter_stage(controller: WorkflowController, stage: Stage) -> None:
    """Navigate to a stage before running its operation."""
    if controller.current_stage != stage:
        controller.go_to(stage)


def cmd_create_project(db: Database, args) -> dict:
    """Execute the create-project command."""
    project = db.create_project(**config_fields(args))
    return {"command": "create-project", "project": project_to_dict(project)}


def cmd_list_projects(db: Database, args) -> dict:
    """Execute the list-projects command."""
    projects = db.list_projects()
    return {
        "command": "list-projects",
        "count": len(projects),
        "projects": [project_to_dict(p) for p in projects],
    }


def cmd_show(db: Database, args) -> dict:
    """Execute the show command."""
    project = db.get_project(args.project_id)
    if project is None:
        raise KeyError(f"Project {args.project_id} not found")
    candidates = db.get_candidates(args.project_id)
    concept = db.get_concept(args.project_id)
    return {
        "command": "show",
        "project": project_to_dict(project),
        "candidates": [candidate_to_dict(c) for c in candidates],
        "concept": {
            "title": concept.title,
            "description": concept.description,
            "tags": concept.tags,
        } if concept else None,
        "analyses": len(db.list_analyses(args.project_id)),
    }


def cmd_delete_project(db: Database, args) -> dict:
    """Execute the delete-project command."""
    deleted = db.delete_project(args.project_id)
    return {"command": "delete-project", "project_id": args.project_id, "deleted": deleted}


async def cmd_search(controller: WorkflowController, args) -> dict:
    """Execute the search command."""
    controller.load()
    fields = config_fields(args)
    if fields or controller.current_stage == Stage.CONFIG:
        controller.configure(**fields)
    enter_stage(controller, Stage.SEARCH)

    candidates = await controller.run_search()
    result = {
        "command": "search",
        "project_id": args.project_id,
        "total_candidates": len(candidates) if candidates else 0,
        "candidates": [candidate_to_dict(c) for c in candidates or []],
    }
    return stage_outcome(controller, Stage.SEARCH, result)


async def cmd_filter(controller: WorkflowController, args) -> dict:
    """Execute the filter command."""
    controller.load()
    enter_stage(controller, Stage.FILTER)
    if args.exclude:
        controller.exclude(*args.exclude)

    if args.review:
        reviewed = controller.review(sort_by=args.sort)
        return {
            "command": "filter",
            "project_id": args.project_id,
            "review": [
                {**candidate_to_dict(c), "excluded": excluded} for c, excluded in reviewed
            ],
        }

    kept = await controller.advance_from_filter()
    result = {
        "command": "filter",
        "project_id": args.project_id,
        "excluded": list(args.exclude),
        "remaining": len(kept) if kept else None,
    }
    return stage_outcome(controller, Stage.FILTER, result)


async def cmd_embed(controller: WorkflowController, args) -> dict:
    """Execute the embed command."""
    controller.load()
    enter_stage(controller, Stage.EMBED)
    candidates = await controller.run_embed(force=args.force)
    result = {
        "command": "embed",
        "project_id": args.project_id,
        "embedded": sum(1 for c in candidates if c.has_embedding) if candidates else 0,
        "total": len(candidates) if candidates else 0,
    }
    return stage_outcome(controller, Stage.EMBED, result)


def cmd_concept(controller: WorkflowController, args) -> dict:
    """Execute the concept command."""
    controller.load()
    tags = [t for t in args.tags.split(",")] if args.tags else []
    concept = controller.set_concept(args.title, args.description, tags)
    return {
        "command": "concept",
        "project_id": args.project_id,
        "concept": {
            "title": concept.title,
            "description": concept.description,
            "tags": concept.tags,
        },
    }


async def cmd_analyze(controller: WorkflowController, args) -> dict:
    """Execute the analyze command."""
    controller.load()
    enter_stage(controller, Stage.ANALYSIS)
    analysis = await controller.run_analysis(force=args.force)
    result = {
        "command": "analyze",
        "project_id": args.project_id,
        "analysis": analysis_to_dict(analysis) if analysis else None,
    }
    return stage_outcome(controller, Stage.ANALYSIS, result)


def cmd_results(controller: WorkflowController, args) -> dict:
    """Execute the results command."""
    controller.load()
    analysis = controller.validation_result()
    return {
        "command": "results",
        "project_id": args.project_id,
        "analysis": analysis_to_dict(analysis) if analysis else None,
    }


async def run_command(db: Database, args, config: Settings) -> dict:
    """Dispatch a parsed command."""
    if args.command == "create-project":
        return cmd_create_project(db, args)
    if args.command == "list-projects":
        return cmd_list_projects(db, args)
    if args.command == "show":
        return cmd_show(db, args)
    if args.command == "delete-project":
        return cmd_delete_project(db, args)

    controller = WorkflowController(db, args.project_id, config=config, listener=log_progress)
    if args.command == "search":
        return await cmd_search(controller, args)
    elif args.command == "filter":
        return await cmd_filter(controller, args)
    elif args.command == "embed":
        return await cmd_embed(controller, args)
    elif args.command == "concept":
        return cmd_concept(controller, args)
    elif args.command == "analyze":
        return await cmd_analyze(controller, args)
    elif args.command == "results":
        return cmd_results(controller, args)
    raise ValueError(f"Unknown command: {args.command}")


def print_result(result: dict) -> None:
    """Human-readable output."""
    print(f"\n{'=' * 50}")
    print(f"Command: {result['command']}")
    print(f"{'=' * 50}")

    if "error" in result:
        print(f"Stage {result['stage']} failed ({result['error_kind']}): {result['error']}")
        return

    command = result["command"]
    if command in ("create-project", "show"):
        p = result["project"]
        print(f"Project {p['id']}: {p['name']}")
        print(f"  Niche: {p['niche_query']}  Country: {p['country_code']}  "
              f"Window: {p['time_window']}  Limit: {p['candidate_limit']}")
        print(f"  Status: {p['status']} (stage: {p['stage']})")
        if command == "show":
            print(f"\nCandidates: {len(result['candidates'])}")
            for i, c in enumerate(result["candidates"][:20], 1):
                print(f"  {i:2d}. [{c['combined_score']:6.2f}] {c['title'][:60]} "
                      f"({c['views']:,} views)")
            if result["concept"]:
                print(f"\nConcept: {result['concept']['title']}")
            print(f"Analyses: {result['analyses']}")

    elif command == "list-projects":
        print(f"Projects: {result['count']}")
        for p in result["projects"]:
            print(f"  {p['id']:4d}  {p['name'][:30]:30s}  {p['status']:10s}  {p['niche_query']}")

    elif command == "delete-project":
        print(f"Deleted: {result['deleted']}")

    elif command == "search":
        print(f"Candidates: {result['total_candidates']}")
        for i, c in enumerate(result["candidates"][:20], 1):
            print(f"  {i:2d}. [{c['combined_score']:6.2f}] {c['title'][:60]} "
                  f"({c['views']:,} views, {c['engagement_rate']}% eng)")

    elif command == "filter":
        if "review" in result:
            for c in result["review"]:
                mark = "x" if c["excluded"] else " "
                print(f"  [{mark}] {c['video_id']}  {c['combined_score']:6.2f}  "
                      f"{c['views']:>12,}  {c['title'][:50]}")
        else:
            print(f"Excluded: {len(result['excluded'])}")
            print(f"Remaining: {result['remaining']}")

    elif command == "embed":
        print(f"Embedded: {result['embedded']} / {result['total']}")

    elif command == "concept":
        concept = result["concept"]
        print(f"Title: {concept['title']}")
        print(f"Tags: {', '.join(concept['tags'])}")

    elif command in ("analyze", "results"):
        analysis = result["analysis"]
        if not analysis:
            print("No analysis yet")
            return
        print(f"Validation score: {analysis['validation_score']}")
        for area, score in analysis["gap_scores"].items():
            print(f"  {area}: {score:.0f}")
        if analysis["gaps"]:
            print("\nGaps:")
            for gap in analysis["gaps"]:
                print(f"  - {gap}")
        if analysis["title_variants"]:
            print("\nTitle variants:")
            for title in analysis["title_variants"]:
                print(f"  - {title}")
        if analysis["suggested_tags"]:
            print(f"\nSuggested tags: {', '.join(analysis['suggested_tags'])}")
        if analysis["optimized_description"]:
            print(f"\nDescription:\n{analysis['optimized_description']}")


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_settings(args)

    try:
        with Database(args.db_path) as db:
            result = await run_command(db, args, config)
    except (ContentScoutError, KeyError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        if args.json:
            print(json.dumps({"command": args.command, "error": str(e)}, indent=2))
        return 1

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        print_result(result)
    return 1 if "error" in result else 0


if __name__ == "__main__":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    sys.exit(asyncio.run(main()))
