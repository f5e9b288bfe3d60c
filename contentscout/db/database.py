"""
SQLite persistence for research projects and their per-stage artifacts.
"""
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..discovery.models import AnalysisResult, Candidate, ConceptDraft, ResearchProject
from ..matching.embeddings import load_embedding

logger = logging.getLogger(__name__)

PROJECT_DEFAULTS: Dict[str, Any] = {
    "name": "New Project",
    "niche_query": "",
    "country_code": "US",
    "candidate_limit": 50,
    "time_window": "30d",
    "status": "draft",
    "source_video_id": None,
    "remove_outliers": False,
}

UPDATABLE_PROJECT_FIELDS = {
    "name", "niche_query", "country_code", "candidate_limit",
    "time_window", "status", "source_video_id", "remove_outliers",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _dump_embedding(embedding) -> Optional[str]:
    if embedding is None or len(embedding) == 0:
        return None
    return json.dumps([float(x) for x in embedding])


class Database:
    """SQLite store for projects, candidates, concepts and analyses."""

    def __init__(self, db_path: str):
        """
        Args:
            db_path: Path to the SQLite file (":memory:" for a throwaway store).
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> None:
        """Open the connection and create tables if needed."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self.ensure_tables()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    def ensure_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS research_projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                niche_query TEXT NOT NULL DEFAULT '',
                country_code TEXT NOT NULL DEFAULT 'US',
                candidate_limit INTEGER NOT NULL DEFAULT 50,
                time_window TEXT NOT NULL DEFAULT '30d',
                status TEXT NOT NULL DEFAULT 'draft',
                source_video_id TEXT,
                remove_outliers INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS candidates (
                project_id INTEGER NOT NULL,
                video_id TEXT NOT NULL,
                rank_position INTEGER NOT NULL,
                title TEXT,
                description TEXT,
                tags TEXT,
                category_id TEXT,
                channel_id TEXT,
                channel_title TEXT,
                thumbnail_url TEXT,
                views INTEGER DEFAULT 0,
                likes INTEGER DEFAULT 0,
                comments INTEGER DEFAULT 0,
                duration_seconds INTEGER DEFAULT 0,
                published_at TEXT,
                embedding TEXT,
                engagement_rate REAL DEFAULT 0,
                view_velocity REAL DEFAULT 0,
                days_since_publish INTEGER DEFAULT 0,
                tag_overlap_score REAL DEFAULT 50,
                category_match INTEGER DEFAULT 1,
                combined_score REAL DEFAULT 0,
                PRIMARY KEY (project_id, video_id),
                FOREIGN KEY (project_id) REFERENCES research_projects(id) ON DELETE CASCADE
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS concept_drafts (
                project_id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                tags TEXT,
                embedding TEXT,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES research_projects(id) ON DELETE CASCADE
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS analyses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                top_video_ids TEXT NOT NULL,
                pattern_summary TEXT,
                gaps TEXT,
                gap_scores TEXT,
                title_variants TEXT,
                optimized_description TEXT,
                suggested_tags TEXT,
                validation_score REAL DEFAULT 0,
                extended_insights TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES research_projects(id) ON DELETE CASCADE
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_analyses_project
            ON analyses(project_id, id)
        """)
        self.conn.commit()

    # Projects

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> ResearchProject:
        return ResearchProject(
            project_id=row["id"],
            name=row["name"],
            niche_query=row["niche_query"],
            country_code=row["country_code"],
            candidate_limit=row["candidate_limit"],
            time_window=row["time_window"],
            status=row["status"],
            source_video_id=row["source_video_id"],
            remove_outliers=bool(row["remove_outliers"]),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def create_project(self, **fields) -> ResearchProject:
        """Create a project; unspecified fields take the library defaults."""
        unknown = set(fields) - set(PROJECT_DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown project fields: {sorted(unknown)}")
        values = {**PROJECT_DEFAULTS, **{k: v for k, v in fields.items() if v is not None}}
        now = _now()
        cursor = self.conn.execute("""
            INSERT INTO research_projects
                (name, niche_query, country_code, candidate_limit, time_window,
                 status, source_video_id, remove_outliers, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            values["name"], values["niche_query"], values["country_code"],
            int(values["candidate_limit"]), values["time_window"], values["status"],
            values["source_video_id"], 1 if values["remove_outliers"] else 0,
            now, now,
        ))
        self.conn.commit()
        logger.info("Created project %d '%s'", cursor.lastrowid, values["name"])
        return self.get_project(cursor.lastrowid)

    def get_project(self, project_id: int) -> Optional[ResearchProject]:
        row = self.conn.execute(
            "SELECT * FROM research_projects WHERE id = ?", (project_id,)
        ).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self) -> List[ResearchProject]:
        """All projects, newest first."""
        cursor = self.conn.execute(
            "SELECT * FROM research_projects ORDER BY created_at DESC, id DESC"
        )
        return [self._row_to_project(row) for row in cursor.fetchall()]

    def update_project(self, project_id: int, **fields) -> ResearchProject:
        """Update the given project columns and bump ``updated_at``."""
        unknown = set(fields) - UPDATABLE_PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {sorted(unknown)}")
        if "remove_outliers" in fields:
            fields["remove_outliers"] = 1 if fields["remove_outliers"] else 0

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values())
        sql = "UPDATE research_projects SET "
        if assignments:
            sql += assignments + ", "
        sql += "updated_at = ? WHERE id = ?"
        cursor = self.conn.execute(sql, (*params, _now(), project_id))
        self.conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"Project {project_id} not found")
        return self.get_project(project_id)

    def update_project_status(self, project_id: int, status: str) -> None:
        self.update_project(project_id, status=status)

    def delete_project(self, project_id: int) -> bool:
        """Delete a project and all of its artifacts."""
        cursor = self.conn.execute(
            "DELETE FROM research_projects WHERE id = ?", (project_id,)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # Candidates

    def replace_candidates(self, project_id: int, candidates: Iterable[Candidate]) -> int:
        """Replace the project's candidate set wholesale, keeping the given order."""
        rows = []
        for position, c in enumerate(candidates):
            rows.append((
                project_id, c.video_id, position, c.title, c.description,
                json.dumps(list(c.tags)), c.category_id, c.channel_id,
                c.channel_title, c.thumbnail_url, c.views, c.likes, c.comments,
                c.duration_seconds, c.published_at, _dump_embedding(c.embedding),
                c.engagement_rate, c.view_velocity, c.days_since_publish,
                c.tag_overlap_score, 1 if c.category_match else 0, c.combined_score,
            ))
        with self.conn:
            self.conn.execute("DELETE FROM candidates WHERE project_id = ?", (project_id,))
            self.conn.executemany("""
                INSERT INTO candidates
                    (project_id, video_id, rank_position, title, description, tags,
                     category_id, channel_id, channel_title, thumbnail_url, views,
                     likes, comments, duration_seconds, published_at, embedding,
                     engagement_rate, view_velocity, days_since_publish,
                     tag_overlap_score, category_match, combined_score)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, rows)
        return len(rows)

    def get_candidates(self, project_id: int) -> List[Candidate]:
        """The project's candidates by combined score, ties in stored order."""
        cursor = self.conn.execute("""
            SELECT * FROM candidates
            WHERE project_id = ?
            ORDER BY combined_score DESC, rank_position ASC
        """, (project_id,))

        candidates = []
        for row in cursor.fetchall():
            candidates.append(Candidate(
                video_id=row["video_id"],
                title=row["title"] or "",
                description=row["description"] or "",
                tags=json.loads(row["tags"]) if row["tags"] else [],
                category_id=row["category_id"] or "",
                channel_id=row["channel_id"] or "",
                channel_title=row["channel_title"] or "",
                thumbnail_url=row["thumbnail_url"] or "",
                views=row["views"],
                likes=row["likes"],
                comments=row["comments"],
                duration_seconds=row["duration_seconds"],
                published_at=row["published_at"] or "",
                embedding=load_embedding(row["embedding"]),
                engagement_rate=row["engagement_rate"],
                view_velocity=row["view_velocity"],
                days_since_publish=row["days_since_publish"],
                tag_overlap_score=row["tag_overlap_score"],
                category_match=bool(row["category_match"]),
                combined_score=row["combined_score"],
            ))
        return candidates

    def save_candidate_embeddings(self, project_id: int, candidates: Iterable[Candidate]) -> None:
        """Persist embeddings for the given candidates."""
        rows = [
            (_dump_embedding(c.embedding), project_id, c.video_id) for c in candidates
        ]
        with self.conn:
            self.conn.executemany(
                "UPDATE candidates SET embedding = ? WHERE project_id = ? AND video_id = ?",
                rows,
            )

    def retain_candidates(self, project_id: int, keep_ids: Iterable[str]) -> int:
        """Delete every candidate not in ``keep_ids``. Returns the number removed."""
        keep = list(dict.fromkeys(keep_ids))
        with self.conn:
            if keep:
                placeholders = ", ".join("?" for _ in keep)
                cursor = self.conn.execute(
                    f"DELETE FROM candidates WHERE project_id = ? AND video_id NOT IN ({placeholders})",
                    (project_id, *keep),
                )
            else:
                cursor = self.conn.execute(
                    "DELETE FROM candidates WHERE project_id = ?", (project_id,)
                )
        return cursor.rowcount

    # Concept

    def save_concept(self, project_id: int, concept: ConceptDraft) -> None:
        self.conn.execute("""
            INSERT INTO concept_drafts (project_id, title, description, tags, embedding, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                tags = excluded.tags,
                embedding = excluded.embedding,
                updated_at = excluded.updated_at
        """, (
            project_id, concept.title, concept.description,
            json.dumps(list(concept.tags)), _dump_embedding(concept.embedding), _now(),
        ))
        self.conn.commit()

    def get_concept(self, project_id: int) -> Optional[ConceptDraft]:
        row = self.conn.execute(
            "SELECT * FROM concept_drafts WHERE project_id = ?", (project_id,)
        ).fetchone()
        if not row:
            return None
        return ConceptDraft(
            title=row["title"],
            description=row["description"] or "",
            tags=json.loads(row["tags"]) if row["tags"] else [],
            embedding=load_embedding(row["embedding"]),
        )

    # Analyses

    def save_analysis(self, project_id: int, result: AnalysisResult) -> AnalysisResult:
        """Insert a new analysis version; earlier versions are kept."""
        created_at = _now()
        cursor = self.conn.execute("""
            INSERT INTO analyses
                (project_id, top_video_ids, pattern_summary, gaps, gap_scores,
                 title_variants, optimized_description, suggested_tags,
                 validation_score, extended_insights, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            project_id, json.dumps(result.top_video_ids),
            json.dumps(result.pattern_summary), json.dumps(result.gaps),
            json.dumps(result.gap_scores), json.dumps(result.title_variants),
            result.optimized_description, json.dumps(result.suggested_tags),
            result.validation_score,
            json.dumps(result.extended_insights) if result.extended_insights is not None else None,
            created_at,
        ))
        self.conn.commit()
        result.analysis_id = cursor.lastrowid
        result.created_at = _parse_timestamp(created_at)
        return result

    @staticmethod
    def _row_to_analysis(row: sqlite3.Row) -> AnalysisResult:
        return AnalysisResult(
            top_video_ids=json.loads(row["top_video_ids"]),
            pattern_summary=json.loads(row["pattern_summary"]) if row["pattern_summary"] else {},
            gaps=json.loads(row["gaps"]) if row["gaps"] else [],
            gap_scores=json.loads(row["gap_scores"]) if row["gap_scores"] else {},
            title_variants=json.loads(row["title_variants"]) if row["title_variants"] else [],
            optimized_description=row["optimized_description"] or "",
            suggested_tags=json.loads(row["suggested_tags"]) if row["suggested_tags"] else [],
            validation_score=row["validation_score"],
            extended_insights=(
                json.loads(row["extended_insights"]) if row["extended_insights"] else None
            ),
            analysis_id=row["id"],
            created_at=_parse_timestamp(row["created_at"]),
        )

    def get_latest_analysis(self, project_id: int) -> Optional[AnalysisResult]:
        row = self.conn.execute("""
            SELECT * FROM analyses WHERE project_id = ?
            ORDER BY id DESC LIMIT 1
        """, (project_id,)).fetchone()
        return self._row_to_analysis(row) if row else None

    def list_analyses(self, project_id: int) -> List[AnalysisResult]:
        """Every analysis version of a project, oldest first."""
        cursor = self.conn.execute(
            "SELECT * FROM analyses WHERE project_id = ? ORDER BY id", (project_id,)
        )
        return [self._row_to_analysis(row) for row in cursor.fetchall()]
