"""
Test Suite for the Outer Surfaces
=================================
Service layer (crud), click CLI and Flask HTTP API.
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from intake import crud
from intake.cli import cli
from intake.exceptions import ProjectNotFoundError
from intake.models import PageStatus, ProjectStatus
from intake.server import create_app

from conftest import FakeService, entry, make_jpeg, response


def _rubric_file(tmp_path):
    path = tmp_path / "rubric.json"
    path.write_text(json.dumps({
        "title": "Math 1T",
        "criteria": [
            {"taskNumber": 1, "subTask": "a", "maxPoints": 2},
            {"taskNumber": "2", "maxPoints": 4},
        ],
    }), encoding="utf-8")
    return path


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE LAYER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCrud:

    def test_create_and_list(self, config):
        project = crud.create_project("Spring exam", config)
        assert len(project.id) == 8
        rows = crud.list_projects(config)
        assert [r["id"] for r in rows] == [project.id]
        assert crud.get_project(project.id, config).name == "Spring exam"

    def test_unknown_project(self, config):
        with pytest.raises(ProjectNotFoundError):
            crud.open_pipeline("nope", config)

    def test_load_rubric_camel_case(self, tmp_path):
        rubric = crud.load_rubric_file(str(_rubric_file(tmp_path)))
        assert rubric.title == "Math 1T"
        assert [(c.task_number, c.sub_task) for c in rubric.criteria] == [
            ("1", "a"), ("2", ""),
        ]
        assert rubric.total_max_points == 6

    def test_load_rubric_bare_list(self, tmp_path):
        path = tmp_path / "rubric.json"
        path.write_text('[{"task_number": "3", "sub_task": "b"}]')
        rubric = crud.load_rubric_file(str(path))
        assert rubric.criteria[0].sub_task == "b"

    def test_full_flow(self, config, tmp_path):
        project = crud.create_project("Exam", config)
        scan = tmp_path / "scan.jpg"
        scan.write_bytes(make_jpeg())
        crud.ingest_files(project.id, [str(scan)], config)

        # no rubric yet: nothing runs
        progress = crud.run_batch(project.id, config, service=FakeService())
        assert progress.total == 0

        crud.set_rubric(
            project.id,
            crud.load_rubric_file(str(_rubric_file(tmp_path))),
            config,
        )
        service = FakeService(default=response(entry(candidate="77")))
        seen = []
        progress = crud.run_batch(
            project.id, config, service=service,
            progress_callback=lambda c, t: seen.append((c, t)),
        )

        assert progress.completed == 1
        assert seen == [(1, 1)]
        loaded = crud.get_project(project.id, config)
        assert loaded.status == ProjectStatus.REVIEW
        summary = crud.project_summary(loaded)
        assert summary["candidate_count"] == 1
        assert summary["candidates"][0]["id"] == "77"
        assert summary["candidates"][0]["pages"][0]["tasks"] == ["1A"]
        assert crud.cache_stats(config)["entries"] == 1

        page_id = summary["candidates"][0]["pages"][0]["id"]
        page = crud.rescan_page(project.id, page_id, config)
        assert page.force_rescan is True
        assert page.status == PageStatus.PENDING

        assert crud.clear_cache(config) == 1
        assert crud.delete_project(project.id, config) is True
        assert crud.get_project(project.id, config) is None

    def test_summary_lists_errors(self, config, tmp_path):
        project = crud.create_project("Exam", config)
        scan = tmp_path / "scan.jpg"
        scan.write_bytes(make_jpeg())
        crud.ingest_files(project.id, [str(scan)], config)
        crud.set_rubric(
            project.id, crud.load_rubric_file(str(_rubric_file(tmp_path))), config
        )
        crud.run_batch(project.id, config, service=FakeService(default="nope"))

        summary = crud.project_summary(crud.get_project(project.id, config))
        assert summary["unprocessed"] == {"error": 1}
        assert summary["errors"][0]["label"] == "Malformed response"


# ═══════════════════════════════════════════════════════════════════════════════
# CLI TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCLI:

    def _invoke(self, db_path, *args):
        return CliRunner().invoke(cli, ["--db", db_path, *args])

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_init(self, db_path):
        result = self._invoke(db_path, "init")
        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_project_lifecycle(self, db_path, config, tmp_path):
        result = self._invoke(db_path, "project", "create", "Autumn")
        assert result.exit_code == 0
        project_id = crud.list_projects(config)[0]["id"]
        assert project_id in result.output

        result = self._invoke(db_path, "project", "list")
        assert "Autumn" in result.output

        scan = tmp_path / "scan.jpg"
        scan.write_bytes(make_jpeg())
        result = self._invoke(db_path, "ingest", project_id, str(scan))
        assert result.exit_code == 0
        assert "Ingested 1 page(s)" in result.output

        result = self._invoke(
            db_path, "rubric", "load", project_id, str(_rubric_file(tmp_path))
        )
        assert result.exit_code == 0
        assert "2 criteria" in result.output

        result = self._invoke(db_path, "project", "show", project_id)
        assert result.exit_code == 0
        assert "Autumn" in result.output

        result = self._invoke(db_path, "project", "delete", project_id, "--yes")
        assert result.exit_code == 0
        assert crud.list_projects(config) == []

    def test_run_without_rubric(self, db_path, config):
        project = crud.create_project("Empty", config)
        result = self._invoke(db_path, "run", project.id)
        assert result.exit_code == 0
        assert "No rubric loaded" in result.output

    def test_unknown_project_exits_nonzero(self, db_path):
        result = self._invoke(db_path, "retry", "nope", "p1")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_merge_into_self_exits_nonzero(self, db_path, config):
        project = crud.create_project("Exam", config)
        result = self._invoke(db_path, "merge", project.id, "101", "101")
        assert result.exit_code == 1
        assert "itself" in result.output

    def test_cache_commands(self, db_path):
        result = self._invoke(db_path, "cache", "stats")
        assert result.exit_code == 0
        assert "Cache entries" in result.output

        result = self._invoke(db_path, "cache", "clear", "--yes")
        assert result.exit_code == 0
        assert "Removed 0" in result.output


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP API TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestServer:

    @pytest.fixture
    def client(self, config):
        app = create_app(config)
        app.config["TESTING"] = True
        return app.test_client()

    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "healthy"

    def test_projects(self, client, config):
        project = crud.create_project("Exam", config)
        resp = client.get("/api/projects")
        assert [p["id"] for p in resp.get_json()] == [project.id]

        resp = client.get(f"/api/projects/{project.id}")
        assert resp.status_code == 200
        assert resp.get_json()["name"] == "Exam"

    def test_missing_project(self, client):
        resp = client.get("/api/projects/nope")
        assert resp.status_code == 404
        assert resp.get_json()["label"] == "Not found"

        resp = client.get("/api/projects/nope/progress")
        assert resp.status_code == 404

    def test_run_requires_rubric(self, client, config):
        project = crud.create_project("Exam", config)
        resp = client.post(f"/api/projects/{project.id}/run")
        assert resp.status_code == 409

    def test_stop_without_batch(self, client, config):
        project = crud.create_project("Exam", config)
        resp = client.post(f"/api/projects/{project.id}/stop")
        assert resp.status_code == 409

    def test_idle_progress(self, client, config, tmp_path):
        project = crud.create_project("Exam", config)
        scan = tmp_path / "scan.jpg"
        scan.write_bytes(make_jpeg())
        crud.ingest_files(project.id, [str(scan)], config)

        data = client.get(f"/api/projects/{project.id}/progress").get_json()
        assert data["state"] == "idle"
        assert data["pending"] == 1
        assert data["percentage"] == 0.0

    def test_retry_unknown_page(self, client, config):
        project = crud.create_project("Exam", config)
        resp = client.post(f"/api/projects/{project.id}/pages/ghost/retry")
        assert resp.status_code == 400
        assert resp.get_json()["label"] == "Invalid operation"

    def test_rescan_page(self, client, config, tmp_path):
        project = crud.create_project("Exam", config)
        scan = tmp_path / "scan.jpg"
        scan.write_bytes(make_jpeg())
        [page] = crud.ingest_files(project.id, [str(scan)], config)

        resp = client.post(f"/api/projects/{project.id}/pages/{page.id}/rescan")
        assert resp.status_code == 200
        assert resp.get_json()["force_rescan"] is True

    def test_cache_endpoints(self, client):
        assert client.get("/api/cache").get_json()["entries"] == 0
        resp = client.delete("/api/cache")
        assert resp.get_json() == {"success": True, "removed": 0}
