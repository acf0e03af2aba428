"""
HTTP Microservice
=================
Flask-based HTTP API for status polling and batch control.

Each started batch runs on its own worker thread with a private event loop.
While a batch is running, page operations for that project are submitted
to the batch's loop so they act on the same live project.

Endpoints:
    GET    /api/health                              → Health check
    GET    /api/projects                            → List projects
    GET    /api/projects/<id>                       → Project summary
    POST   /api/projects/<id>/run                   → Start (or top up) a batch
    POST   /api/projects/<id>/stop                  → Stop after current page
    GET    /api/projects/<id>/progress              → Batch progress
    POST   /api/projects/<id>/pages/<pid>/retry     → Requeue a page
    POST   /api/projects/<id>/pages/<pid>/rescan    → Requeue, bypass cache
    GET    /api/cache                               → Cache statistics
    DELETE /api/cache                               → Clear the result cache
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import __version__
from . import crud
from .engine import Pipeline, PipelineConfig
from .exceptions import IntakeError, ProjectNotFoundError
from .models import BatchProgress, BatchState

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

# Seconds to wait for an operation submitted to a running batch's loop
SUBMIT_TIMEOUT = 30.0


# ─── Batch Runner Registry ────────────────────────────────────────────────────

_runners: dict[str, "BatchRunner"] = {}
_runners_lock = threading.Lock()


def get_runner(project_id: str) -> Optional["BatchRunner"]:
    """Get the live batch runner for a project, if any."""
    with _runners_lock:
        runner = _runners.get(project_id)
    if runner is not None and not runner.is_alive():
        return None
    return runner


class BatchRunner:
    """
    Runs one project's scheduler on a daemon thread.

    Args:
        pipeline: Pipeline wired around the project.
    """

    def __init__(self, pipeline: Pipeline):
        self.pipeline = pipeline
        self.project_id = pipeline.project.id
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(
            target=self._run,
            name=f"batch-{self.project_id}",
            daemon=True,
        )
        self.result: Optional[BatchProgress] = None

    def start(self):
        with _runners_lock:
            _runners[self.project_id] = self
        self.thread.start()

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        try:
            self.result = self.loop.run_until_complete(
                self.pipeline.scheduler.run()
            )
        except Exception:
            logger.exception(f"Project {self.project_id}: batch thread crashed")
        finally:
            self.loop.close()
            with _runners_lock:
                if _runners.get(self.project_id) is self:
                    _runners.pop(self.project_id, None)

    def submit(self, coro):
        """
        Run a coroutine on the batch's loop and wait for its result.

        Raises:
            RuntimeError: If the loop has already finished.
        """
        if self.loop.is_closed() or not self.loop.is_running():
            coro.close()
            raise RuntimeError("batch loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=SUBMIT_TIMEOUT)

    def top_up(self):
        """Count newly pending pages into the running batch."""
        self.loop.call_soon_threadsafe(self.pipeline.scheduler.start)

    def request_stop(self):
        self.loop.call_soon_threadsafe(self.pipeline.scheduler.request_stop)

    def progress(self) -> BatchProgress:
        return self.pipeline.scheduler.progress()


def create_app(config: Optional[PipelineConfig] = None) -> Flask:
    """Create and configure the Flask app."""
    app.config["PIPELINE_CONFIG"] = config or PipelineConfig.from_env()
    crud.cache_stats(app.config["PIPELINE_CONFIG"])  # creates the schema
    return app


def _config() -> PipelineConfig:
    config = app.config.get("PIPELINE_CONFIG")
    if config is None:
        config = PipelineConfig.from_env()
        app.config["PIPELINE_CONFIG"] = config
    return config


# ─── Error Handling ───────────────────────────────────────────────────────────


@app.errorhandler(ProjectNotFoundError)
def handle_not_found(e: ProjectNotFoundError):
    return jsonify({"error": str(e), "label": e.label}), 404


@app.errorhandler(IntakeError)
def handle_intake_error(e: IntakeError):
    status = 409 if e.label == "Busy" else 400
    return jsonify({"error": str(e), "label": e.label}), status


@app.errorhandler(Exception)
def handle_unexpected(e: Exception):
    if isinstance(e, HTTPException):
        return e
    logger.exception(f"Unhandled API error: {e}")
    return jsonify({"error": str(e)}), 500


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    with _runners_lock:
        running = [pid for pid, r in _runners.items() if r.is_alive()]
    return jsonify({
        "status": "healthy",
        "service": "exam-intake",
        "version": __version__,
        "running_batches": running,
    })


# ─── Projects ─────────────────────────────────────────────────────────────────


@app.route("/api/projects", methods=["GET"])
def list_projects():
    """List all projects (summary)."""
    return jsonify(crud.list_projects(_config()))


@app.route("/api/projects/<project_id>", methods=["GET"])
def get_project(project_id: str):
    """Project summary: pool counts, candidates, page order, errors."""
    runner = get_runner(project_id)
    if runner is not None:
        project = runner.pipeline.project
    else:
        project = crud.get_project(project_id, _config())
    if project is None:
        raise ProjectNotFoundError(f"Project not found: {project_id}")
    return jsonify(crud.project_summary(project))


# ─── Batch Control ────────────────────────────────────────────────────────────


@app.route("/api/projects/<project_id>/run", methods=["POST"])
def run_project(project_id: str):
    """
    Start a batch for the project.

    If a batch is already running, newly pending pages are counted into
    it instead of starting a second one.
    """
    runner = get_runner(project_id)
    if runner is not None:
        runner.top_up()
        return jsonify({
            "success": True,
            "project_id": project_id,
            "status": "running",
            "message": "Batch already running; new pages counted in.",
        })

    pipeline = crud.open_pipeline(project_id, _config())
    if pipeline.project.rubric is None:
        return jsonify({
            "error": "Project has no rubric. Load one before running.",
            "pending": len(pipeline.project.pending_pages()),
        }), 409

    runner = BatchRunner(pipeline)
    runner.start()
    logger.info(f"Project {project_id}: batch started via API")

    return jsonify({
        "success": True,
        "project_id": project_id,
        "status": "running",
        "pending": len(pipeline.project.pending_pages()),
        "message": "Batch started",
    }), 202


@app.route("/api/projects/<project_id>/stop", methods=["POST"])
def stop_project(project_id: str):
    """
    Stop a running batch.

    The current page is allowed to finish; the stop takes effect before
    the next one.
    """
    runner = get_runner(project_id)
    if runner is None:
        return jsonify({
            "error": "No batch is running for this project.",
        }), 409

    runner.request_stop()
    logger.info(f"Project {project_id}: stop requested via API")
    return jsonify({
        "success": True,
        "project_id": project_id,
        "message": "Stop signal sent. Batch will halt after current page.",
    })


@app.route("/api/projects/<project_id>/progress", methods=["GET"])
def project_progress(project_id: str):
    """
    Batch progress for a project.

    Returns:
        {state, total, completed, errors, current_page_id, percentage,
         pending, last_run_stopped}
    """
    runner = get_runner(project_id)
    if runner is not None:
        progress = runner.progress()
        pending = len(runner.pipeline.project.pending_pages())
        stopped = runner.pipeline.scheduler.last_run_stopped
    else:
        project = crud.get_project(project_id, _config())
        if project is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        progress = BatchProgress(state=BatchState.IDLE)
        pending = len(project.pending_pages())
        stopped = False

    payload = progress.model_dump(mode="json")
    payload.update(
        project_id=project_id,
        pending=pending,
        last_run_stopped=stopped,
    )
    return jsonify(payload)


# ─── Page Operations ──────────────────────────────────────────────────────────


def _requeue(project_id: str, page_id: str, force: bool):
    runner = get_runner(project_id)
    if runner is not None:
        try:
            page = runner.submit(
                runner.pipeline.reconciler.requeue_page(page_id, force=force)
            )
            runner.top_up()
            return page
        except RuntimeError:
            # batch finished between lookup and submit
            pass
    if force:
        return crud.rescan_page(project_id, page_id, _config())
    return crud.retry_page(project_id, page_id, _config())


@app.route("/api/projects/<project_id>/pages/<page_id>/retry", methods=["POST"])
def retry_page(project_id: str, page_id: str):
    """Put a page back into the pending pool."""
    page = _requeue(project_id, page_id, force=False)
    return jsonify({
        "success": True,
        "page_id": page.id,
        "status": page.status.value,
    })


@app.route("/api/projects/<project_id>/pages/<page_id>/rescan", methods=["POST"])
def rescan_page(project_id: str, page_id: str):
    """Requeue a page and bypass the result cache on its next analysis."""
    page = _requeue(project_id, page_id, force=True)
    return jsonify({
        "success": True,
        "page_id": page.id,
        "status": page.status.value,
        "force_rescan": page.force_rescan,
    })


# ─── Cache ────────────────────────────────────────────────────────────────────


@app.route("/api/cache", methods=["GET"])
def cache_stats():
    return jsonify(crud.cache_stats(_config()))


@app.route("/api/cache", methods=["DELETE"])
def clear_cache():
    removed = crud.clear_cache(_config())
    return jsonify({"success": True, "removed": removed})


# ─── Server ───────────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    config: Optional[PipelineConfig] = None,
):
    """Start the microservice server."""
    create_app(config)
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
