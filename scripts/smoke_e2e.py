#!/usr/bin/env python3
"""
Smoke E2E test: drives one movie project from draft to completed against a
running backend.

Run the backend with GENERATION_PROVIDER=stub and SCHEDULER_ENABLED=false;
this script triggers the orchestrator itself through the cron endpoint.

Env vars:
  BASE_URL       (default http://localhost:8000)
  CRON_SECRET    (optional, must match the backend)
  USER_ID        (required, an existing user with credits)
  MAX_RUNS       (default 40)
  POLL_INTERVAL  (default 1)
"""
from __future__ import annotations

import json
import os
import sys
import time
from urllib.request import Request, urlopen
from urllib.error import HTTPError, URLError

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
USER_ID = int(os.environ.get("USER_ID", "0"))
MAX_RUNS = int(os.environ.get("MAX_RUNS", "40"))
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", "1"))

SMOKE_TAG = f"smoke_{int(time.time())}"
SOURCE_TEXT = (
    "A courier crosses a flooded city at night. Lightning shows a figure on the bridge. "
    "She drops the package and runs. The figure follows through the market. "
    "At dawn she opens the package and finds her own photograph."
)

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _headers() -> dict[str, str]:
    h = {"Content-Type": "application/json"}
    if CRON_SECRET:
        h["Authorization"] = f"Bearer {CRON_SECRET}"
    return h


def _req(method: str, path: str, body: dict | None = None) -> dict:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body else None
    req = Request(url, data=data, headers=_headers(), method=method)
    try:
        with urlopen(req, timeout=120) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raw = e.read().decode()[:500]
        raise SmokeError(f"{method} {path} → {e.code}: {raw}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def GET(path: str) -> dict:
    return _req("GET", path)


def POST(path: str, body: dict | None = None) -> dict:
    return _req("POST", path, body)


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


# ── Steps ────────────────────────────────────────────────────

def step1_create_project() -> int:
    step("1. Create project")
    project = POST("/api/movies/projects", {
        "user_id": USER_ID,
        "title": f"SMOKE Movie {SMOKE_TAG}",
        "source_text": SOURCE_TEXT,
        "model": "kling-2.6",
        "style": "noir",
        "target_duration_minutes": 1,
    })
    ok(f"Project #{project['id']} created (status={project['status']})")
    return project["id"]


def step2_generate_script(project_id: int) -> int:
    step("2. Generate script")
    script = POST(f"/api/movies/projects/{project_id}/generate-script")
    total = script["total_scenes"]
    if total < 1:
        fail("Script has no scenes")
    ok(f"{total} scenes, ~{script['estimated_credits']} credits")
    return total


def step3_start(project_id: int):
    step("3. Start generation")
    project = POST(f"/api/movies/projects/{project_id}/start")
    if project["status"] != "generating" or project["current_scene"] != 1:
        fail(f"Unexpected state after start: {project['status']} scene={project['current_scene']}")
    ok("Generating from scene 1")


def step4_drive(project_id: int) -> dict:
    step("4. Drive orchestrator")
    for run in range(1, MAX_RUNS + 1):
        report = POST("/api/cron/process-movie-scenes")
        project = GET(f"/api/movies/projects/{project_id}")
        print(
            f"  run {run}: skipped={report.get('skipped')} processed={report.get('processed')} "
            f"→ {project['status']} {project['completed_scenes']}/{project['total_scenes']}"
        )
        if project["status"] in ("completed", "failed", "paused", "cancelled"):
            return project
        time.sleep(POLL_INTERVAL)
    fail(f"Project #{project_id} not finished after {MAX_RUNS} runs")
    return {}


def step5_verify(project: dict, total_scenes: int):
    step("5. Verify")
    if project["status"] != "completed":
        fail(f"Project ended in '{project['status']}': {project.get('error_message')}")
    if project["completed_scenes"] != total_scenes:
        fail(f"completed_scenes={project['completed_scenes']} expected {total_scenes}")
    scenes = project["scenes"]
    spent = sum(s["credit_cost"] for s in scenes if s["status"] == "completed")
    if spent != project["spent_credits"]:
        fail(f"spent_credits={project['spent_credits']} but completed scenes cost {spent}")
    ok(f"Completed: {total_scenes} scenes, {spent} credits, final={project.get('final_video_url')}")


def main() -> int:
    if not USER_ID:
        print("USER_ID is required")
        return 2
    print(f"Smoke E2E against {BASE_URL} (tag={SMOKE_TAG})")
    try:
        project_id = step1_create_project()
        total = step2_generate_script(project_id)
        step3_start(project_id)
        project = step4_drive(project_id)
        step5_verify(project, total)
    except SmokeError as e:
        print(f"\nSMOKE FAILED: {e}")
        return 1
    print("\nSMOKE PASSED")
    return 0


if __name__ == "__main__":
    sys.exit(main())
